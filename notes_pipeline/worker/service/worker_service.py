"""
Worker service for note conversion jobs.

Consumes batches of jobs from RabbitMQ and, per message:
1. Parses the job body
2. Dispatches by job type (convert-to-markdown / index-for-search)
3. Writes Markdown to the object store and flags the note row
4. Acks on success; on failure retries with exponential backoff, and past the
   attempt bound archives a dead-letter record and acks

Messages of one batch are processed concurrently and never block each other.
"""

from __future__ import annotations

import asyncio
import hashlib
import signal
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, Sequence

import orjson
from pydantic import ValidationError

from shared.config import get_settings
from shared.utils import LogContext, get_logger, setup_logging

from notes_pipeline.db.service.queue import get_message_queue
from notes_pipeline.db.session import close_db
from notes_pipeline.exceptions import InvalidJobError, MarkdownNotFoundError
from notes_pipeline.models.dto import ConversionJob, DeadLetterRecord, JobType
from notes_pipeline.rendering import convert_document
from notes_pipeline.search import get_indexer
from notes_pipeline.storage import get_storage
from notes_pipeline.worker.persistance.worker_persistance import mark_markdown_generated
from notes_pipeline.worker.retry import Ack, DeadLetter, Decision, Retry, RetryPolicy, decide

logger = get_logger(__name__)
settings = get_settings()

shutdown_event = asyncio.Event()


class QueueMessage(Protocol):
    """What the consumer needs from a runtime delivery."""

    id: str
    body: Any
    attempts: int

    async def ack(self) -> None: ...

    async def retry(self, *, delay_seconds: float) -> None: ...


@dataclass(frozen=True)
class BatchSummary:
    succeeded: int
    failed: int


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# JOB PARSING
# =============================================================================

def parse_job(body: Any) -> ConversionJob:
    if isinstance(body, ConversionJob):
        return body
    try:
        data = orjson.loads(body) if isinstance(body, (bytes, bytearray, str)) else body
        return ConversionJob.model_validate(data)
    except (orjson.JSONDecodeError, ValidationError) as e:
        raise InvalidJobError(f"Invalid job body: {e}") from e


def _raw_body(body: Any) -> Any:
    """Best-effort JSON view of a body that did not parse as a job."""
    if isinstance(body, (bytes, bytearray, str)):
        try:
            return orjson.loads(body)
        except orjson.JSONDecodeError:
            return body.decode("utf-8", "replace") if isinstance(body, (bytes, bytearray)) else body
    return body


# =============================================================================
# JOB HANDLERS
# =============================================================================

def _stored_revision(metadata: Optional[dict[str, str]]) -> Optional[int]:
    if not metadata or "revision" not in metadata:
        return None
    try:
        return int(metadata["revision"])
    except (TypeError, ValueError):
        return None


async def process_markdown_conversion(job: ConversionJob) -> None:
    """Convert the job's blocks to Markdown, store it, flag the note row."""
    storage = get_storage()
    key = job.markdown_key

    if job.revision is not None:
        stored_revision = _stored_revision(await storage.head(key))
        if stored_revision is not None and stored_revision > job.revision:
            logger.info(
                "Stale job skipped",
                note_id=job.note_id,
                revision=job.revision,
                stored_revision=stored_revision,
            )
            return

    markdown = convert_document(job.content, job.front_matter())

    metadata = {
        "noteId": job.note_id,
        "userId": job.user_id,
        "title": job.title or "Untitled",
        "generatedAt": _utcnow().isoformat(),
    }
    if job.revision is not None:
        metadata["revision"] = str(job.revision)

    await storage.put(key, markdown, content_type="text/markdown", metadata=metadata)

    checksum = hashlib.sha256(markdown.encode("utf-8")).hexdigest()
    await mark_markdown_generated(job.note_id, job.user_id, checksum)

    logger.info("Markdown conversion completed", note_id=job.note_id, key=key, size=len(markdown))


async def process_search_indexing(job: ConversionJob) -> None:
    """Hand the note's stored Markdown to the search indexer."""
    key = job.markdown_key
    stored = await get_storage().get(key)
    if stored is None:
        raise MarkdownNotFoundError(job.note_id, key)

    await get_indexer().index(job.note_id, job.user_id, stored.text())


async def process_job(job: ConversionJob) -> None:
    if job.type == JobType.CONVERT_TO_MARKDOWN:
        await process_markdown_conversion(job)
    elif job.type == JobType.INDEX_FOR_SEARCH:
        await process_search_indexing(job)
    else:
        raise InvalidJobError(f"Unknown job type: {job.type}")


# =============================================================================
# DEAD LETTER
# =============================================================================

async def log_to_dead_letter_queue(record: DeadLetterRecord) -> None:
    """Archive a failed message. Never raises: the message is acked either way."""
    original = record.original_job if isinstance(record.original_job, dict) else {}
    try:
        await get_storage().put(
            record.key,
            orjson.dumps(record.to_wire(), option=orjson.OPT_INDENT_2),
            content_type="application/json",
            metadata={
                "type": "dead-letter-queue",
                "messageType": str(original.get("type", "unknown")),
                "noteId": str(original.get("noteId", "")),
                "userId": str(original.get("userId", "")),
            },
        )
        logger.error("Message sent to dead letter queue", key=record.key, attempts=record.attempts)
    except Exception as e:
        logger.error("Failed to log to dead letter queue", key=record.key, error=str(e), exc_info=e)


# =============================================================================
# MESSAGE HANDLER
# =============================================================================

async def apply_decision(message: QueueMessage, decision: Decision, policy: RetryPolicy) -> None:
    if isinstance(decision, Ack):
        await message.ack()
    elif isinstance(decision, Retry):
        logger.info(
            "Retrying message",
            delay_seconds=decision.delay_seconds,
            next_attempt=message.attempts + 1,
            max_attempts=policy.max_attempts,
        )
        await message.retry(delay_seconds=decision.delay_seconds)
    elif isinstance(decision, DeadLetter):
        await log_to_dead_letter_queue(decision.record)
        await message.ack()


async def process_message(
    message: QueueMessage,
    *,
    policy: Optional[RetryPolicy] = None,
    clock: Callable[[], datetime] = _utcnow,
) -> bool:
    """
    Process one delivery and settle it (ack, retry or dead-letter + ack).

    Returns True if the job succeeded, False if it failed on this attempt.
    """
    policy = policy or RetryPolicy.from_settings(settings)

    with LogContext(message_id=message.id, attempt=message.attempts):
        job: Optional[ConversionJob] = None
        error: Optional[Exception] = None

        try:
            job = parse_job(message.body)
            with LogContext(job_type=job.type.value, note_id=job.note_id):
                logger.info("Processing message")
                await process_job(job)
        except Exception as e:
            error = e
            logger.error("Message processing failed", error=str(e), exc_info=e)

        decision = decide(
            error,
            attempts=message.attempts,
            policy=policy,
            message_id=message.id,
            original_job=job.to_wire() if job is not None else _raw_body(message.body),
            now=clock(),
        )
        await apply_decision(message, decision, policy)

        if error is None:
            logger.info("Message processed", job_type=job.type.value, note_id=job.note_id)
        return error is None


async def process_batch(
    messages: Sequence[QueueMessage],
    *,
    policy: Optional[RetryPolicy] = None,
    clock: Callable[[], datetime] = _utcnow,
) -> BatchSummary:
    """Process a batch; one message's failure never affects the others."""
    results = await asyncio.gather(
        *(process_message(m, policy=policy, clock=clock) for m in messages),
        return_exceptions=True,
    )

    for message, result in zip(messages, results):
        if isinstance(result, BaseException):
            logger.error(
                "Message settlement failed",
                message_id=message.id,
                error=str(result),
                exc_info=result,
            )

    succeeded = sum(1 for r in results if r is True)
    summary = BatchSummary(succeeded=succeeded, failed=len(results) - succeeded)

    logger.info("Queue batch processed", succeeded=summary.succeeded, failed=summary.failed)
    return summary


# =============================================================================
# MAIN WORKER LOOP
# =============================================================================

async def run_worker() -> None:
    logger.info("Worker starting", max_attempts=settings.max_attempts, batch_size=settings.batch_size)

    try:
        async with get_message_queue() as mq:
            consumer_task = asyncio.create_task(mq.consume_batches(process_batch))
            await shutdown_event.wait()

            logger.info("Shutdown signal received, stopping consumer")
            consumer_task.cancel()
            try:
                await consumer_task
            except asyncio.CancelledError:
                pass
    finally:
        await close_db()

    logger.info("Worker stopped")


def handle_signals() -> None:
    def signal_handler(signum, frame):
        logger.info("Received signal", signal=signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


def main() -> None:
    setup_logging()
    handle_signals()
    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        logger.info("Worker interrupted")
    except Exception as e:
        logger.error("Worker crashed", error=str(e), exc_info=e)
        sys.exit(1)


if __name__ == "__main__":
    main()
