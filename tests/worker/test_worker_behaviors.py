import asyncio
from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock

import orjson
import pytest

import notes_pipeline.worker.service.worker_service as worker
from notes_pipeline.exceptions import MarkdownNotFoundError, TransientStoreError
from notes_pipeline.worker.retry import RetryPolicy

DEAD_LETTER_KEY = "dead-letter-queue/1767225600000-test-message-id.json"


@pytest.fixture(autouse=True)
def _patch_worker_settings(monkeypatch):
    """The worker module reads settings at import time; use a fixed policy."""
    monkeypatch.setattr(
        worker,
        "settings",
        SimpleNamespace(
            max_attempts=3,
            retry_backoff_base=2.0,
            retry_max_delay=300.0,
            batch_size=10,
        ),
    )


@pytest.fixture(autouse=True)
def _fresh_shutdown_event(monkeypatch):
    monkeypatch.setattr(worker, "shutdown_event", asyncio.Event())


@pytest.fixture
def store(monkeypatch, object_store):
    monkeypatch.setattr(worker, "get_storage", lambda: object_store)
    return object_store


@pytest.fixture
def mark_generated(monkeypatch):
    mock = AsyncMock(return_value=True)
    monkeypatch.setattr(worker, "mark_markdown_generated", mock)
    return mock


@pytest.fixture
def indexer(monkeypatch):
    fake = SimpleNamespace(index=AsyncMock())
    monkeypatch.setattr(worker, "get_indexer", lambda: fake)
    return fake


# =============================================================================
# convert-to-markdown
# =============================================================================

@pytest.mark.asyncio
async def test_conversion_writes_markdown_and_acks(store, mark_generated, make_message, sample_job_body):
    message = make_message(sample_job_body(title="Greeting", text="Hello"))

    ok = await worker.process_message(message)

    assert ok is True
    message.ack.assert_awaited_once()
    message.retry.assert_not_awaited()

    stored = await store.get("users/user-1/notes/note-1/content.md")
    assert stored.text() == "Hello"
    assert stored.content_type == "text/markdown"
    assert stored.metadata["noteId"] == "note-1"
    assert stored.metadata["userId"] == "user-1"
    assert stored.metadata["title"] == "Greeting"
    assert "generatedAt" in stored.metadata

    mark_generated.assert_awaited_once()
    note_id, user_id, checksum = mark_generated.await_args.args
    assert (note_id, user_id) == ("note-1", "user-1")
    assert len(checksum) == 64


@pytest.mark.asyncio
async def test_conversion_includes_front_matter(store, mark_generated, make_message, sample_job_body):
    body = sample_job_body(
        title="Trip",
        text="Body",
        metadata={"tags": ["travel"], "folder": "personal", "created_at": "c", "updated_at": "u"},
    )

    await worker.process_message(make_message(body))

    stored = await store.get("users/user-1/notes/note-1/content.md")
    assert stored.text() == "---\ntitle: Trip\ntags: travel\nfolder: personal\ncreated: c\nupdated: u\n---\n\nBody"


@pytest.mark.asyncio
async def test_untitled_job_metadata(store, mark_generated, make_message, sample_job_body):
    await worker.process_message(make_message(sample_job_body()))

    stored = await store.get("users/user-1/notes/note-1/content.md")
    assert stored.metadata["title"] == "Untitled"


@pytest.mark.asyncio
async def test_duplicate_delivery_is_idempotent(store, mark_generated, make_message, sample_job_body):
    body = orjson.dumps(sample_job_body(text="Same"))

    await worker.process_message(make_message(body))
    await worker.process_message(make_message(body))

    stored = await store.get("users/user-1/notes/note-1/content.md")
    assert stored.text() == "Same"
    first, second = mark_generated.await_args_list
    assert first.args == second.args


@pytest.mark.asyncio
async def test_stale_revision_does_not_overwrite(store, mark_generated, make_message, sample_job_body):
    await worker.process_message(make_message(sample_job_body(text="newer", revision=5)))
    stale = make_message(sample_job_body(text="older", revision=3))

    ok = await worker.process_message(stale)

    assert ok is True
    stale.ack.assert_awaited_once()
    stored = await store.get("users/user-1/notes/note-1/content.md")
    assert stored.text() == "newer"
    assert stored.metadata["revision"] == "5"
    assert mark_generated.await_count == 1


@pytest.mark.asyncio
async def test_newer_revision_overwrites(store, mark_generated, make_message, sample_job_body):
    await worker.process_message(make_message(sample_job_body(text="first", revision=1)))
    await worker.process_message(make_message(sample_job_body(text="second", revision=2)))

    stored = await store.get("users/user-1/notes/note-1/content.md")
    assert stored.text() == "second"
    assert stored.metadata["revision"] == "2"


@pytest.mark.asyncio
async def test_unrevisioned_job_is_last_write_wins(store, mark_generated, make_message, sample_job_body):
    await worker.process_message(make_message(sample_job_body(text="versioned", revision=9)))
    await worker.process_message(make_message(sample_job_body(text="plain")))

    stored = await store.get("users/user-1/notes/note-1/content.md")
    assert stored.text() == "plain"


# =============================================================================
# index-for-search
# =============================================================================

@pytest.mark.asyncio
async def test_indexing_reads_stored_markdown(store, mark_generated, indexer, make_message, sample_job_body):
    await worker.process_message(make_message(sample_job_body(text="Indexed text")))
    message = make_message(sample_job_body(job_type="index-for-search", content=[]))

    ok = await worker.process_message(message)

    assert ok is True
    message.ack.assert_awaited_once()
    indexer.index.assert_awaited_once_with("note-1", "user-1", "Indexed text")


@pytest.mark.asyncio
async def test_indexing_without_markdown_retries(store, indexer, make_message, sample_job_body, monkeypatch):
    failures = []
    original = worker.process_search_indexing

    async def spy(job):
        try:
            await original(job)
        except MarkdownNotFoundError as e:
            failures.append(e)
            raise

    monkeypatch.setattr(worker, "process_search_indexing", spy)
    message = make_message(sample_job_body(job_type="index-for-search"), attempts=1)

    ok = await worker.process_message(message)

    assert ok is False
    assert len(failures) == 1
    message.retry.assert_awaited_once_with(delay_seconds=1.0)
    message.ack.assert_not_awaited()
    indexer.index.assert_not_awaited()


# =============================================================================
# Retry / dead-letter state machine
# =============================================================================

@pytest.mark.asyncio
async def test_retry_then_success(store, make_message, sample_job_body, monkeypatch, fixed_clock):
    """Fails on attempts 1 and 2, succeeds on 3: two retries (1s, 2s), one ack."""
    monkeypatch.setattr(
        worker,
        "mark_markdown_generated",
        AsyncMock(side_effect=[RuntimeError("db down"), RuntimeError("db down"), True]),
    )
    ack, retry = AsyncMock(), AsyncMock()
    body = sample_job_body()

    results = []
    for attempt in (1, 2, 3):
        message = make_message(body, attempts=attempt, ack=ack, retry=retry)
        results.append(await worker.process_message(message, clock=fixed_clock))

    assert results == [False, False, True]
    assert [c.kwargs for c in retry.await_args_list] == [{"delay_seconds": 1.0}, {"delay_seconds": 2.0}]
    ack.assert_awaited_once()
    assert await store.get(DEAD_LETTER_KEY) is None


@pytest.mark.asyncio
async def test_dead_letter_after_max_attempts(store, make_message, sample_job_body, monkeypatch, fixed_clock):
    """Fails on all three attempts: one dead-letter record, one ack, no third retry."""
    monkeypatch.setattr(worker, "mark_markdown_generated", AsyncMock(side_effect=RuntimeError("db down")))
    ack, retry = AsyncMock(), AsyncMock()
    body = sample_job_body()

    for attempt in (1, 2, 3):
        await worker.process_message(
            make_message(body, attempts=attempt, ack=ack, retry=retry),
            clock=fixed_clock,
        )

    assert retry.await_count == 2
    ack.assert_awaited_once()

    stored = await store.get(DEAD_LETTER_KEY)
    assert stored is not None
    assert stored.content_type == "application/json"
    assert stored.metadata == {
        "type": "dead-letter-queue",
        "messageType": "convert-to-markdown",
        "noteId": "note-1",
        "userId": "user-1",
    }

    record = orjson.loads(stored.body)
    assert record["messageId"] == "test-message-id"
    assert record["attempts"] == 3
    assert record["errorMessage"] == "db down"
    assert "RuntimeError" in record["errorStack"]
    assert record["originalJob"]["noteId"] == "note-1"
    assert record["originalJob"]["type"] == "convert-to-markdown"

    dead_letters = list((store.base_path / "dead-letter-queue").glob("*.json"))
    dead_letters = [p for p in dead_letters if not p.name.endswith(".meta.json")]
    assert len(dead_letters) == 1


@pytest.mark.asyncio
async def test_dead_letter_write_failure_still_acks(make_message, sample_job_body, monkeypatch, fixed_clock):
    broken_store = SimpleNamespace(
        put=AsyncMock(side_effect=TransientStoreError("store down")),
        head=AsyncMock(return_value=None),
        get=AsyncMock(return_value=None),
    )
    monkeypatch.setattr(worker, "get_storage", lambda: broken_store)
    message = make_message(sample_job_body(), attempts=3)

    ok = await worker.process_message(message, clock=fixed_clock)

    assert ok is False
    message.ack.assert_awaited_once()
    message.retry.assert_not_awaited()
    # one failed markdown write, one failed dead-letter write
    assert broken_store.put.await_count == 2
    assert broken_store.put.await_args_list[1].args[0] == DEAD_LETTER_KEY


@pytest.mark.asyncio
async def test_invalid_body_retried_then_dead_lettered(store, make_message, fixed_clock):
    first = make_message(b"not json", attempts=1)
    await worker.process_message(first, clock=fixed_clock)
    first.retry.assert_awaited_once_with(delay_seconds=1.0)

    last = make_message(b"not json", attempts=3)
    ok = await worker.process_message(last, clock=fixed_clock)

    assert ok is False
    last.ack.assert_awaited_once()
    record = orjson.loads((await store.get(DEAD_LETTER_KEY)).body)
    assert record["originalJob"] == "not json"
    assert record["errorMessage"].startswith("Invalid job body")


@pytest.mark.asyncio
async def test_schema_invalid_body_keeps_raw_json(store, make_message, fixed_clock):
    body = orjson.dumps({"type": "convert-to-markdown", "userId": "u"})

    await worker.process_message(make_message(body, attempts=3), clock=fixed_clock)

    stored = await store.get(DEAD_LETTER_KEY)
    record = orjson.loads(stored.body)
    assert record["originalJob"] == {"type": "convert-to-markdown", "userId": "u"}
    assert stored.metadata["noteId"] == ""


@pytest.mark.asyncio
async def test_policy_from_settings_is_used(store, make_message, sample_job_body, monkeypatch, fixed_clock):
    monkeypatch.setattr(
        worker,
        "settings",
        SimpleNamespace(max_attempts=5, retry_backoff_base=3.0, retry_max_delay=300.0),
    )
    monkeypatch.setattr(worker, "mark_markdown_generated", AsyncMock(side_effect=RuntimeError("x")))
    message = make_message(sample_job_body(), attempts=3)

    await worker.process_message(message, clock=fixed_clock)

    message.retry.assert_awaited_once_with(delay_seconds=9.0)
    message.ack.assert_not_awaited()


@pytest.mark.asyncio
async def test_explicit_policy_overrides_settings(store, make_message, sample_job_body, monkeypatch, fixed_clock):
    monkeypatch.setattr(worker, "mark_markdown_generated", AsyncMock(side_effect=RuntimeError("x")))
    message = make_message(sample_job_body(), attempts=1)

    await worker.process_message(message, policy=RetryPolicy(max_attempts=1), clock=fixed_clock)

    message.retry.assert_not_awaited()
    message.ack.assert_awaited_once()


# =============================================================================
# Batches
# =============================================================================

@pytest.mark.asyncio
async def test_batch_failure_does_not_block_others(store, mark_generated, make_message, sample_job_body, fixed_clock):
    messages = [
        make_message(sample_job_body(note_id="note-1"), message_id="m1"),
        make_message(b"{broken", attempts=3, message_id="m2"),
        make_message(sample_job_body(note_id="note-3"), message_id="m3"),
    ]

    summary = await worker.process_batch(messages, clock=fixed_clock)

    assert summary == worker.BatchSummary(succeeded=2, failed=1)
    for message in messages:
        message.ack.assert_awaited_once()
        message.retry.assert_not_awaited()
    assert await store.get("users/user-1/notes/note-1/content.md") is not None
    assert await store.get("users/user-1/notes/note-3/content.md") is not None
    assert await store.get("dead-letter-queue/1767225600000-m2.json") is not None


@pytest.mark.asyncio
async def test_batch_retrying_message_does_not_block_others(store, mark_generated, make_message, sample_job_body):
    ok_message = make_message(sample_job_body(note_id="note-1"), message_id="m1")
    failing = make_message(sample_job_body(job_type="index-for-search", note_id="missing"), message_id="m2")

    summary = await worker.process_batch([ok_message, failing])

    assert summary == worker.BatchSummary(succeeded=1, failed=1)
    ok_message.ack.assert_awaited_once()
    failing.retry.assert_awaited_once_with(delay_seconds=1.0)
    failing.ack.assert_not_awaited()


@pytest.mark.asyncio
async def test_batch_survives_settlement_error(store, mark_generated, make_message, sample_job_body):
    broken_ack = make_message(
        sample_job_body(note_id="note-1"),
        message_id="m1",
        ack=AsyncMock(side_effect=ConnectionError("channel closed")),
    )
    fine = make_message(sample_job_body(note_id="note-2"), message_id="m2")

    summary = await worker.process_batch([broken_ack, fine])

    assert summary == worker.BatchSummary(succeeded=1, failed=1)
    fine.ack.assert_awaited_once()


@pytest.mark.asyncio
async def test_empty_batch(store):
    summary = await worker.process_batch([])
    assert summary == worker.BatchSummary(succeeded=0, failed=0)


# =============================================================================
# Worker loop
# =============================================================================

@pytest.mark.asyncio
async def test_run_worker_consumes_batches_and_stops_on_shutdown(monkeypatch):
    called = {}

    async def consume_batches(handler):
        called["handler"] = handler
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            called["cancelled"] = True
            raise

    fake_mq = SimpleNamespace(consume_batches=consume_batches)

    @asynccontextmanager
    async def fake_get_message_queue():
        yield fake_mq

    monkeypatch.setattr(worker, "get_message_queue", fake_get_message_queue)
    monkeypatch.setattr(worker, "close_db", AsyncMock())

    task = asyncio.create_task(worker.run_worker())
    await asyncio.sleep(0)
    worker.shutdown_event.set()
    await task

    assert called["handler"] == worker.process_batch
    assert called["cancelled"] is True
    worker.close_db.assert_awaited_once()
