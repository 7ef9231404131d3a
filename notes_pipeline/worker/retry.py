"""
Retry / dead-letter decision for one processed delivery.

Pure: given how processing ended and how many times the message has been
delivered, return what the runtime should do with it. The consumer applies
the decision; nothing here touches the queue or the store.
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Union

from notes_pipeline.models.dto import DeadLetterRecord
from shared.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 2.0
    max_delay: float = 300.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base=settings.retry_backoff_base,
            max_delay=settings.retry_max_delay,
        )

    def delay_for(self, attempts: int) -> float:
        """Backoff before the next delivery: 1s, 2s, 4s... for attempts 1, 2, 3."""
        return min(self.backoff_base ** (max(attempts, 1) - 1), self.max_delay)


@dataclass(frozen=True)
class Ack:
    pass


@dataclass(frozen=True)
class Retry:
    delay_seconds: float


@dataclass(frozen=True)
class DeadLetter:
    record: DeadLetterRecord


Decision = Union[Ack, Retry, DeadLetter]


def decide(
    error: Optional[BaseException],
    *,
    attempts: int,
    policy: RetryPolicy,
    message_id: str,
    original_job: Any,
    now: datetime,
) -> Decision:
    if error is None:
        return Ack()

    if attempts < policy.max_attempts:
        return Retry(delay_seconds=policy.delay_for(attempts))

    return DeadLetter(
        record=DeadLetterRecord(
            message_id=message_id,
            original_job=original_job,
            error_message=str(error) or type(error).__name__,
            error_stack="".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            ),
            attempts=attempts,
            timestamp=now,
        )
    )
