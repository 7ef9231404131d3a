"""
Dead-letter record archived for a message whose retry budget is exhausted.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class DeadLetterRecord(BaseModel):
    message_id: str
    # Parsed job as wire JSON, or the raw decoded body when it failed to parse.
    original_job: Any
    error_message: str
    error_stack: Optional[str] = None
    attempts: int
    timestamp: datetime

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @property
    def key(self) -> str:
        unix_millis = int(self.timestamp.timestamp() * 1000)
        return f"dead-letter-queue/{unix_millis}-{self.message_id}.json"

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
