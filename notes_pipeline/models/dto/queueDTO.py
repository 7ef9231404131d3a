"""
DTO for queue payloads between the note API (producer) and the worker.

Wire format is camelCase JSON; attributes are snake_case.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from notes_pipeline.models.document import Block, NoteMetadata, parse_blocks


class JobType(str, Enum):
    CONVERT_TO_MARKDOWN = "convert-to-markdown"
    INDEX_FOR_SEARCH = "index-for-search"


class ConversionJob(BaseModel):
    type: JobType
    note_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    content: list[Block] = Field(default_factory=list)
    title: Optional[str] = None
    metadata: Optional[NoteMetadata] = None
    revision: Optional[int] = Field(default=None, ge=0)

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    @field_validator("content", mode="before")
    @classmethod
    def lenient_content(cls, value: Any) -> Any:
        # Editor JSON is never a reason to reject a job.
        if not isinstance(value, list):
            return []
        if any(isinstance(v, BaseModel) for v in value):
            return value
        return parse_blocks(value)

    @property
    def markdown_key(self) -> str:
        return markdown_object_key(self.user_id, self.note_id)

    def front_matter(self) -> Optional[NoteMetadata]:
        """Metadata for the Markdown header, titled from the job when needed."""
        if self.metadata is None:
            return None
        if self.metadata.title is None and self.title:
            return self.metadata.model_copy(update={"title": self.title})
        return self.metadata

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def markdown_object_key(user_id: str, note_id: str) -> str:
    return f"users/{user_id}/notes/{note_id}/content.md"
