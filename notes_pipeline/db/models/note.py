# notes_pipeline/db/models/note.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class Note(Base):
    """
    Mapping of the ``notes`` table, limited to the identity columns and the
    markdown status columns the worker reads and writes. The table itself is
    owned and migrated by the note API.
    """

    __tablename__ = "notes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="Untitled")

    markdown_generated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    # Nullable: the note API owns the table and does not backfill existing rows.
    markdown_version: Mapped[Optional[int]] = mapped_column(
        Integer, nullable=True, default=0, server_default="0"
    )
    # sha256 of the last Markdown written; guards the version counter against redelivery
    markdown_checksum: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    __table_args__ = (
        Index("ix_notes_user_id", "user_id"),
    )
