from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import case, func, or_, update

from notes_pipeline.db.models import Note
from notes_pipeline.db.session import get_db_session
from shared.utils.logging import get_logger

logger = get_logger(__name__)


async def mark_markdown_generated(note_id: str, user_id: str, checksum: str) -> bool:
    """
    Flag the note's Markdown as generated.

    Keyed by (note_id, user_id). ``markdown_version`` moves only when the
    checksum changes, so redelivering the same job leaves it where it is.
    Returns False when no row matched.
    """
    changed = or_(Note.markdown_checksum.is_(None), Note.markdown_checksum != checksum)
    # Rows created before the status columns existed carry a NULL version.
    version = func.coalesce(Note.markdown_version, 0)

    async with get_db_session() as db:
        stmt = (
            update(Note)
            .where(Note.id == note_id, Note.user_id == user_id)
            .values(
                markdown_generated_at=datetime.now(timezone.utc),
                markdown_version=case(
                    (changed, version + 1),
                    else_=version,
                ),
                markdown_checksum=checksum,
            )
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)

    if result.rowcount == 0:
        logger.warning("Note row not found for markdown status", note_id=note_id, user_id=user_id)
        return False
    return True
