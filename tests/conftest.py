"""
Pytest fixtures for the conversion worker tests.

Provides:
- Async in-memory SQLite engine with the notes table
- File object store rooted in a temp directory
- Fake queue deliveries with mocked ack()/retry()
- Sample job factories
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from notes_pipeline.db.models import Base
from notes_pipeline.storage import FileObjectStore

FIXED_NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


# =============================================================================
# DATABASE FIXTURES
# =============================================================================

@pytest_asyncio.fixture
async def async_engine():
    """Create async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def db_session_factory(async_engine):
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest.fixture
def patched_db_session(db_session_factory):
    """Drop-in replacement for get_db_session() bound to the test engine."""

    @asynccontextmanager
    async def _get_db_session():
        async with db_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return _get_db_session


# =============================================================================
# STORAGE FIXTURES
# =============================================================================

@pytest.fixture
def object_store(tmp_path) -> FileObjectStore:
    return FileObjectStore(tmp_path / "objects")


# =============================================================================
# QUEUE FIXTURES
# =============================================================================

class FakeMessage:
    """Queue delivery double; ack/retry may be shared across redeliveries."""

    def __init__(
        self,
        body: Any,
        attempts: int = 1,
        message_id: str = "test-message-id",
        ack: Optional[AsyncMock] = None,
        retry: Optional[AsyncMock] = None,
    ) -> None:
        self.id = message_id
        self.body = body
        self.attempts = attempts
        self.ack = ack or AsyncMock()
        self.retry = retry or AsyncMock()


@pytest.fixture
def make_message():
    return FakeMessage


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


# =============================================================================
# SAMPLE DATA FACTORIES
# =============================================================================

@pytest.fixture
def sample_job_body():
    """Factory for wire-format (camelCase) job bodies."""

    def _create(
        job_type: str = "convert-to-markdown",
        note_id: str = "note-1",
        user_id: str = "user-1",
        text: str = "Hello",
        **extra: Any,
    ) -> dict[str, Any]:
        body = {
            "type": job_type,
            "noteId": note_id,
            "userId": user_id,
            "content": [
                {"type": "paragraph", "content": [{"type": "text", "text": text}]},
            ],
        }
        body.update(extra)
        return body

    return _create
