"""
Search indexing collaborator for ``index-for-search`` jobs.

The worker only hands over the note's canonical Markdown; building and
querying the index belongs to the search service.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from shared.utils.logging import get_logger

logger = get_logger(__name__)


class SearchIndexer(ABC):
    @abstractmethod
    async def index(self, note_id: str, user_id: str, markdown: str) -> None:
        raise NotImplementedError


class LoggingIndexer(SearchIndexer):
    """Default indexer until the search service exposes an ingest endpoint."""

    async def index(self, note_id: str, user_id: str, markdown: str) -> None:
        logger.info(
            "Search indexing completed",
            note_id=note_id,
            user_id=user_id,
            size=len(markdown),
        )


_indexer: Optional[SearchIndexer] = None


def get_indexer() -> SearchIndexer:
    global _indexer
    if _indexer is None:
        _indexer = LoggingIndexer()
    return _indexer
