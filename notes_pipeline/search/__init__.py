from .indexer import LoggingIndexer, SearchIndexer, get_indexer

__all__ = ["LoggingIndexer", "SearchIndexer", "get_indexer"]
