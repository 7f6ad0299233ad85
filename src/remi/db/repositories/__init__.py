"""
Repository layer for database operations.

Provides the write path for canonical entities and read access for search,
archive and the CLI.
"""

from remi.db.repositories.archive import ArchiveRepository
from remi.db.repositories.base import BaseRepository
from remi.db.repositories.canonical import BatchStats, CanonicalRepository
from remi.db.repositories.checkpoint import CheckpointRepository
from remi.db.repositories.embedding import EmbeddingRepository
from remi.db.repositories.search_index import (
    MessageMatch,
    SearchFilters,
    SearchIndexRepository,
)
from remi.db.repositories.session import SessionRepository

__all__ = [
    "ArchiveRepository",
    "BaseRepository",
    "BatchStats",
    "CanonicalRepository",
    "CheckpointRepository",
    "EmbeddingRepository",
    "MessageMatch",
    "SearchFilters",
    "SearchIndexRepository",
    "SessionRepository",
]
