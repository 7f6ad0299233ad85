"""Search: query sanitizing, lexical/recency/semantic ranking and fusion."""

from remi.db.repositories.search_index import SearchFilters
from remi.search.engine import SearchEngine, SessionHit, fuse_ranks
from remi.search.query import sanitize_query

__all__ = [
    "SearchEngine",
    "SearchFilters",
    "SessionHit",
    "fuse_ranks",
    "sanitize_query",
]
