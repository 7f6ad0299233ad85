"""
Full-text index repository.

``fts_messages`` is derived from the ``messages`` table and is never the
source of truth: it is refreshed per touched session on ingest and can be
rebuilt from canonical rows at any time.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy import bindparam, text
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Keep well under SQLite's host-parameter limit
_ID_CHUNK = 500


@dataclass
class SearchFilters:
    """
    Candidate pre-filters applied before ranking.

    Attributes:
        agent: Exact agent name
        title: Case-insensitive substring of the session title
        session_id: Session id or id prefix
        contains: Case-insensitive substring that some message must contain
    """

    agent: Optional[str] = None
    title: Optional[str] = None
    session_id: Optional[str] = None
    contains: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.agent or self.title or self.session_id or self.contains)


@dataclass
class MessageMatch:
    """A message-level match from the index or substring scan."""

    message_id: str
    session_id: str
    score: float  # bm25 (lower is better) for lexical rows, 0.0 for substring rows


def _chunks(ids: List[str]) -> Iterable[List[str]]:
    for start in range(0, len(ids), _ID_CHUNK):
        yield ids[start : start + _ID_CHUNK]


def _filter_sql(filters: Optional[SearchFilters]) -> tuple[str, dict]:
    """Build the SQL predicate (over ``sessions``) for the given filters."""
    if filters is None or filters.is_empty():
        return "", {}

    clauses: list[str] = []
    params: dict = {}
    if filters.agent:
        clauses.append("sessions.agent = :f_agent")
        params["f_agent"] = filters.agent
    if filters.title:
        clauses.append("instr(lower(coalesce(sessions.title, '')), :f_title) > 0")
        params["f_title"] = filters.title.lower()
    if filters.session_id:
        clauses.append("substr(sessions.id, 1, length(:f_session)) = :f_session")
        params["f_session"] = filters.session_id
    if filters.contains:
        clauses.append(
            "EXISTS (SELECT 1 FROM messages AS fm WHERE fm.session_id = sessions.id "
            "AND instr(lower(fm.content), :f_contains) > 0)"
        )
        params["f_contains"] = filters.contains.lower()
    return " AND " + " AND ".join(clauses), params


class SearchIndexRepository:
    """Maintains and queries the FTS5 message index."""

    def __init__(self, session: Session):
        self.session = session

    def refresh_sessions(self, session_ids: Iterable[str]) -> int:
        """
        Re-derive index rows for the given sessions from the messages table.

        Args:
            session_ids: Sessions whose messages changed

        Returns:
            Number of index rows written
        """
        ids = sorted(set(session_ids))
        if not ids:
            return 0

        delete_stmt = text(
            "DELETE FROM fts_messages WHERE session_id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))
        insert_stmt = text(
            "INSERT INTO fts_messages (message_id, session_id, content) "
            "SELECT id, session_id, content FROM messages WHERE session_id IN :ids"
        ).bindparams(bindparam("ids", expanding=True))

        written = 0
        for chunk in _chunks(ids):
            self.session.execute(delete_stmt, {"ids": chunk})
            result = self.session.execute(insert_stmt, {"ids": chunk})
            written += result.rowcount or 0
        logger.debug("Refreshed search index for %d sessions", len(ids))
        return written

    def delete_sessions(self, session_ids: Iterable[str]) -> None:
        ids = sorted(set(session_ids))
        stmt = text("DELETE FROM fts_messages WHERE session_id IN :ids").bindparams(
            bindparam("ids", expanding=True)
        )
        for chunk in _chunks(ids):
            self.session.execute(stmt, {"ids": chunk})

    def rebuild(self) -> int:
        """
        Drop every index row and re-derive the whole index.

        Returns:
            Number of index rows written
        """
        self.session.execute(text("DELETE FROM fts_messages"))
        result = self.session.execute(
            text(
                "INSERT INTO fts_messages (message_id, session_id, content) "
                "SELECT id, session_id, content FROM messages"
            )
        )
        written = result.rowcount or 0
        logger.info("Rebuilt search index: %d rows", written)
        return written

    def count(self) -> int:
        return self.session.execute(text("SELECT count(*) FROM fts_messages")).scalar_one()

    def lexical(
        self,
        fts_query: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 200,
    ) -> List[MessageMatch]:
        """
        Run an already-sanitized FTS5 query.

        Args:
            fts_query: Sanitized MATCH expression (see remi.search.query)
            filters: Candidate pre-filters
            limit: Maximum number of message rows

        Returns:
            Matches ordered best first (lowest bm25, then message id)
        """
        if not fts_query:
            return []

        filter_clause, params = _filter_sql(filters)
        stmt = text(
            "SELECT fts_messages.message_id, fts_messages.session_id, "
            "bm25(fts_messages) AS rank "
            "FROM fts_messages JOIN sessions ON sessions.id = fts_messages.session_id "
            f"WHERE fts_messages MATCH :query{filter_clause} "
            "ORDER BY rank, fts_messages.message_id LIMIT :limit"
        )
        rows = self.session.execute(
            stmt, {"query": fts_query, "limit": limit, **params}
        ).all()
        return [MessageMatch(message_id=r[0], session_id=r[1], score=r[2]) for r in rows]

    def substring(
        self,
        needle: str,
        filters: Optional[SearchFilters] = None,
        limit: int = 200,
    ) -> List[MessageMatch]:
        """
        Case-insensitive containment scan over message content.

        Used when the lexical index has no match (phrases, very short tokens).

        Returns:
            Matches ordered by most recent message first
        """
        needle = needle.strip().lower()
        if not needle:
            return []

        filter_clause, params = _filter_sql(filters)
        stmt = text(
            "SELECT messages.id, messages.session_id "
            "FROM messages JOIN sessions ON sessions.id = messages.session_id "
            f"WHERE instr(lower(messages.content), :needle) > 0{filter_clause} "
            "ORDER BY messages.timestamp DESC, messages.id LIMIT :limit"
        )
        rows = self.session.execute(
            stmt, {"needle": needle, "limit": limit, **params}
        ).all()
        return [MessageMatch(message_id=r[0], session_id=r[1], score=0.0) for r in rows]

    def filtered_session_ids(self, filters: Optional[SearchFilters]) -> Optional[set[str]]:
        """
        Session ids passing ``filters``; None when no filter is set.
        """
        if filters is None or filters.is_empty():
            return None
        filter_clause, params = _filter_sql(filters)
        stmt = text(f"SELECT sessions.id FROM sessions WHERE 1 = 1{filter_clause}")
        return {row[0] for row in self.session.execute(stmt, params)}
