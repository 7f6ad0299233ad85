"""
Ranking search engine.

Combines up to three independent rankings of candidate sessions with
reciprocal rank fusion:

- lexical: best BM25 score of any message in the session
- recency: session ``updated_at``
- semantic (optional): best cosine similarity of any message vector

When the lexical index has no match the engine falls back to a plain
substring scan, so phrases and very short tokens still find something.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Engine

from remi.config import Settings, settings as default_settings
from remi.db.connection import get_session
from remi.db.repositories import (
    MessageMatch,
    SearchFilters,
    SearchIndexRepository,
    SessionRepository,
)
from remi.embeddings import TextEmbedder
from remi.search.query import make_snippet, query_terms, sanitize_query
from remi.search.vectors import get_vector_index

logger = logging.getLogger(__name__)


@dataclass
class SessionHit:
    """One ranked session in a search result."""

    session_id: str
    agent: str
    title: Optional[str]
    updated_at: datetime
    score: float
    lexical_rank: Optional[int] = None
    recency_rank: Optional[int] = None
    semantic_rank: Optional[int] = None
    matched_message_ids: list[str] = field(default_factory=list)
    snippet: str = ""
    source_paths: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent": self.agent,
            "title": self.title,
            "updated_at": self.updated_at.isoformat(),
            "score": self.score,
            "ranks": {
                "lexical": self.lexical_rank,
                "recency": self.recency_rank,
                "semantic": self.semantic_rank,
            },
            "matched_message_ids": self.matched_message_ids,
            "snippet": self.snippet,
            "source_paths": self.source_paths,
        }


def _group_by_session(matches: list[MessageMatch]) -> dict[str, list[MessageMatch]]:
    """Group message matches by session, preserving best-first order."""
    grouped: dict[str, list[MessageMatch]] = {}
    for match in matches:
        grouped.setdefault(match.session_id, []).append(match)
    return grouped


def fuse_ranks(
    rankings: list[tuple[float, dict[str, int]]], k: float
) -> dict[str, float]:
    """
    Reciprocal rank fusion.

    Args:
        rankings: (weight, {session_id: 1-based rank}) per signal
        k: Rank damping constant

    Returns:
        Fused score per session id
    """
    scores: dict[str, float] = {}
    for weight, ranks in rankings:
        if weight == 0:
            continue
        for session_id, rank in ranks.items():
            scores[session_id] = scores.get(session_id, 0.0) + weight / (k + rank)
    return scores


class SearchEngine:
    """
    Read-only search over the canonical store.

    Example:
        >>> engine = SearchEngine(store_engine)
        >>> hits = engine.search("cache invalidation", SearchFilters(agent="claude"))
    """

    def __init__(
        self,
        engine: Engine,
        config: Optional[Settings] = None,
        embedder: Optional[TextEmbedder] = None,
    ):
        self.engine = engine
        self.config = config or default_settings
        self.embedder = embedder

    def search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        limit: Optional[int] = None,
    ) -> list[SessionHit]:
        """
        Rank sessions for a free-text query.

        Args:
            query: Free text; sanitized before it reaches the index
            filters: Candidate pre-filters
            limit: Maximum hits (default: ``search_default_limit``)

        Returns:
            Hits sorted by fused score, then recency, then session id
        """
        limit = limit or self.config.search_default_limit
        candidate_limit = self.config.search_candidate_limit
        terms = query_terms(query)
        fts_query = sanitize_query(query)

        with get_session(self.engine) as db:
            index = SearchIndexRepository(db)
            sessions_repo = SessionRepository(db)

            lexical_mode = True
            matches = index.lexical(fts_query, filters, candidate_limit) if fts_query else []
            if not matches:
                lexical_mode = False
                matches = index.substring(query, filters, candidate_limit)
            grouped = _group_by_session(matches)

            semantic = self._semantic_candidates(query, filters, index)

            candidate_ids = set(grouped) | {session_id for session_id, _, _ in semantic}
            if not candidate_ids:
                logger.debug("No candidates for query %r", query)
                return []
            sessions = sessions_repo.get_many(candidate_ids)
            # Cached vectors may name sessions deleted since they were loaded
            grouped = {sid: group for sid, group in grouped.items() if sid in sessions}
            semantic = [entry for entry in semantic if entry[0] in sessions]

            def recency_key(session_id: str) -> tuple:
                return (-sessions[session_id].updated_at.timestamp(), session_id)

            if lexical_mode:
                lexical_order = sorted(
                    grouped,
                    key=lambda sid: (grouped[sid][0].score,) + recency_key(sid),
                )
            else:
                # Substring matches arrive newest message first
                lexical_order = list(grouped)
            lexical_ranks = {sid: rank for rank, sid in enumerate(lexical_order, start=1)}
            recency_ranks = {
                sid: rank
                for rank, sid in enumerate(sorted(sessions, key=recency_key), start=1)
            }
            semantic_ranks = {
                sid: rank for rank, (sid, _, _) in enumerate(semantic, start=1)
            }

            k = self.config.rrf_k
            scores = fuse_ranks(
                [
                    (self.config.weight_lexical, lexical_ranks),
                    (self.config.weight_recency, recency_ranks),
                    (self.config.weight_semantic, semantic_ranks),
                ],
                k,
            )
            ordered = sorted(
                sessions, key=lambda sid: (-scores.get(sid, 0.0),) + recency_key(sid)
            )[:limit]

            semantic_best = {sid: message_id for sid, message_id, _ in semantic}
            best_message_ids = {
                sid: grouped[sid][0].message_id if sid in grouped else semantic_best[sid]
                for sid in ordered
            }
            messages = sessions_repo.messages_by_id(best_message_ids.values())
            source_paths = sessions_repo.source_paths(ordered)

            hits = []
            for sid in ordered:
                session = sessions[sid]
                best = messages.get(best_message_ids[sid])
                hits.append(
                    SessionHit(
                        session_id=sid,
                        agent=session.agent,
                        title=session.title,
                        updated_at=session.updated_at,
                        score=scores.get(sid, 0.0),
                        lexical_rank=lexical_ranks.get(sid),
                        recency_rank=recency_ranks.get(sid),
                        semantic_rank=semantic_ranks.get(sid),
                        matched_message_ids=[m.message_id for m in grouped.get(sid, [])],
                        snippet=make_snippet(best.content, terms) if best else "",
                        source_paths=source_paths.get(sid, []),
                    )
                )

        logger.debug(
            "Search %r: %d candidates, %d hits (lexical=%s, semantic=%d)",
            query,
            len(sessions),
            len(hits),
            lexical_mode,
            len(semantic),
        )
        return hits

    def _semantic_candidates(
        self,
        query: str,
        filters: Optional[SearchFilters],
        index: SearchIndexRepository,
    ) -> list[tuple[str, str, float]]:
        if (
            self.embedder is None
            or self.config.weight_semantic <= 0
            or not query.strip()
        ):
            return []

        vectors = get_vector_index(self.engine, self.embedder.model_name)
        if not len(vectors):
            return []

        query_vector = self.embedder.embed_query(query)
        return vectors.best_per_session(
            query_vector,
            self.config.semantic_top_k,
            allowed_sessions=index.filtered_session_ids(filters),
        )
