"""
In-memory vector matrix for semantic ranking.

All stored message vectors are loaded once per process into one normalized
float32 matrix; a query is scored with a single matrix-vector product.
"""

import logging
import threading
from typing import Optional, Sequence

import numpy as np
from sqlalchemy import Engine

from remi.db.connection import get_session
from remi.db.repositories import EmbeddingRepository

logger = logging.getLogger(__name__)

_cache: dict[tuple[str, str], "VectorIndex"] = {}
_cache_lock = threading.Lock()


def _normalize_rows(matrix: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return matrix / norms


class VectorIndex:
    """Cosine-similarity index over message vectors."""

    def __init__(
        self,
        message_ids: list[str],
        session_ids: list[str],
        matrix: Optional[np.ndarray],
    ):
        self.message_ids = message_ids
        self.session_ids = session_ids
        self.matrix = (
            _normalize_rows(matrix.astype(np.float32)) if matrix is not None else None
        )

    def __len__(self) -> int:
        return len(self.message_ids)

    @property
    def dimension(self) -> int:
        return 0 if self.matrix is None else int(self.matrix.shape[1])

    @classmethod
    def load(cls, engine: Engine, model: Optional[str] = None) -> "VectorIndex":
        with get_session(engine) as db:
            message_ids, session_ids, matrix = EmbeddingRepository(db).load_all(model)
        logger.info("Loaded %d message vectors", len(message_ids))
        return cls(message_ids, session_ids, matrix)

    def similarities(self, query_vector: Sequence[float]) -> np.ndarray:
        """
        Cosine similarity of every stored vector to ``query_vector``.

        Raises:
            ValueError: If the query dimension does not match the index
        """
        if self.matrix is None:
            return np.zeros(0, dtype=np.float32)
        query = np.asarray(query_vector, dtype=np.float32)
        if query.shape[0] != self.dimension:
            raise ValueError(
                f"Query dimension {query.shape[0]} != index dimension {self.dimension}"
            )
        norm = np.linalg.norm(query)
        if norm == 0:
            return np.zeros(len(self), dtype=np.float32)
        return self.matrix @ (query / norm)

    def best_per_session(
        self,
        query_vector: Sequence[float],
        top_k: int,
        allowed_sessions: Optional[set[str]] = None,
    ) -> list[tuple[str, str, float]]:
        """
        Best-matching message of each session, most similar first.

        Args:
            query_vector: Query embedding
            top_k: Maximum number of sessions returned
            allowed_sessions: Restrict to these sessions when given

        Returns:
            (session_id, message_id, similarity) tuples; ties broken by
            session id
        """
        sims = self.similarities(query_vector)
        best: dict[str, tuple[str, float]] = {}
        for row in np.argsort(-sims, kind="stable"):
            session_id = self.session_ids[row]
            if allowed_sessions is not None and session_id not in allowed_sessions:
                continue
            if session_id not in best:
                best[session_id] = (self.message_ids[row], float(sims[row]))
        ranked = sorted(best.items(), key=lambda item: (-item[1][1], item[0]))
        return [
            (session_id, message_id, score)
            for session_id, (message_id, score) in ranked[:top_k]
        ]


def get_vector_index(engine: Engine, model: Optional[str] = None) -> VectorIndex:
    """Process-wide cached index for ``engine`` (loaded on first use)."""
    key = (str(engine.url), model or "")
    with _cache_lock:
        index = _cache.get(key)
        if index is None:
            index = VectorIndex.load(engine, model)
            _cache[key] = index
        return index


def invalidate_vector_cache() -> None:
    """Forget cached matrices; the next search reloads from the store."""
    with _cache_lock:
        _cache.clear()
