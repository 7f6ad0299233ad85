"""
Message embedding repository.

Vectors are stored as raw little-endian float32 bytes.
"""

import logging
from typing import Iterable, Optional, Sequence

import numpy as np
from sqlalchemy import delete, func, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from remi.db.repositories.base import BaseRepository
from remi.models.db import Message, MessageEmbedding

logger = logging.getLogger(__name__)

_DTYPE = np.dtype("<f4")


def vector_to_bytes(vector: Sequence[float]) -> bytes:
    return np.asarray(vector, dtype=_DTYPE).tobytes()


def vector_from_bytes(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=_DTYPE)


class EmbeddingRepository(BaseRepository[MessageEmbedding]):
    """Repository for derived per-message vectors."""

    def __init__(self, session: Session):
        super().__init__(MessageEmbedding, session)

    def save(self, message_id: str, vector: Sequence[float], model: str) -> None:
        """Insert or replace the vector of one message."""
        stmt = sqlite_insert(MessageEmbedding.__table__).values(
            message_id=message_id,
            model=model,
            dimension=len(vector),
            vector=vector_to_bytes(vector),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["message_id"],
            set_={
                "model": stmt.excluded.model,
                "dimension": stmt.excluded.dimension,
                "vector": stmt.excluded.vector,
            },
        )
        self.session.execute(stmt)

    def load_all(
        self, model: Optional[str] = None
    ) -> tuple[list[str], list[str], Optional[np.ndarray]]:
        """
        Load every stored vector as one matrix.

        Vectors whose dimension differs from the first one seen are skipped.

        Args:
            model: Only vectors produced by this model

        Returns:
            (message_ids, session_ids, matrix) with one row per message, or
            empty lists and None when nothing is stored
        """
        stmt = (
            select(MessageEmbedding.message_id, Message.session_id, MessageEmbedding.vector)
            .join(Message, Message.id == MessageEmbedding.message_id)
            .order_by(MessageEmbedding.message_id)
        )
        if model:
            stmt = stmt.where(MessageEmbedding.model == model)

        message_ids: list[str] = []
        session_ids: list[str] = []
        rows: list[np.ndarray] = []
        dimension: Optional[int] = None
        for message_id, session_id, blob in self.session.execute(stmt):
            vector = vector_from_bytes(blob)
            if dimension is None:
                dimension = vector.shape[0]
            elif vector.shape[0] != dimension:
                logger.warning(
                    "Skipping embedding for %s: dimension %d != %d",
                    message_id,
                    vector.shape[0],
                    dimension,
                )
                continue
            message_ids.append(message_id)
            session_ids.append(session_id)
            rows.append(vector)

        if not rows:
            return [], [], None
        return message_ids, session_ids, np.vstack(rows)

    def missing_message_ids(self, message_ids: Iterable[str]) -> list[str]:
        """Subset of ``message_ids`` without a stored vector."""
        ids = list(dict.fromkeys(message_ids))
        if not ids:
            return []
        stmt = select(MessageEmbedding.message_id).where(
            MessageEmbedding.message_id.in_(ids)
        )
        existing = set(self.session.scalars(stmt))
        return [i for i in ids if i not in existing]

    def count(self) -> int:
        return self.session.scalar(select(func.count()).select_from(MessageEmbedding)) or 0

    def clear(self) -> int:
        result = self.session.execute(delete(MessageEmbedding))
        return result.rowcount or 0
