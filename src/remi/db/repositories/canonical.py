"""
Canonical entity repository.

The only write path for sessions, messages, events, artifacts and provenance.
Ingestion and archive restore both go through :meth:`CanonicalRepository.save_batch`.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from remi.db.repositories.base import BaseRepository
from remi.db.repositories.search_index import SearchIndexRepository
from remi.exceptions import StoreWriteError
from remi.models import canonical
from remi.models.db import (
    Agent,
    AgentSession,
    Artifact,
    Event,
    Message,
    Provenance,
)

logger = logging.getLogger(__name__)

# Rows per multi-VALUES statement
_ROWS_PER_STATEMENT = 200


@dataclass
class BatchStats:
    """Row counts written by one :meth:`CanonicalRepository.save_batch` call."""

    sessions: int = 0
    messages: int = 0
    events: int = 0
    artifacts: int = 0
    provenance: int = 0
    index_rows: int = 0
    touched_session_ids: set[str] = field(default_factory=set)


def _rows_in_chunks(rows: list[dict]) -> Iterator[list[dict]]:
    for start in range(0, len(rows), _ROWS_PER_STATEMENT):
        yield rows[start : start + _ROWS_PER_STATEMENT]


def _merge_sessions(sessions: Iterable[canonical.Session]) -> list[dict[str, Any]]:
    """Collapse duplicate session ids within a batch (min created, max updated)."""
    merged: dict[str, dict[str, Any]] = {}
    for s in sessions:
        row = merged.get(s.id)
        if row is None:
            merged[s.id] = {
                "id": s.id,
                "agent": s.agent,
                "native_key": s.native_key,
                "title": s.title or None,
                "source_path": s.source_path,
                "created_at": s.created_at,
                "updated_at": s.updated_at,
            }
            continue
        row["created_at"] = min(row["created_at"], s.created_at)
        row["updated_at"] = max(row["updated_at"], s.updated_at)
        if s.title:
            row["title"] = s.title
        if s.source_path:
            row["source_path"] = s.source_path
    return list(merged.values())


def _last_wins(items: Iterable[Any]) -> list[Any]:
    by_id: dict[str, Any] = {}
    for item in items:
        by_id[item.id] = item
    return list(by_id.values())


class CanonicalRepository(BaseRepository[AgentSession]):
    """Transactional upsert of canonical entities."""

    def __init__(self, session: Session):
        super().__init__(AgentSession, session)
        self.search_index = SearchIndexRepository(session)

    def save_batch(self, batch: canonical.NormalizedBatch) -> BatchStats:
        """
        Upsert every entity of ``batch`` by id and refresh the search index
        for the sessions it touched.

        Re-saving the same batch changes nothing: sessions keep the earliest
        ``created_at`` and latest ``updated_at`` seen, and keep their title
        when the incoming one is empty. Must run inside one transaction
        (see :func:`remi.db.connection.db_session`).

        Args:
            batch: Normalized entities

        Returns:
            BatchStats with per-kind row counts

        Raises:
            StoreWriteError: If any statement fails; nothing from the batch
                should be committed by the caller
        """
        stats = BatchStats()
        if batch.is_empty():
            return stats

        try:
            session_rows = _merge_sessions(batch.sessions)
            self._upsert_agents({row["agent"] for row in session_rows})
            stats.sessions = self._upsert_sessions(session_rows)
            stats.messages = self._upsert_messages(_last_wins(batch.messages))
            stats.events = self._upsert_events(_last_wins(batch.events))
            stats.artifacts = self._upsert_artifacts(_last_wins(batch.artifacts))
            stats.provenance = self._upsert_provenance(_last_wins(batch.provenance))

            touched = {row["id"] for row in session_rows}
            touched.update(m.session_id for m in batch.messages)
            stats.touched_session_ids = touched
            stats.index_rows = self.search_index.refresh_sessions(touched)
            self.session.flush()
        except SQLAlchemyError as e:
            logger.error("Batch write failed: %s", e)
            raise StoreWriteError(f"Batch write failed: {e}") from e

        logger.debug(
            "Saved batch: %d sessions, %d messages, %d events, %d artifacts, "
            "%d provenance",
            stats.sessions,
            stats.messages,
            stats.events,
            stats.artifacts,
            stats.provenance,
        )
        return stats

    def _upsert_agents(self, agents: set[str]) -> None:
        if not agents:
            return
        stmt = (
            sqlite_insert(Agent.__table__)
            .values([{"id": name} for name in sorted(agents)])
            .on_conflict_do_nothing(index_elements=["id"])
        )
        self.session.execute(stmt)

    def _upsert_sessions(self, rows: list[dict[str, Any]]) -> int:
        for chunk in _rows_in_chunks(rows):
            stmt = sqlite_insert(AgentSession.__table__).values(chunk)
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "title": func.coalesce(excluded.title, AgentSession.title),
                    "source_path": func.coalesce(
                        excluded.source_path, AgentSession.source_path
                    ),
                    # Two-argument min/max are SQLite scalar functions
                    "created_at": func.min(AgentSession.created_at, excluded.created_at),
                    "updated_at": func.max(AgentSession.updated_at, excluded.updated_at),
                },
            )
            self.session.execute(stmt)
        return len(rows)

    def _upsert_messages(self, messages: list[canonical.Message]) -> int:
        rows = [
            {
                "id": m.id,
                "session_id": m.session_id,
                "role": m.role,
                "content": m.content,
                "timestamp": m.timestamp,
                "native_id": m.native_id,
                "raw_data": m.raw_data,
            }
            for m in messages
        ]
        for chunk in _rows_in_chunks(rows):
            stmt = sqlite_insert(Message.__table__).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "role": stmt.excluded.role,
                    "content": stmt.excluded.content,
                    "raw_data": stmt.excluded.raw_data,
                },
            )
            self.session.execute(stmt)
        return len(rows)

    def _upsert_events(self, events: list[canonical.Event]) -> int:
        rows = [
            {
                "id": e.id,
                "session_id": e.session_id,
                "message_id": e.message_id,
                "kind": e.kind,
                "payload": e.payload,
                "timestamp": e.timestamp,
            }
            for e in events
        ]
        for chunk in _rows_in_chunks(rows):
            stmt = sqlite_insert(Event.__table__).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "message_id": stmt.excluded.message_id,
                    "payload": stmt.excluded.payload,
                    "timestamp": stmt.excluded.timestamp,
                },
            )
            self.session.execute(stmt)
        return len(rows)

    def _upsert_artifacts(self, artifacts: list[canonical.Artifact]) -> int:
        rows = [
            {
                "id": a.id,
                "session_id": a.session_id,
                "path": a.path,
                "content_hash": a.content_hash,
                "metadata": a.metadata,
            }
            for a in artifacts
        ]
        for chunk in _rows_in_chunks(rows):
            stmt = sqlite_insert(Artifact.__table__).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "content_hash": func.coalesce(
                        stmt.excluded.content_hash, Artifact.content_hash
                    ),
                    "metadata": stmt.excluded["metadata"],
                },
            )
            self.session.execute(stmt)
        return len(rows)

    def _upsert_provenance(self, records: list[canonical.Provenance]) -> int:
        rows = [
            {
                "id": p.id,
                "entity_type": p.entity_type,
                "entity_id": p.entity_id,
                "session_id": p.session_id,
                "agent": p.agent,
                "source_path": p.source_path,
                "source_offset": p.source_offset,
                "native_id": p.native_id,
                "note": p.note,
            }
            for p in records
        ]
        for chunk in _rows_in_chunks(rows):
            stmt = sqlite_insert(Provenance.__table__).values(chunk)
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={
                    "source_path": stmt.excluded.source_path,
                    "source_offset": stmt.excluded.source_offset,
                    "note": stmt.excluded.note,
                },
            )
            self.session.execute(stmt)
        return len(rows)
