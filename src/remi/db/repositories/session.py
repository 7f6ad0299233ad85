"""
Session repository.
"""

import logging
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from remi.db.repositories.base import BaseRepository
from remi.db.repositories.search_index import SearchIndexRepository
from remi.models import canonical
from remi.models.db import (
    AgentSession,
    Artifact,
    Event,
    Message,
    Provenance,
)

logger = logging.getLogger(__name__)


class SessionRepository(BaseRepository[AgentSession]):
    """Read access to sessions and their children, plus cascading delete."""

    def __init__(self, session: Session):
        super().__init__(AgentSession, session)

    def list(
        self,
        agent: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[AgentSession]:
        """
        List sessions, most recently updated first.

        Args:
            agent: Only sessions from this agent
            limit: Maximum number of results
            offset: Number of results to skip

        Returns:
            List of sessions
        """
        stmt = select(AgentSession).order_by(
            AgentSession.updated_at.desc(), AgentSession.id
        )
        if agent:
            stmt = stmt.where(AgentSession.agent == agent)
        stmt = stmt.offset(offset)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))

    def get_by_prefix(self, id_prefix: str) -> List[AgentSession]:
        """
        Sessions whose id starts with ``id_prefix`` (at most two are returned,
        enough to tell a unique prefix from an ambiguous one).
        """
        stmt = (
            select(AgentSession)
            .where(AgentSession.id.startswith(id_prefix, autoescape=True))
            .order_by(AgentSession.id)
            .limit(2)
        )
        return list(self.session.scalars(stmt))

    def get_many(self, session_ids: Iterable[str]) -> dict[str, AgentSession]:
        ids = list(set(session_ids))
        if not ids:
            return {}
        stmt = select(AgentSession).where(AgentSession.id.in_(ids))
        return {s.id: s for s in self.session.scalars(stmt)}

    def messages(self, session_id: str) -> List[Message]:
        """Messages of a session in chronological order."""
        stmt = (
            select(Message)
            .where(Message.session_id == session_id)
            .order_by(Message.timestamp, Message.id)
        )
        return list(self.session.scalars(stmt))

    def messages_by_id(self, message_ids: Iterable[str]) -> dict[str, Message]:
        ids = list(set(message_ids))
        if not ids:
            return {}
        stmt = select(Message).where(Message.id.in_(ids))
        return {m.id: m for m in self.session.scalars(stmt)}

    def events(self, session_id: str) -> List[Event]:
        stmt = (
            select(Event)
            .where(Event.session_id == session_id)
            .order_by(Event.timestamp, Event.id)
        )
        return list(self.session.scalars(stmt))

    def artifacts(self, session_id: str) -> List[Artifact]:
        stmt = (
            select(Artifact)
            .where(Artifact.session_id == session_id)
            .order_by(Artifact.path)
        )
        return list(self.session.scalars(stmt))

    def provenance(self, session_id: str) -> List[Provenance]:
        stmt = (
            select(Provenance)
            .where(Provenance.session_id == session_id)
            .order_by(Provenance.entity_type, Provenance.entity_id)
        )
        return list(self.session.scalars(stmt))

    def source_paths(self, session_ids: Iterable[str]) -> dict[str, List[str]]:
        """Distinct provenance source paths per session."""
        ids = list(set(session_ids))
        if not ids:
            return {}
        stmt = (
            select(Provenance.session_id, Provenance.source_path)
            .where(Provenance.session_id.in_(ids))
            .distinct()
            .order_by(Provenance.session_id, Provenance.source_path)
        )
        paths: dict[str, List[str]] = {}
        for session_id, source_path in self.session.execute(stmt):
            paths.setdefault(session_id, []).append(source_path)
        return paths

    def export_batch(self, session_ids: Iterable[str]) -> canonical.NormalizedBatch:
        """
        Read sessions and everything attached to them as canonical entities.

        Args:
            session_ids: Sessions to export; unknown ids are skipped

        Returns:
            NormalizedBatch suitable for an archive bundle or save_batch()
        """
        batch = canonical.NormalizedBatch()
        for session_id in sorted(set(session_ids)):
            row = self.get(session_id)
            if row is None:
                continue
            batch.sessions.append(
                canonical.Session(
                    id=row.id,
                    agent=row.agent,
                    native_key=row.native_key,
                    title=row.title,
                    source_path=row.source_path,
                    created_at=row.created_at,
                    updated_at=row.updated_at,
                )
            )
            batch.messages.extend(
                canonical.Message(
                    id=m.id,
                    session_id=m.session_id,
                    role=m.role,
                    content=m.content,
                    timestamp=m.timestamp,
                    native_id=m.native_id,
                    raw_data=m.raw_data,
                )
                for m in self.messages(session_id)
            )
            batch.events.extend(
                canonical.Event(
                    id=e.id,
                    session_id=e.session_id,
                    message_id=e.message_id,
                    kind=e.kind,
                    payload=e.payload,
                    timestamp=e.timestamp,
                )
                for e in self.events(session_id)
            )
            batch.artifacts.extend(
                canonical.Artifact(
                    id=a.id,
                    session_id=a.session_id,
                    path=a.path,
                    content_hash=a.content_hash,
                    metadata=a.extra_data,
                )
                for a in self.artifacts(session_id)
            )
            batch.provenance.extend(
                canonical.Provenance(
                    id=p.id,
                    entity_type=p.entity_type,
                    entity_id=p.entity_id,
                    session_id=p.session_id,
                    agent=p.agent,
                    source_path=p.source_path,
                    source_offset=p.source_offset,
                    native_id=p.native_id,
                    note=p.note,
                )
                for p in self.provenance(session_id)
            )
        return batch

    def count_by_agent(self) -> dict[str, int]:
        stmt = (
            select(AgentSession.agent, func.count())
            .group_by(AgentSession.agent)
            .order_by(AgentSession.agent)
        )
        return {agent: n for agent, n in self.session.execute(stmt)}

    def delete_cascade(self, session_ids: Iterable[str]) -> int:
        """
        Delete sessions with everything derived from them.

        Messages, events, artifacts and embeddings go through the foreign-key
        cascade; search index rows and provenance are removed explicitly.

        Args:
            session_ids: Sessions to delete

        Returns:
            Number of session rows deleted
        """
        ids = sorted(set(session_ids))
        if not ids:
            return 0

        SearchIndexRepository(self.session).delete_sessions(ids)
        self.session.execute(
            delete(Provenance)
            .where(Provenance.session_id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(
            delete(AgentSession)
            .where(AgentSession.id.in_(ids))
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount or 0
        logger.info("Deleted %d sessions", deleted)
        return deleted
