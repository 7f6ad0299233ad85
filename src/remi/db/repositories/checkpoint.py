"""
Checkpoint repository.
"""

import logging
from typing import Optional

from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from remi.db.repositories.base import BaseRepository
from remi.models.canonical import Cursor
from remi.models.db import Agent, Checkpoint, utcnow

logger = logging.getLogger(__name__)


class CheckpointRepository(BaseRepository[Checkpoint]):
    """Per-agent ingestion watermarks."""

    def __init__(self, session: Session):
        super().__init__(Checkpoint, session)

    def get_cursor(self, agent: str) -> Optional[Cursor]:
        """
        Get the committed cursor for an agent.

        Returns:
            Cursor, or None if the agent was never synced
        """
        checkpoint = self.get(agent)
        if checkpoint is None:
            return None
        return Cursor(checkpoint.cursor_ts, checkpoint.cursor_native_id)

    def advance(self, agent: str, cursor: Cursor) -> bool:
        """
        Move an agent's checkpoint forward to ``cursor``.

        The checkpoint never moves backwards: a cursor at or before the
        stored one is ignored.

        Args:
            agent: Agent name
            cursor: Highest committed record cursor

        Returns:
            True if the checkpoint moved
        """
        current = self.get_cursor(agent)
        if current is not None and cursor <= current:
            logger.debug(
                "Checkpoint for %s not advanced: %s <= %s", agent, cursor, current
            )
            return False

        self.session.execute(
            sqlite_insert(Agent.__table__)
            .values(id=agent, created_at=utcnow())
            .on_conflict_do_nothing(index_elements=["id"])
        )

        checkpoint = self.get(agent)
        if checkpoint is None:
            checkpoint = Checkpoint(agent=agent)
            self.session.add(checkpoint)
        checkpoint.cursor_ts = cursor.timestamp
        checkpoint.cursor_native_id = cursor.native_id
        checkpoint.updated_at = utcnow()
        self.session.flush()
        logger.debug("Checkpoint for %s advanced to %s", agent, cursor)
        return True

    def all_cursors(self) -> dict[str, Cursor]:
        return {
            cp.agent: Cursor(cp.cursor_ts, cp.cursor_native_id)
            for cp in self.get_all()
        }
