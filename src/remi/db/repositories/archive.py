"""
Archive run repository.
"""

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from remi.db.repositories.base import BaseRepository
from remi.exceptions import ArchiveRunNotFoundError
from remi.identity import derive_id
from remi.models.db import (
    ArchiveDisposition,
    ArchiveItem,
    ArchiveRun,
    ArchiveRunStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


class ArchiveRepository(BaseRepository[ArchiveRun]):
    """Repository for archive runs and their items."""

    def __init__(self, session: Session):
        super().__init__(ArchiveRun, session)

    def create_run(
        self,
        run_id: str,
        policy: dict,
        selections: Iterable[tuple[str, str]],
        created_at: Optional[datetime] = None,
    ) -> ArchiveRun:
        """
        Persist a planned run and its items.

        Args:
            run_id: New run id
            policy: Policy snapshot (older_than_secs, keep_latest, cutoff)
            selections: (session_id, agent) pairs selected by the plan
            created_at: Planning time

        Returns:
            The new ArchiveRun
        """
        run = ArchiveRun(
            id=run_id,
            created_at=created_at or utcnow(),
            status=ArchiveRunStatus.PLANNED,
            policy=policy,
        )
        for session_id, agent in selections:
            run.items.append(
                ArchiveItem(
                    id=derive_id("archive_item", run_id, session_id),
                    session_id=session_id,
                    agent=agent,
                    disposition=ArchiveDisposition.PLANNED,
                )
            )
        self.session.add(run)
        self.session.flush()
        logger.info("Planned archive run %s with %d items", run_id, len(run.items))
        return run

    def require(self, run_id: str) -> ArchiveRun:
        """
        Get a run with its items loaded.

        Raises:
            ArchiveRunNotFoundError: If no run has this id
        """
        stmt = (
            select(ArchiveRun)
            .where(ArchiveRun.id == run_id)
            .options(selectinload(ArchiveRun.items))
        )
        run = self.session.scalars(stmt).first()
        if run is None:
            raise ArchiveRunNotFoundError(run_id)
        return run

    def list_runs(self, limit: Optional[int] = None) -> List[ArchiveRun]:
        stmt = select(ArchiveRun).order_by(ArchiveRun.created_at.desc(), ArchiveRun.id)
        if limit:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))

    def mark_executed(
        self,
        run_id: str,
        bundle_path: str,
        manifest_path: str,
        disposition: ArchiveDisposition,
    ) -> ArchiveRun:
        """Record a completed execution and the disposition of every item."""
        run = self.require(run_id)
        run.status = ArchiveRunStatus.EXECUTED
        run.executed_at = utcnow()
        run.bundle_path = bundle_path
        run.manifest_path = manifest_path
        run.error_message = None
        for item in run.items:
            item.disposition = disposition
        self.session.flush()
        return run

    def mark_failed(self, run_id: str, error: str) -> ArchiveRun:
        """Record a failed execution; items keep their disposition."""
        run = self.require(run_id)
        run.status = ArchiveRunStatus.FAILED
        run.error_message = error
        self.session.flush()
        return run
