"""
Archive safety engine.

Retention runs in two steps. ``plan`` selects sessions and persists an
immutable run; ``run`` either reports what would happen (dry run) or writes a
checksummed bundle, verifies it by re-reading every file, and only then, if
asked, deletes the archived sessions from the store. ``restore`` loads a
bundle back through the normal upsert path.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError

from remi.adapters.registry import AdapterRegistry
from remi.archive.bundle import (
    MANIFEST_FILENAME,
    RawSource,
    VerifiedBundle,
    load_bundle,
    raw_relative_path,
    verify_bundle,
    write_bundle,
)
from remi.config import Settings, settings as default_settings
from remi.db.connection import db_session, get_session
from remi.db.repositories import (
    ArchiveRepository,
    CanonicalRepository,
    SessionRepository,
)
from remi.exceptions import (
    ArchiveRunStateError,
    ArchiveVerificationError,
    ArchiveWriteError,
    StoreWriteError,
)
from remi.models.canonical import ArchiveCapability, NormalizedBatch, ensure_utc
from remi.models.db import ArchiveDisposition, ArchiveRunStatus, utcnow
from remi.search.vectors import invalidate_vector_cache

logger = logging.getLogger(__name__)


class ArchiveStatus(str, Enum):
    """Outcome of an archive operation as reported to callers."""

    PLANNED = "planned"
    DRY_RUN = "dry_run"
    EXECUTED = "executed"
    FAILED = "failed"
    RESTORED = "restored"


@dataclass
class PlannedSession:
    session_id: str
    agent: str
    updated_at: datetime
    title: Optional[str] = None


@dataclass
class ArchivePlan:
    """A persisted selection of sessions to archive."""

    run_id: str
    created_at: datetime
    cutoff: datetime
    older_than: timedelta
    keep_latest: int
    sessions: list[PlannedSession] = field(default_factory=list)
    status: ArchiveStatus = ArchiveStatus.PLANNED

    @property
    def session_ids(self) -> list[str]:
        return [s.session_id for s in self.sessions]

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "cutoff": self.cutoff.isoformat(),
            "older_than_secs": int(self.older_than.total_seconds()),
            "keep_latest": self.keep_latest,
            "sessions": [
                {
                    "session_id": s.session_id,
                    "agent": s.agent,
                    "updated_at": s.updated_at.isoformat(),
                    "title": s.title,
                }
                for s in self.sessions
            ],
        }


@dataclass
class ArchiveReport:
    """Result of :meth:`ArchiveEngine.run`."""

    run_id: str
    status: ArchiveStatus
    session_ids: list[str] = field(default_factory=list)
    delete_source: bool = False
    bundle_path: Optional[str] = None
    manifest_path: Optional[str] = None
    files: int = 0
    deleted: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "sessions": len(self.session_ids),
            "session_ids": self.session_ids,
            "delete_source": self.delete_source,
            "bundle_path": self.bundle_path,
            "manifest_path": self.manifest_path,
            "files": self.files,
            "deleted": self.deleted,
            "error": self.error,
        }


@dataclass
class RestoreReport:
    """Result of :meth:`ArchiveEngine.restore`."""

    bundle_path: str
    run_id: Optional[str]
    verified: bool
    sessions: int = 0
    messages: int = 0
    events: int = 0
    artifacts: int = 0
    provenance: int = 0
    status: ArchiveStatus = ArchiveStatus.RESTORED

    def to_dict(self) -> dict[str, Any]:
        return {
            "bundle_path": self.bundle_path,
            "run_id": self.run_id,
            "status": self.status.value,
            "verified": self.verified,
            "sessions": self.sessions,
            "messages": self.messages,
            "events": self.events,
            "artifacts": self.artifacts,
            "provenance": self.provenance,
        }


class ArchiveEngine:
    """
    Plans, executes and restores archive runs.

    Example:
        >>> archive = ArchiveEngine(store_engine, registry)
        >>> plan = archive.plan(timedelta(days=30), keep_latest=5)
        >>> archive.run(plan.run_id, execute=True, delete_source=True)
    """

    def __init__(
        self,
        engine: Engine,
        registry: AdapterRegistry,
        config: Optional[Settings] = None,
    ):
        self.engine = engine
        self.registry = registry
        self.config = config or default_settings

    def plan(
        self,
        older_than: timedelta,
        keep_latest: int,
        now: Optional[datetime] = None,
    ) -> ArchivePlan:
        """
        Select sessions to archive and persist the selection as a new run.

        Per agent, sessions are ordered newest first; the first
        ``keep_latest`` are always kept, and of the rest those last updated
        before ``now - older_than`` are selected.

        Args:
            older_than: Minimum age since last update
            keep_latest: Newest sessions per agent that are never selected
            now: Reference time (default: current time)

        Returns:
            The persisted plan (an independent snapshot; earlier plans are
            not consulted)

        Raises:
            ValueError: If older_than or keep_latest is negative
        """
        if older_than < timedelta(0):
            raise ValueError("older_than cannot be negative")
        if keep_latest < 0:
            raise ValueError("keep_latest cannot be negative")

        now = ensure_utc(now) if now else utcnow()
        cutoff = now - older_than
        run_id = uuid.uuid4().hex

        with db_session(self.engine) as db:
            by_agent: dict[str, list] = {}
            for session in SessionRepository(db).list():
                by_agent.setdefault(session.agent, []).append(session)

            selected: list[PlannedSession] = []
            for agent in sorted(by_agent):
                for position, session in enumerate(by_agent[agent]):
                    if position < keep_latest:
                        continue
                    if session.updated_at < cutoff:
                        selected.append(
                            PlannedSession(
                                session_id=session.id,
                                agent=agent,
                                updated_at=session.updated_at,
                                title=session.title,
                            )
                        )

            ArchiveRepository(db).create_run(
                run_id,
                policy={
                    "older_than_secs": int(older_than.total_seconds()),
                    "keep_latest": keep_latest,
                    "cutoff": cutoff.isoformat(),
                },
                selections=[(s.session_id, s.agent) for s in selected],
                created_at=now,
            )

        return ArchivePlan(
            run_id=run_id,
            created_at=now,
            cutoff=cutoff,
            older_than=older_than,
            keep_latest=keep_latest,
            sessions=selected,
        )

    def run(
        self,
        run_id: str,
        execute: bool = False,
        dry_run: bool = False,
        delete_source: bool = False,
    ) -> ArchiveReport:
        """
        Execute (or dry-run) a planned archive run.

        A dry run is performed when ``dry_run`` is set or ``execute`` is not;
        it writes nothing.

        Args:
            run_id: Planned run id
            execute: Write the bundle
            dry_run: Only report; overrides ``execute``
            delete_source: After verification, delete the archived sessions

        Returns:
            ArchiveReport

        Raises:
            ArchiveRunNotFoundError: If the run does not exist
            ArchiveRunStateError: If the run was already executed
            ArchiveVerificationError: If a written file does not match its
                checksum; the run is marked failed and nothing is deleted
            ArchiveWriteError: If the archive files cannot be written
        """
        with db_session(self.engine) as db:
            run = ArchiveRepository(db).require(run_id)
            status = run.status
            items = [(item.session_id, item.agent) for item in run.items]
        session_ids = [session_id for session_id, _ in items]

        if dry_run or not execute:
            logger.info(
                "Dry run of archive %s: %d sessions (delete_source=%s)",
                run_id,
                len(items),
                delete_source,
            )
            return ArchiveReport(
                run_id=run_id,
                status=ArchiveStatus.DRY_RUN,
                session_ids=session_ids,
                delete_source=delete_source,
            )

        if status == ArchiveRunStatus.EXECUTED:
            raise ArchiveRunStateError(run_id, status.value, "execute")

        directory = self.config.archive_directory / run_id
        try:
            with get_session(self.engine) as db:
                batch = SessionRepository(db).export_batch(session_ids)
            raw_sources = self._collect_raw_sources(batch, items)
            write_bundle(directory, run_id, batch, raw_sources, created_at=utcnow())
            verified = verify_bundle(directory)
        except ArchiveVerificationError as e:
            self._mark_failed(run_id, str(e))
            raise
        except OSError as e:
            self._mark_failed(run_id, str(e))
            raise ArchiveWriteError(f"Cannot write archive {directory}: {e}") from e

        deleted = self._finish(run_id, verified, delete_source)
        logger.info(
            "Executed archive %s: %d sessions, %d files, %d deleted",
            run_id,
            len(verified.session_ids),
            len(verified.manifest.files),
            deleted,
        )
        return ArchiveReport(
            run_id=run_id,
            status=ArchiveStatus.EXECUTED,
            session_ids=sorted(verified.session_ids),
            delete_source=delete_source,
            bundle_path=str(verified.bundle_path),
            manifest_path=str(verified.manifest_path),
            files=len(verified.manifest.files),
            deleted=deleted,
        )

    def restore(self, bundle_path: Path | str) -> RestoreReport:
        """
        Load a bundle back into the store.

        The bundle is verified against the manifest next to it when one
        exists. Entities go through the normal upsert, so restoring twice
        creates no duplicates. The run row is left untouched.

        Raises:
            ArchiveVerificationError: If the manifest check fails
            BundleFormatError: If the bundle cannot be parsed
            StoreWriteError: If the upsert fails
        """
        path = Path(bundle_path).expanduser()
        verified = False
        if (path.parent / MANIFEST_FILENAME).exists():
            verify_bundle(path.parent)
            verified = True
        else:
            logger.warning("No manifest next to %s; restoring unverified", path)

        run_id, batch = load_bundle(path)
        try:
            with db_session(self.engine) as db:
                stats = CanonicalRepository(db).save_batch(batch)
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Restore commit failed: {e}") from e

        logger.info("Restored %d sessions from %s", stats.sessions, path)
        return RestoreReport(
            bundle_path=str(path),
            run_id=run_id,
            verified=verified,
            sessions=stats.sessions,
            messages=stats.messages,
            events=stats.events,
            artifacts=stats.artifacts,
            provenance=stats.provenance,
        )

    def _collect_raw_sources(
        self, batch: NormalizedBatch, items: list[tuple[str, str]]
    ) -> list[RawSource]:
        """Raw files to preserve, per the capability of each agent's adapter."""
        sessions_by_agent: dict[str, list[str]] = {}
        for session_id, agent in items:
            sessions_by_agent.setdefault(agent, []).append(session_id)

        paths_by_session: dict[str, set[str]] = {}
        for session in batch.sessions:
            if session.source_path:
                paths_by_session.setdefault(session.id, set()).add(session.source_path)
        for record in batch.provenance:
            if record.session_id:
                paths_by_session.setdefault(record.session_id, set()).add(record.source_path)

        sources: dict[str, RawSource] = {}
        for agent in sorted(sessions_by_agent):
            adapter = self.registry.find(agent)
            if adapter is None:
                logger.warning("No adapter for %s; archiving canonical rows only", agent)
                continue

            if adapter.archive_capability() == ArchiveCapability.NATIVE:
                descriptor = adapter.execute_archive(sessions_by_agent[agent])
                candidates = {str(Path(f)) for f in descriptor.files}
            else:
                candidates = set()
                for session_id in sessions_by_agent[agent]:
                    candidates |= paths_by_session.get(session_id, set())

            for candidate in sorted(candidates):
                source = Path(candidate)
                if not source.is_file():
                    logger.warning("Raw source %s is gone; not copied", source)
                    continue
                relative = raw_relative_path(agent, source)
                sources.setdefault(relative, RawSource(source, relative))
        return list(sources.values())

    def _finish(self, run_id: str, verified: VerifiedBundle, delete_source: bool) -> int:
        """Delete (when asked) and mark the run executed, in one transaction."""
        if not isinstance(verified, VerifiedBundle):
            raise TypeError("Archived sessions can only be deleted with a VerifiedBundle")

        deleted = 0
        with db_session(self.engine) as db:
            if delete_source:
                deleted = SessionRepository(db).delete_cascade(verified.session_ids)
            ArchiveRepository(db).mark_executed(
                run_id,
                bundle_path=str(verified.bundle_path),
                manifest_path=str(verified.manifest_path),
                disposition=(
                    ArchiveDisposition.COPIED_AND_DELETED
                    if delete_source
                    else ArchiveDisposition.COPIED
                ),
            )
        if deleted:
            invalidate_vector_cache()
        return deleted

    def _mark_failed(self, run_id: str, error: str) -> None:
        logger.error("Archive run %s failed: %s", run_id, error)
        with db_session(self.engine) as db:
            ArchiveRepository(db).mark_failed(run_id, error)
