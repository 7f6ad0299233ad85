"""
Incremental ingestion engine.

Runs one adapter at a time through discover → scan → normalize → commit.
Records are committed in sorted chunks; each chunk is one transaction, and
the agent's checkpoint only moves after that transaction has committed. A
crash between the two leaves the checkpoint behind, so the next sync re-reads
records that upsert to the same ids.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import Engine
from sqlalchemy.exc import SQLAlchemyError

from remi.adapters.base import SourceAdapter
from remi.adapters.registry import AdapterRegistry
from remi.config import Settings, settings as default_settings
from remi.db.connection import db_session
from remi.db.repositories import (
    CanonicalRepository,
    CheckpointRepository,
    EmbeddingRepository,
)
from remi.embeddings import TextEmbedder
from remi.exceptions import NormalizationError, RemiError, SourceReadError, StoreWriteError
from remi.identity import derive_id
from remi.models.canonical import (
    Cursor,
    NativeRecord,
    NormalizedBatch,
    Provenance,
)
from remi.pipeline.embeddings import embed_messages

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    """Stages reported while an agent syncs."""

    DISCOVERING = "discovering"
    SCANNING = "scanning"
    NORMALIZING = "normalizing"
    SAVING = "saving"
    DONE = "done"


@dataclass
class SyncProgress:
    """
    Progress update passed to ``on_progress``.

    ``current``/``total`` count locations while scanning, records while
    normalizing and messages while saving.
    """

    agent: str
    phase: SyncPhase
    current: int = 0
    total: int = 0


ProgressCallback = Callable[[SyncProgress], None]


@dataclass
class SyncResult:
    """Outcome of syncing one agent."""

    agent: str
    locations: int = 0
    unreadable_locations: list[str] = field(default_factory=list)
    records: int = 0
    dropped_records: int = 0
    sessions: int = 0
    messages: int = 0
    events: int = 0
    artifacts: int = 0
    chunks_committed: int = 0
    embedded: int = 0
    cursor: Optional[Cursor] = None
    error: Optional[str] = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent": self.agent,
            "ok": self.ok,
            "locations": self.locations,
            "unreadable_locations": self.unreadable_locations,
            "records": self.records,
            "dropped_records": self.dropped_records,
            "sessions": self.sessions,
            "messages": self.messages,
            "events": self.events,
            "artifacts": self.artifacts,
            "chunks_committed": self.chunks_committed,
            "embedded": self.embedded,
            "cursor": (
                {
                    "timestamp": self.cursor.timestamp.isoformat(),
                    "native_id": self.cursor.native_id,
                }
                if self.cursor
                else None
            ),
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


def _dropped_record_provenance(
    agent: str, record: NativeRecord, error: Exception
) -> Provenance:
    entity_id = derive_id("dropped_record", agent, record.location, record.native_id)
    return Provenance(
        id=derive_id("provenance", "dropped_record", entity_id),
        entity_type="dropped_record",
        entity_id=entity_id,
        agent=agent,
        source_path=record.location,
        source_offset=record.offset,
        native_id=record.native_id,
        note=str(error),
    )


class IngestionEngine:
    """
    Ingests every registered agent into the canonical store.

    Example:
        >>> engine = IngestionEngine(store_engine, build_default_registry(settings))
        >>> result = engine.sync("claude")
        >>> result.messages
        42
    """

    def __init__(
        self,
        engine: Engine,
        registry: AdapterRegistry,
        config: Optional[Settings] = None,
        embedder: Optional[TextEmbedder] = None,
    ):
        self.engine = engine
        self.registry = registry
        self.config = config or default_settings
        self.embedder = embedder

    def sync(self, agent: str, on_progress: Optional[ProgressCallback] = None) -> SyncResult:
        """
        Ingest everything an agent wrote since its checkpoint.

        Args:
            agent: Registered agent name
            on_progress: Optional progress callback

        Returns:
            SyncResult with counts and the committed cursor

        Raises:
            UnknownAgentError: If no adapter is registered for ``agent``
            StoreWriteError: If a chunk cannot be committed; earlier chunks
                and their checkpoint stay committed
        """
        adapter = self.registry.get(agent)
        result = SyncResult(agent=agent)
        self._sync(adapter, result, on_progress)
        return result

    def sync_all(self, on_progress: Optional[ProgressCallback] = None) -> list[SyncResult]:
        """
        Sync every registered agent; one agent failing does not stop the rest.

        Returns:
            One SyncResult per agent, failures carrying ``error``
        """
        results: list[SyncResult] = []
        for adapter in self.registry:
            result = SyncResult(agent=adapter.agent)
            try:
                self._sync(adapter, result, on_progress)
            except RemiError as e:
                logger.error("Sync failed for %s: %s", adapter.agent, e)
                result.error = str(e)
            except Exception as e:
                logger.error("Sync failed for %s: %s", adapter.agent, e, exc_info=True)
                result.error = str(e) or type(e).__name__
            results.append(result)
        return results

    def _sync(
        self,
        adapter: SourceAdapter,
        result: SyncResult,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        agent = adapter.agent
        start_ms = time.time() * 1000

        def notify(phase: SyncPhase, current: int = 0, total: int = 0) -> None:
            if on_progress:
                on_progress(SyncProgress(agent, phase, current, total))

        try:
            notify(SyncPhase.DISCOVERING)
            with db_session(self.engine) as db:
                cursor = CheckpointRepository(db).get_cursor(agent)
            result.cursor = cursor

            locations = sorted(adapter.discover())
            result.locations = len(locations)
            logger.info("Syncing %s: %d locations, cursor=%s", agent, len(locations), cursor)

            records = self._scan(adapter, locations, cursor, result, notify)
            records.sort(key=lambda r: (r.timestamp, r.native_id))
            if cursor is not None:
                records = [r for r in records if not cursor.covers(r.timestamp, r.native_id)]
            result.records = len(records)

            batch_size = max(1, self.config.ingest_batch_size)
            normalized = 0
            for start in range(0, len(records), batch_size):
                chunk = records[start : start + batch_size]
                batch = self._normalize(adapter, chunk, result)
                normalized += len(chunk)
                notify(SyncPhase.NORMALIZING, normalized, len(records))

                self._commit(batch, result)
                notify(SyncPhase.SAVING, result.messages, result.messages)

                chunk_cursor = max(adapter.checkpoint_cursor_for(r) for r in chunk)
                self._advance(agent, chunk_cursor, result)

                if self.embedder is not None and batch.messages:
                    result.embedded += self._embed(batch)

            notify(SyncPhase.DONE, result.records, result.records)
        finally:
            result.duration_ms = int(time.time() * 1000 - start_ms)

        logger.info(
            "Synced %s: %d records, %d messages, %d dropped in %dms",
            agent,
            result.records,
            result.messages,
            result.dropped_records,
            result.duration_ms,
        )

    def _scan(
        self,
        adapter: SourceAdapter,
        locations: list[str],
        cursor: Optional[Cursor],
        result: SyncResult,
        notify: Callable[..., None],
    ) -> list[NativeRecord]:
        notify(SyncPhase.SCANNING, 0, len(locations))
        if not locations:
            return []

        records: list[NativeRecord] = []
        workers = max(1, min(self.config.ingest_workers, len(locations)))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix=f"remi-scan-{adapter.agent}"
        ) as pool:
            futures = {
                pool.submit(lambda loc: list(adapter.scan(loc, cursor)), location): location
                for location in locations
            }
            for done, future in enumerate(as_completed(futures), start=1):
                location = futures[future]
                try:
                    records.extend(future.result())
                except SourceReadError as e:
                    logger.warning("Skipping unreadable location: %s", e)
                    result.unreadable_locations.append(location)
                except Exception as e:
                    logger.warning(
                        "Skipping location %s after scan error: %s", location, e, exc_info=True
                    )
                    result.unreadable_locations.append(location)
                notify(SyncPhase.SCANNING, done, len(locations))

        result.unreadable_locations.sort()
        return records

    def _normalize(
        self, adapter: SourceAdapter, chunk: list[NativeRecord], result: SyncResult
    ) -> NormalizedBatch:
        batch = NormalizedBatch()
        for record in chunk:
            try:
                batch.extend(adapter.normalize(record))
            except (NormalizationError, KeyError, TypeError, ValueError) as e:
                logger.warning(
                    "Dropping record %s from %s: %s", record.native_id, record.location, e
                )
                result.dropped_records += 1
                batch.provenance.append(_dropped_record_provenance(adapter.agent, record, e))
        return batch

    def _commit(self, batch: NormalizedBatch, result: SyncResult) -> None:
        try:
            with db_session(self.engine) as db:
                stats = CanonicalRepository(db).save_batch(batch)
        except SQLAlchemyError as e:
            # Commit-time failures surface outside save_batch
            raise StoreWriteError(f"Batch commit failed: {e}") from e

        result.sessions += stats.sessions
        result.messages += stats.messages
        result.events += stats.events
        result.artifacts += stats.artifacts
        result.chunks_committed += 1

    def _advance(self, agent: str, cursor: Cursor, result: SyncResult) -> None:
        try:
            with db_session(self.engine) as db:
                CheckpointRepository(db).advance(agent, cursor)
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Checkpoint update failed for {agent}: {e}") from e
        result.cursor = cursor

    def _embed(self, batch: NormalizedBatch) -> int:
        pairs = [(m.id, m.content) for m in batch.messages]
        try:
            with db_session(self.engine) as db:
                return embed_messages(EmbeddingRepository(db), self.embedder, pairs)
        except Exception as e:
            logger.warning("Embedding %d messages failed: %s", len(pairs), e)
            return 0
