"""
Tests for the ingestion engine.
"""

import os
import time
from datetime import timedelta

import pytest
from sqlalchemy import delete, func, select

from remi.db.connection import get_session
from remi.db.repositories import CheckpointRepository, EmbeddingRepository
from remi.exceptions import StoreWriteError, UnknownAgentError
from remi.models.canonical import Cursor
from remi.models.db import AgentSession, Checkpoint, Message, Provenance
from remi.pipeline.ingestion import IngestionEngine, SyncPhase

from factories import BASE_TIME, iso, pi_record, write_jsonl


def _count(engine, model) -> int:
    with get_session(engine) as db:
        return db.scalar(select(func.count()).select_from(model))


def _cursor(engine, agent):
    with get_session(engine) as db:
        return CheckpointRepository(db).get_cursor(agent)


class FakeEmbedder:
    """Deterministic two-dimensional embedder."""

    model_name = "fake"
    dimension = 2

    def embed(self, text):
        return [float(len(text)), 1.0]

    def embed_query(self, text):
        return self.embed(text)

    def embed_many(self, texts, batch_size=32):
        return [self.embed(t) for t in texts]


class TestSync:
    """Tests for IngestionEngine.sync."""

    def test_ingests_sessions_and_messages(self, store_engine, registry, config, pi_dir):
        write_jsonl(
            pi_dir / "s1.jsonl",
            [
                pi_record(f"m{i}", "s1", f"message {i}", BASE_TIME + timedelta(minutes=i))
                for i in range(5)
            ],
        )
        write_jsonl(pi_dir / "nested" / "s2.jsonl", [pi_record("x", "s2", "other", BASE_TIME)])

        result = IngestionEngine(store_engine, registry, config).sync("pi")

        assert result.ok
        assert result.locations == 2
        assert result.records == 6
        assert result.messages == 6
        # batch size 3 -> two chunks
        assert result.chunks_committed == 2
        assert _count(store_engine, AgentSession) == 2
        assert _count(store_engine, Message) == 6
        assert result.cursor == Cursor(BASE_TIME + timedelta(minutes=4), "m4")

    def test_reingest_is_idempotent(self, store_engine, registry, config, pi_dir):
        """Syncing the same sources again adds nothing."""
        write_jsonl(pi_dir / "s1.jsonl", [pi_record("m1", "s1", "hello", BASE_TIME)])
        engine = IngestionEngine(store_engine, registry, config)

        engine.sync("pi")
        second = engine.sync("pi")

        assert second.records == 0
        assert _count(store_engine, Message) == 1
        assert _count(store_engine, Provenance) == 2

    def test_replay_without_checkpoint_creates_no_duplicates(
        self, store_engine, registry, config, pi_dir
    ):
        """Even if the checkpoint is lost, ids keep the store duplicate-free."""
        write_jsonl(pi_dir / "s1.jsonl", [pi_record("m1", "s1", "hello", BASE_TIME)])
        IngestionEngine(store_engine, registry, config).sync("pi")
        with get_session(store_engine) as db:
            db.execute(delete(Checkpoint))
            db.commit()

        result = IngestionEngine(store_engine, registry, config).sync("pi")

        assert result.records == 1
        assert _count(store_engine, Message) == 1

    def test_appended_records_are_picked_up(self, store_engine, registry, config, pi_dir):
        path = write_jsonl(pi_dir / "s1.jsonl", [pi_record("m1", "s1", "first", BASE_TIME)])
        engine = IngestionEngine(store_engine, registry, config)
        engine.sync("pi")

        write_jsonl(
            path,
            [pi_record("m2", "s1", "second", BASE_TIME + timedelta(minutes=1))],
            append=True,
        )
        result = engine.sync("pi")

        assert result.records == 1
        assert _count(store_engine, Message) == 2
        assert _cursor(store_engine, "pi") == Cursor(BASE_TIME + timedelta(minutes=1), "m2")

    def test_same_timestamp_records_are_both_retained(
        self, store_engine, registry, config, pi_dir
    ):
        write_jsonl(
            pi_dir / "s1.jsonl",
            [
                pi_record("a", "s1", "first", BASE_TIME),
                pi_record("b", "s1", "second", BASE_TIME),
            ],
        )

        IngestionEngine(store_engine, registry, config).sync("pi")

        assert _count(store_engine, Message) == 2

    def test_same_timestamp_record_after_checkpoint_is_not_skipped(
        self, store_engine, registry, config, pi_dir
    ):
        path = write_jsonl(pi_dir / "s1.jsonl", [pi_record("a", "s1", "first", BASE_TIME)])
        engine = IngestionEngine(store_engine, registry, config)
        engine.sync("pi")

        write_jsonl(path, [pi_record("b", "s1", "second", BASE_TIME)], append=True)
        engine.sync("pi")

        assert _count(store_engine, Message) == 2

    def test_checkpoint_is_max_over_parallel_locations(
        self, store_engine, registry, config, pi_dir
    ):
        """Files finish scanning in any order; the cursor is still the maximum."""
        for n in range(4):
            write_jsonl(
                pi_dir / f"s{n}.jsonl",
                [pi_record(f"m{n}", f"s{n}", "text", BASE_TIME + timedelta(minutes=10 - n))],
            )

        IngestionEngine(store_engine, registry, config).sync("pi")

        assert _cursor(store_engine, "pi") == Cursor(BASE_TIME + timedelta(minutes=10), "m0")

    def test_malformed_record_is_dropped_and_recorded(
        self, store_engine, registry, config, pi_dir
    ):
        write_jsonl(
            pi_dir / "s1.jsonl",
            [
                {"type": "message", "id": "bad", "timestamp": iso(BASE_TIME), "message": 3},
                pi_record("good", "s1", "fine", BASE_TIME),
            ],
        )

        result = IngestionEngine(store_engine, registry, config).sync("pi")

        assert result.dropped_records == 1
        assert _count(store_engine, Message) == 1
        with get_session(store_engine) as db:
            dropped = db.scalars(
                select(Provenance).where(Provenance.entity_type == "dropped_record")
            ).all()
        assert [p.native_id for p in dropped] == ["bad"]
        # dropped records still advance the checkpoint
        assert _cursor(store_engine, "pi") == Cursor(BASE_TIME, "good")

    def test_append_to_undated_file_adds_only_new_records(
        self, store_engine, registry, config, pi_dir
    ):
        """Records without timestamps keep their ids when the file grows."""
        path = write_jsonl(
            pi_dir / "s1.jsonl",
            [pi_record(f"m{i}", "s1", f"undated {i}", None) for i in range(1, 4)],
        )
        engine = IngestionEngine(store_engine, registry, config)
        engine.sync("pi")
        assert _count(store_engine, Message) == 3

        write_jsonl(path, [pi_record("m4", "s1", "undated 4", None)], append=True)
        later = time.time() + 3600
        os.utime(path, (later, later))
        engine.sync("pi")

        assert _count(store_engine, Message) == 4

    def test_unknown_agent(self, store_engine, registry, config):
        with pytest.raises(UnknownAgentError):
            IngestionEngine(store_engine, registry, config).sync("nope")

    def test_commit_failure_leaves_checkpoint_untouched(
        self, store_engine, registry, config, pi_dir, monkeypatch
    ):
        write_jsonl(pi_dir / "s1.jsonl", [pi_record("m1", "s1", "hello", BASE_TIME)])

        def fail(self, batch):
            raise StoreWriteError("disk full")

        monkeypatch.setattr("remi.db.repositories.CanonicalRepository.save_batch", fail)

        with pytest.raises(StoreWriteError):
            IngestionEngine(store_engine, registry, config).sync("pi")

        assert _cursor(store_engine, "pi") is None
        assert _count(store_engine, Message) == 0

    def test_progress_callback(self, store_engine, registry, config, pi_dir):
        write_jsonl(pi_dir / "s1.jsonl", [pi_record("m1", "s1", "hello", BASE_TIME)])
        phases = []

        IngestionEngine(store_engine, registry, config).sync(
            "pi", on_progress=lambda p: phases.append(p.phase)
        )

        assert phases[0] == SyncPhase.DISCOVERING
        assert phases[-1] == SyncPhase.DONE

    def test_new_messages_are_embedded(self, store_engine, registry, config, pi_dir):
        write_jsonl(
            pi_dir / "s1.jsonl",
            [pi_record("m1", "s1", "hello", BASE_TIME), pi_record("m2", "s1", "bye", BASE_TIME)],
        )

        result = IngestionEngine(
            store_engine, registry, config, embedder=FakeEmbedder()
        ).sync("pi")

        assert result.embedded == 2
        with get_session(store_engine) as db:
            assert EmbeddingRepository(db).count() == 2


class TestSyncAll:
    def test_one_agent_failing_does_not_stop_others(
        self, store_engine, registry, config, pi_dir, claude_dir, monkeypatch
    ):
        write_jsonl(pi_dir / "s1.jsonl", [pi_record("m1", "s1", "hello", BASE_TIME)])
        write_jsonl(
            claude_dir / "c.jsonl",
            [
                {
                    "uuid": "u1",
                    "sessionId": "c",
                    "type": "user",
                    "timestamp": "2025-01-01T00:00:00Z",
                    "content": "hi",
                }
            ],
        )
        def broken(record):
            raise StoreWriteError("boom")

        monkeypatch.setattr(registry.get("claude"), "normalize", broken)

        results = {r.agent: r for r in IngestionEngine(store_engine, registry, config).sync_all()}

        assert set(results) == {"claude", "droid", "pi"}
        assert results["claude"].error == "boom"
        assert results["pi"].ok
        assert results["droid"].locations == 0

    def test_unexpected_error_does_not_stop_others(
        self, store_engine, registry, config, pi_dir, claude_dir, monkeypatch
    ):
        write_jsonl(pi_dir / "s1.jsonl", [pi_record("m1", "s1", "hello", BASE_TIME)])
        write_jsonl(claude_dir / "c.jsonl", [pi_record("c1", "c", "hi", BASE_TIME)])

        def broken_discover():
            raise RuntimeError("adapter exploded")

        monkeypatch.setattr(registry.get("claude"), "discover", broken_discover)

        results = {r.agent: r for r in IngestionEngine(store_engine, registry, config).sync_all()}

        assert results["claude"].error == "adapter exploded"
        assert results["pi"].ok
        assert results["pi"].messages == 1

    def test_location_with_scan_error_is_skipped(
        self, store_engine, registry, config, pi_dir, monkeypatch
    ):
        good = write_jsonl(pi_dir / "good.jsonl", [pi_record("m1", "s1", "hello", BASE_TIME)])
        bad = write_jsonl(pi_dir / "bad.jsonl", [pi_record("m2", "s2", "oops", BASE_TIME)])
        adapter = registry.get("pi")
        real_scan = adapter.scan

        def scan(location, cursor):
            if location == str(bad):
                raise RuntimeError("unexpected")
            return real_scan(location, cursor)

        monkeypatch.setattr(adapter, "scan", scan)

        result = IngestionEngine(store_engine, registry, config).sync("pi")

        assert result.ok
        assert result.unreadable_locations == [str(bad)]
        assert result.messages == 1
        assert str(good) not in result.unreadable_locations

    def test_deeply_nested_line_does_not_block_sync(
        self, store_engine, registry, config, pi_dir, claude_dir
    ):
        write_jsonl(pi_dir / "s1.jsonl", [pi_record("m1", "s1", "hello", BASE_TIME)])
        write_jsonl(
            claude_dir / "c.jsonl",
            [
                "[" * 200000,
                {
                    "uuid": "u1",
                    "sessionId": "c",
                    "type": "user",
                    "timestamp": "2025-01-01T00:00:00Z",
                    "content": "hi",
                },
            ],
        )

        results = {r.agent: r for r in IngestionEngine(store_engine, registry, config).sync_all()}

        assert results["claude"].ok
        assert results["claude"].messages == 1
        assert results["pi"].messages == 1
