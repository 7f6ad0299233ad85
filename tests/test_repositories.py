"""
Tests for the canonical store repositories.
"""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from remi.db.connection import db_session, get_session
from remi.db.integrity import check_integrity
from remi.db.repositories import (
    ArchiveRepository,
    CanonicalRepository,
    CheckpointRepository,
    EmbeddingRepository,
    SearchFilters,
    SearchIndexRepository,
    SessionRepository,
)
from remi.exceptions import ArchiveRunNotFoundError, IntegrityError
from remi.identity import derive_id
from remi.models.canonical import Cursor
from remi.models.db import (
    AgentSession,
    ArchiveDisposition,
    ArchiveRunStatus,
    Message,
    Provenance,
)

from factories import BASE_TIME, make_batch


def _count(engine, model) -> int:
    with get_session(engine) as db:
        return db.scalar(select(func.count()).select_from(model))


class TestCanonicalRepository:
    """Tests for save_batch upserts."""

    def test_save_batch_writes_all_entities(self, store_engine):
        batch = make_batch("pi", "s1", BASE_TIME, texts=["alpha", "beta"])

        with db_session(store_engine) as db:
            stats = CanonicalRepository(db).save_batch(batch)

        assert stats.sessions == 1
        assert stats.messages == 2
        assert stats.provenance == 2
        assert stats.index_rows == 2
        assert _count(store_engine, Message) == 2

    def test_saving_same_batch_twice_changes_nothing(self, store_engine, save_batch):
        """Upserts are keyed by id, so a replayed batch adds no rows."""
        batch = make_batch("pi", "s1", BASE_TIME, texts=["alpha", "beta"])

        save_batch(batch)
        save_batch(batch)

        assert _count(store_engine, AgentSession) == 1
        assert _count(store_engine, Message) == 2
        assert _count(store_engine, Provenance) == 2
        with get_session(store_engine) as db:
            assert SearchIndexRepository(db).count() == 2

    def test_session_dates_widen_and_title_is_kept(self, store_engine, save_batch):
        save_batch(make_batch("pi", "s1", BASE_TIME, title="Refactor cache"))
        save_batch(make_batch("pi", "s1", BASE_TIME + timedelta(hours=2)))
        save_batch(make_batch("pi", "s1", BASE_TIME - timedelta(hours=1)))

        with get_session(store_engine) as db:
            session = SessionRepository(db).get(derive_id("session", "pi", "s1"))

        assert session.title == "Refactor cache"
        assert session.created_at == BASE_TIME - timedelta(hours=1)
        assert session.updated_at == BASE_TIME + timedelta(hours=2)

    def test_empty_batch_is_a_no_op(self, store_engine):
        from remi.models.canonical import NormalizedBatch

        with db_session(store_engine) as db:
            stats = CanonicalRepository(db).save_batch(NormalizedBatch())

        assert stats.sessions == 0
        assert _count(store_engine, AgentSession) == 0


class TestSessionRepository:
    """Tests for session reads, export and cascading delete."""

    def test_list_orders_most_recent_first(self, store_engine, save_batch):
        save_batch(make_batch("pi", "old", BASE_TIME))
        save_batch(make_batch("pi", "new", BASE_TIME + timedelta(days=1)))
        save_batch(make_batch("claude", "mid", BASE_TIME + timedelta(hours=1)))

        with get_session(store_engine) as db:
            repo = SessionRepository(db)
            keys = [s.native_key for s in repo.list()]
            pi_keys = [s.native_key for s in repo.list(agent="pi")]

        assert keys == ["new", "mid", "old"]
        assert pi_keys == ["new", "old"]

    def test_get_by_prefix(self, store_engine, save_batch):
        save_batch(make_batch("pi", "s1", BASE_TIME))
        session_id = derive_id("session", "pi", "s1")

        with get_session(store_engine) as db:
            matches = SessionRepository(db).get_by_prefix(session_id[:10])
            none = SessionRepository(db).get_by_prefix("zzzz")

        assert [m.id for m in matches] == [session_id]
        assert none == []

    def test_export_batch_round_trips_through_save(self, store_engine, save_batch):
        original = make_batch("pi", "s1", BASE_TIME, texts=["alpha"], title="T")
        save_batch(original)

        with get_session(store_engine) as db:
            exported = SessionRepository(db).export_batch([original.sessions[0].id])

        assert [s.id for s in exported.sessions] == [original.sessions[0].id]
        assert exported.sessions[0].title == "T"
        assert [m.content for m in exported.messages] == ["alpha"]
        assert len(exported.provenance) == 1

    def test_delete_cascade_removes_children_and_index_rows(self, store_engine, save_batch):
        keep = make_batch("pi", "keep", BASE_TIME, texts=["kept"])
        drop = make_batch("pi", "drop", BASE_TIME, texts=["dropped", "gone"])
        save_batch(keep)
        save_batch(drop)

        with db_session(store_engine) as db:
            deleted = SessionRepository(db).delete_cascade([drop.sessions[0].id])

        assert deleted == 1
        assert _count(store_engine, AgentSession) == 1
        assert _count(store_engine, Message) == 1
        assert _count(store_engine, Provenance) == 1
        with get_session(store_engine) as db:
            assert SearchIndexRepository(db).count() == 1
        assert check_integrity(store_engine).ok


class TestSearchIndexRepository:
    """Tests for FTS and substring queries."""

    def test_lexical_match(self, store_engine, save_batch):
        save_batch(make_batch("pi", "s1", BASE_TIME, texts=["fix the cache layer"]))
        save_batch(make_batch("pi", "s2", BASE_TIME, texts=["unrelated text"]))

        with get_session(store_engine) as db:
            matches = SearchIndexRepository(db).lexical('"cache"')

        assert [m.session_id for m in matches] == [derive_id("session", "pi", "s1")]

    def test_filters_restrict_candidates(self, store_engine, save_batch):
        save_batch(make_batch("pi", "s1", BASE_TIME, texts=["cache"], title="Alpha"))
        save_batch(make_batch("claude", "s2", BASE_TIME, texts=["cache"], title="Beta"))

        with get_session(store_engine) as db:
            index = SearchIndexRepository(db)
            by_agent = index.lexical('"cache"', SearchFilters(agent="claude"))
            by_title = index.lexical('"cache"', SearchFilters(title="alp"))

        assert {m.session_id for m in by_agent} == {derive_id("session", "claude", "s2")}
        assert {m.session_id for m in by_title} == {derive_id("session", "pi", "s1")}

    def test_substring_is_case_insensitive(self, store_engine, save_batch):
        save_batch(make_batch("pi", "s1", BASE_TIME, texts=["See FooBarBaz here"]))

        with get_session(store_engine) as db:
            matches = SearchIndexRepository(db).substring("barbaz")

        assert len(matches) == 1

    def test_rebuild_restores_dropped_rows(self, store_engine, save_batch):
        save_batch(make_batch("pi", "s1", BASE_TIME, texts=["a", "b", "c"]))
        with db_session(store_engine) as db:
            SearchIndexRepository(db).delete_sessions([derive_id("session", "pi", "s1")])

        assert check_integrity(store_engine).index_drift == -3

        with db_session(store_engine) as db:
            written = SearchIndexRepository(db).rebuild()

        assert written == 3
        assert check_integrity(store_engine).index_drift == 0


class TestCheckpointRepository:
    """Tests for checkpoint monotonicity."""

    def test_unknown_agent_has_no_cursor(self, store_engine):
        with get_session(store_engine) as db:
            assert CheckpointRepository(db).get_cursor("pi") is None

    def test_advance_moves_forward(self, store_engine):
        with db_session(store_engine) as db:
            assert CheckpointRepository(db).advance("pi", Cursor(BASE_TIME, "a"))
        with db_session(store_engine) as db:
            assert CheckpointRepository(db).advance("pi", Cursor(BASE_TIME, "b"))

        with get_session(store_engine) as db:
            assert CheckpointRepository(db).get_cursor("pi") == Cursor(BASE_TIME, "b")

    def test_advance_never_moves_backwards(self, store_engine):
        later = Cursor(BASE_TIME + timedelta(minutes=5), "a")
        with db_session(store_engine) as db:
            CheckpointRepository(db).advance("pi", later)
        with db_session(store_engine) as db:
            moved = CheckpointRepository(db).advance("pi", Cursor(BASE_TIME, "z"))

        assert moved is False
        with get_session(store_engine) as db:
            assert CheckpointRepository(db).get_cursor("pi") == later


class TestArchiveRepository:
    """Tests for archive run bookkeeping."""

    def test_create_and_require(self, store_engine):
        with db_session(store_engine) as db:
            ArchiveRepository(db).create_run(
                "run1", {"keep_latest": 0}, [("s1", "pi"), ("s2", "pi")]
            )

        with get_session(store_engine) as db:
            run = ArchiveRepository(db).require("run1")
            assert run.status == ArchiveRunStatus.PLANNED
            assert {item.session_id for item in run.items} == {"s1", "s2"}
            assert all(i.disposition == ArchiveDisposition.PLANNED for i in run.items)

    def test_require_unknown_run(self, store_engine):
        with get_session(store_engine) as db:
            with pytest.raises(ArchiveRunNotFoundError):
                ArchiveRepository(db).require("missing")

    def test_mark_executed_sets_disposition(self, store_engine):
        with db_session(store_engine) as db:
            repo = ArchiveRepository(db)
            repo.create_run("run1", {}, [("s1", "pi")])
            repo.mark_executed("run1", "/b.json", "/m.json", ArchiveDisposition.COPIED)

        with get_session(store_engine) as db:
            run = ArchiveRepository(db).require("run1")
            assert run.status == ArchiveRunStatus.EXECUTED
            assert run.executed_at is not None
            assert run.items[0].disposition == ArchiveDisposition.COPIED


class TestEmbeddingRepository:
    """Tests for stored message vectors."""

    def test_save_and_load(self, store_engine, save_batch):
        batch = make_batch("pi", "s1", BASE_TIME, texts=["a", "b"])
        save_batch(batch)
        first, second = (m.id for m in batch.messages)

        with db_session(store_engine) as db:
            repo = EmbeddingRepository(db)
            repo.save(first, [1.0, 0.0], "test-model")
            repo.save(first, [0.0, 1.0], "test-model")
            assert repo.missing_message_ids([first, second]) == [second]

        with get_session(store_engine) as db:
            message_ids, session_ids, matrix = EmbeddingRepository(db).load_all("test-model")

        assert message_ids == [first]
        assert session_ids == [batch.sessions[0].id]
        assert matrix.tolist() == [[0.0, 1.0]]

    def test_vectors_follow_message_deletion(self, store_engine, save_batch):
        batch = make_batch("pi", "s1", BASE_TIME, texts=["a"])
        save_batch(batch)
        with db_session(store_engine) as db:
            EmbeddingRepository(db).save(batch.messages[0].id, [1.0], "m")
        with db_session(store_engine) as db:
            SessionRepository(db).delete_cascade([batch.sessions[0].id])

        with get_session(store_engine) as db:
            assert EmbeddingRepository(db).count() == 0


class TestIntegrity:
    def test_clean_store_passes(self, store_engine, save_batch):
        save_batch(make_batch("pi", "s1", BASE_TIME))

        report = check_integrity(store_engine)

        assert report.ok
        assert report.problems == []
        report.raise_for_problems()

    def test_raise_for_problems(self):
        from remi.db.integrity import IntegrityReport

        report = IntegrityReport(integrity_check=["row 3 missing from index"])

        with pytest.raises(IntegrityError):
            report.raise_for_problems()
