"""
Tests for query sanitizing, rank fusion and the search engine.
"""

from datetime import timedelta

import numpy as np
import pytest

from remi.db.connection import db_session
from remi.db.repositories import SessionRepository
from remi.pipeline.embeddings import embed_pending, rebuild_embeddings
from remi.search import SearchEngine, SearchFilters, fuse_ranks, sanitize_query
from remi.search.query import make_snippet, query_terms
from remi.search.vectors import VectorIndex

from factories import BASE_TIME, make_batch


class KeywordEmbedder:
    """Maps text onto a 'pets' axis and an 'everything else' axis."""

    model_name = "keyword"
    dimension = 2
    PET_WORDS = {"pets", "dog", "cat", "puppy"}

    def embed(self, text):
        words = set(text.lower().split())
        return [1.0, 0.0] if words & self.PET_WORDS else [0.0, 1.0]

    def embed_query(self, text):
        return self.embed(text)

    def embed_many(self, texts, batch_size=32):
        return [self.embed(t) for t in texts]


class TestSanitizeQuery:
    """Tests for sanitize_query."""

    def test_terms_are_quoted_and_or_joined(self):
        assert sanitize_query("cache invalidation") == '"cache" OR "invalidation"'

    def test_fts_syntax_is_neutralized(self):
        assert sanitize_query('foo(bar) "x" AND*') == '"foobar" OR "x" OR "AND"'

    def test_path_characters_are_kept(self):
        assert sanitize_query("src/app.py:12 my_var-x") == '"src/app.py:12" OR "my_var-x"'

    def test_nothing_searchable(self):
        assert sanitize_query('  "" () * ') == ""
        assert query_terms("") == []


class TestSnippet:
    def test_short_content_is_returned_flattened(self):
        assert make_snippet("a\n  b", ["a"]) == "a b"

    def test_long_content_is_cut_around_first_term(self):
        content = "x " * 200 + "needle here" + " y" * 200

        snippet = make_snippet(content, ["needle"], width=40)

        assert "needle" in snippet
        assert snippet.startswith("…")
        assert snippet.endswith("…")


class TestFuseRanks:
    def test_reciprocal_rank_sum(self):
        scores = fuse_ranks([(1.0, {"a": 1, "b": 2}), (0.5, {"b": 1})], k=60)

        assert scores["a"] == pytest.approx(1.0 / 61)
        assert scores["b"] == pytest.approx(1.0 / 62 + 0.5 / 61)

    def test_zero_weight_signal_is_ignored(self):
        with_zero = fuse_ranks([(1.0, {"a": 1}), (0.0, {"a": 1, "b": 1})], k=60)

        assert with_zero == {"a": pytest.approx(1.0 / 61)}


class TestSearchEngine:
    """Tests for SearchEngine.search."""

    def test_cache_invalidation_query_matches(self, store_engine, config, save_batch):
        save_batch(
            make_batch(
                "pi", "s1", BASE_TIME, texts=["We need proper cache invalidation here"]
            )
        )
        save_batch(make_batch("pi", "s2", BASE_TIME, texts=["nothing relevant"]))

        hits = SearchEngine(store_engine, config).search("cache invalidation")

        assert hits[0].session_id == make_batch("pi", "s1", BASE_TIME).sessions[0].id
        assert hits[0].lexical_rank == 1
        assert "cache invalidation" in hits[0].snippet
        assert hits[0].source_paths == ["/sources/pi/s1.jsonl"]
        assert len(hits) == 1

    def test_better_lexical_match_ranks_first(self, store_engine, config, save_batch):
        save_batch(make_batch("pi", "weak", BASE_TIME, texts=["cache and lots of other words here"]))
        save_batch(make_batch("pi", "strong", BASE_TIME, texts=["cache invalidation cache"]))

        hits = SearchEngine(store_engine, config).search("cache invalidation")

        assert [h.session_id for h in hits] == [
            make_batch("pi", "strong", BASE_TIME).sessions[0].id,
            make_batch("pi", "weak", BASE_TIME).sessions[0].id,
        ]

    def test_equal_relevance_prefers_recent(self, store_engine, config, save_batch):
        save_batch(make_batch("pi", "old", BASE_TIME, texts=["deploy script"]))
        save_batch(make_batch("pi", "new", BASE_TIME + timedelta(days=1), texts=["deploy script"]))

        hits = SearchEngine(store_engine, config).search("deploy")

        assert [h.session_id for h in hits] == [
            make_batch("pi", "new", BASE_TIME).sessions[0].id,
            make_batch("pi", "old", BASE_TIME).sessions[0].id,
        ]

    def test_substring_fallback(self, store_engine, config, save_batch):
        """A fragment inside a token has no lexical match but is still found."""
        save_batch(make_batch("pi", "s1", BASE_TIME, texts=["call getUserProfileById now"]))

        hits = SearchEngine(store_engine, config).search("profileby")

        assert len(hits) == 1
        assert hits[0].lexical_rank == 1
        assert hits[0].matched_message_ids

    def test_unbalanced_syntax_never_raises(self, store_engine, config, save_batch):
        save_batch(make_batch("pi", "s1", BASE_TIME, texts=["anything"]))

        hits = SearchEngine(store_engine, config).search('"unbalanced (paren* NEAR OR')

        assert hits == []

    def test_filters(self, store_engine, config, save_batch):
        save_batch(make_batch("pi", "s1", BASE_TIME, texts=["shared words"], title="Alpha"))
        save_batch(make_batch("claude", "s2", BASE_TIME, texts=["shared words"], title="Beta"))
        engine = SearchEngine(store_engine, config)
        claude_id = make_batch("claude", "s2", BASE_TIME).sessions[0].id

        by_agent = engine.search("shared", SearchFilters(agent="claude"))
        by_title = engine.search("shared", SearchFilters(title="ALP"))
        by_session = engine.search("shared", SearchFilters(session_id=claude_id[:8]))
        by_contains = engine.search("shared", SearchFilters(contains="nope"))

        assert [h.agent for h in by_agent] == ["claude"]
        assert [h.title for h in by_title] == ["Alpha"]
        assert [h.session_id for h in by_session] == [claude_id]
        assert by_contains == []

    def test_limit(self, store_engine, config, save_batch):
        for n in range(5):
            save_batch(make_batch("pi", f"s{n}", BASE_TIME + timedelta(minutes=n), texts=["common"]))

        assert len(SearchEngine(store_engine, config).search("common", limit=2)) == 2

    def test_deterministic(self, store_engine, config, save_batch):
        for n in range(4):
            save_batch(make_batch("pi", f"s{n}", BASE_TIME, texts=[f"common {n}"]))
        engine = SearchEngine(store_engine, config)

        first = [h.to_dict() for h in engine.search("common")]
        second = [h.to_dict() for h in engine.search("common")]

        assert first == second

    def test_deleted_sessions_disappear(self, store_engine, config, save_batch):
        batch = make_batch("pi", "s1", BASE_TIME, texts=["ephemeral"])
        save_batch(batch)
        with db_session(store_engine) as db:
            SessionRepository(db).delete_cascade([batch.sessions[0].id])

        assert SearchEngine(store_engine, config).search("ephemeral") == []


class TestSemanticSignal:
    """Tests for the optional semantic ranking signal."""

    def test_semantic_only_candidates_are_added(self, store_engine, config, save_batch):
        save_batch(make_batch("pi", "pets", BASE_TIME, texts=["my dog barks"]))
        save_batch(make_batch("pi", "tax", BASE_TIME, texts=["tax forms"]))
        embedder = KeywordEmbedder()
        assert embed_pending(store_engine, embedder) == 2

        hits = SearchEngine(store_engine, config, embedder).search("pets")

        assert hits[0].session_id == make_batch("pi", "pets", BASE_TIME).sessions[0].id
        assert hits[0].semantic_rank == 1
        assert hits[0].lexical_rank is None
        assert hits[0].snippet == "my dog barks"

    def test_zero_semantic_weight_matches_lexical_only_ranking(
        self, store_engine, config, save_batch
    ):
        for n, text in enumerate(["dog cache", "cache cache", "cat", "cache tax"]):
            save_batch(make_batch("pi", f"s{n}", BASE_TIME + timedelta(hours=n), texts=[text]))
        embedder = KeywordEmbedder()
        embed_pending(store_engine, embedder)
        no_semantic = config.model_copy(update={"weight_semantic": 0.0})

        baseline = SearchEngine(store_engine, config).search("cache")
        weighted_off = SearchEngine(store_engine, no_semantic, embedder).search("cache")

        assert [h.session_id for h in weighted_off] == [h.session_id for h in baseline]
        assert [h.score for h in weighted_off] == [h.score for h in baseline]

    def test_rebuild_replaces_vectors(self, store_engine, save_batch):
        save_batch(make_batch("pi", "s1", BASE_TIME, texts=["a", "b", "c"]))
        embedder = KeywordEmbedder()
        embed_pending(store_engine, embedder)

        assert embed_pending(store_engine, embedder) == 0
        assert rebuild_embeddings(store_engine, embedder, batch_size=2) == 3

    def test_vector_index_best_per_session(self):
        index = VectorIndex(
            ["m1", "m2", "m3"],
            ["s1", "s1", "s2"],
            np.array([[1.0, 0.0], [0.6, 0.8], [0.0, 1.0]]),
        )

        ranked = index.best_per_session([1.0, 0.0], top_k=5)

        assert [(s, m) for s, m, _ in ranked] == [("s1", "m1"), ("s2", "m3")]
        assert index.best_per_session([1.0, 0.0], top_k=5, allowed_sessions={"s2"})[0][0] == "s2"
