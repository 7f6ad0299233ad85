"""
Tests for deterministic id derivation.
"""

from datetime import datetime, timedelta, timezone

import pytest

from remi.identity import ID_HEX_LENGTH, canonical_json, derive_id


class TestDeriveId:
    """Tests for derive_id."""

    def test_same_inputs_same_id(self):
        """Deriving twice from the same key gives the same id."""
        assert derive_id("session", "claude", "abc") == derive_id("session", "claude", "abc")

    def test_id_is_lowercase_hex(self):
        value = derive_id("message", "s1", "n1")

        assert len(value) == ID_HEX_LENGTH
        assert value == value.lower()
        int(value, 16)

    def test_field_boundaries_do_not_collide(self):
        """Length prefixes keep ("a", "bc") and ("ab", "c") apart."""
        assert derive_id("session", "a", "bc") != derive_id("session", "ab", "c")

    def test_kind_is_part_of_the_hash(self):
        assert derive_id("session", "x") != derive_id("message", "x")

    def test_types_do_not_collide(self):
        assert derive_id("event", 1) != derive_id("event", "1")
        assert derive_id("event", True) != derive_id("event", 1)
        assert derive_id("event", None) != derive_id("event", "")

    def test_equal_instants_in_different_zones_match(self):
        utc = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        plus_two = utc.astimezone(timezone(timedelta(hours=2)))

        assert derive_id("message", "s", "n", utc) == derive_id("message", "s", "n", plus_two)

    def test_naive_datetime_is_taken_as_utc(self):
        aware = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        naive = datetime(2025, 1, 1, 12, 0)

        assert derive_id("message", aware) == derive_id("message", naive)

    def test_distinct_natural_keys_are_collision_free(self):
        """A few thousand related keys all map to distinct ids."""
        ids = {
            derive_id("message", f"session-{s}", f"native-{n}")
            for s in range(50)
            for n in range(50)
        }

        assert len(ids) == 2500

    def test_empty_kind_rejected(self):
        with pytest.raises(ValueError):
            derive_id("", "x")

    def test_unsupported_type_rejected(self):
        with pytest.raises(TypeError):
            derive_id("session", {"a": 1})


class TestCanonicalJson:
    def test_key_order_does_not_matter(self):
        assert canonical_json({"b": 1, "a": 2}) == canonical_json({"a": 2, "b": 1})

    def test_compact(self):
        assert canonical_json({"a": [1, 2]}) == '{"a":[1,2]}'
