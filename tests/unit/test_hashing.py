"""
Unit tests for canonical JSON hashing.
"""
import math

import pytest

from loanspread.services.hashing import canonicalize, hash_value, sha256_hex


class TestCanonicalize:
    """Tests for canonical serialization."""

    def test_key_order_does_not_matter(self):
        """Insertion order of keys never changes the output."""
        a = {"b": 1, "a": {"y": [1, 2], "x": None}}
        b = {"a": {"x": None, "y": [1, 2]}, "b": 1}

        assert canonicalize(a) == canonicalize(b)
        assert canonicalize(a) == '{"a":{"x":null,"y":[1,2]},"b":1}'

    def test_array_order_is_kept(self):
        assert canonicalize([2, 1]) != canonicalize([1, 2])

    def test_unicode_is_not_escaped(self):
        assert canonicalize({"name": "Café"}) == '{"name":"Café"}'

    def test_nan_is_rejected(self):
        with pytest.raises(ValueError):
            canonicalize({"value": math.nan})


class TestHashValue:
    """Tests for hashing canonical values."""

    def test_repeated_calls_match(self):
        value = {"decision": {"outcome": "approve"}, "overrides": []}
        assert hash_value(value) == hash_value(value)

    def test_leaf_change_changes_hash(self):
        base = {"decision": {"outcome": "approve"}, "attestations": [{"statement": "ok"}]}
        changed = {"decision": {"outcome": "decline"}, "attestations": [{"statement": "ok"}]}

        assert hash_value(base) != hash_value(changed)

    def test_removing_absent_field_changes_nothing(self):
        value = {"a": 1}
        copy = dict(value)
        copy.pop("missing", None)

        assert hash_value(value) == hash_value(copy)

    def test_sha256_of_text_and_bytes_agree(self):
        assert sha256_hex("abc") == sha256_hex(b"abc")
        assert sha256_hex("abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
