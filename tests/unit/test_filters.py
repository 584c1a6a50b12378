"""
Unit tests for field filters and the comparator.

Tests cover:
- Equality, null and negation semantics
- Membership and relational operators
- Case-insensitive string matching
- Scalar-list operators
- Ordering with null placement
"""

from datetime import datetime, timezone
from functools import cmp_to_key

import pytest

from replicadb.errors import QueryError
from replicadb.query.comparator import SortOrder, compare
from replicadb.query.filters import matches
from replicadb.schema.types import FieldKind

S = FieldKind.STRING
I = FieldKind.INT


class TestScalarFilters:
    """Tests for matches() on scalar fields."""

    def test_direct_value_is_equality(self):
        assert matches("a", "a", S)
        assert not matches("a", "b", S)

    def test_none_spec_means_is_null(self):
        assert matches(None, None, S)
        assert not matches("a", None, S)

    def test_equals_none(self):
        assert matches(None, {"equals": None}, S)
        assert not matches("x", {"equals": None}, S)

    def test_not_excludes_value(self):
        assert matches("b", {"not": "a"}, S)
        assert not matches("a", {"not": "a"}, S)

    def test_not_null(self):
        assert matches("a", {"not": None}, S)
        assert not matches(None, {"not": None}, S)

    def test_nested_not(self):
        assert matches(5, {"not": {"gt": 10}}, I)
        assert not matches(15, {"not": {"gt": 10}}, I)

    def test_in_and_not_in(self):
        assert matches(2, {"in": [1, 2, 3]}, I)
        assert not matches(4, {"in": [1, 2, 3]}, I)
        assert matches(4, {"not_in": [1, 2, 3]}, I)
        assert not matches(None, {"in": [1]}, I)
        assert matches(None, {"not_in": [1]}, I)

    def test_relational_operators(self):
        assert matches(5, {"gt": 4, "lte": 5}, I)
        assert not matches(5, {"lt": 5}, I)
        assert not matches(None, {"gte": 0}, I)

    def test_string_operators(self):
        assert matches("hello world", {"contains": "lo w"}, S)
        assert matches("hello", {"starts_with": "he", "ends_with": "lo"}, S)
        assert not matches("hello", {"starts_with": "lo"}, S)

    def test_insensitive_mode(self):
        assert matches("Hello", {"equals": "hello", "mode": "insensitive"}, S)
        assert matches("Hello", {"contains": "ELL", "mode": "insensitive"}, S)
        assert not matches("Hello", {"equals": "hello"}, S)

    def test_insensitive_mode_applies_inside_not(self):
        assert not matches("Hello", {"not": {"equals": "HELLO"}, "mode": "insensitive"}, S)

    def test_datetime_accepts_iso_strings(self):
        value = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        assert matches(value, {"gte": "2024-05-01T00:00:00Z"}, FieldKind.DATETIME)
        assert matches(value, "2024-05-01T12:00:00+00:00", FieldKind.DATETIME)

    def test_boolean_equality_is_strict(self):
        assert matches(True, True, FieldKind.BOOLEAN)
        assert not matches(1, True, FieldKind.BOOLEAN)

    def test_unknown_operator_raises(self):
        with pytest.raises(QueryError, match="Unsupported int filter operators"):
            matches(1, {"contains": 1}, I)

    def test_bad_mode_raises(self):
        with pytest.raises(QueryError, match="Unsupported filter mode"):
            matches("a", {"equals": "a", "mode": "fuzzy"}, S)


class TestListFilters:
    """Tests for scalar-list operators."""

    def test_has(self):
        assert matches(["a", "b"], {"has": "a"}, S, is_list=True)
        assert not matches(["a", "b"], {"has": "c"}, S, is_list=True)

    def test_has_some_and_every(self):
        tags = ["a", "b", "c"]
        assert matches(tags, {"has_some": ["x", "c"]}, S, is_list=True)
        assert matches(tags, {"has_every": ["a", "c"]}, S, is_list=True)
        assert not matches(tags, {"has_every": ["a", "x"]}, S, is_list=True)

    def test_is_empty(self):
        assert matches([], {"is_empty": True}, S, is_list=True)
        assert matches(["a"], {"is_empty": False}, S, is_list=True)

    def test_equals_is_ordered(self):
        assert matches(["a", "b"], {"equals": ["a", "b"]}, S, is_list=True)
        assert not matches(["a", "b"], {"equals": ["b", "a"]}, S, is_list=True)

    def test_unknown_list_operator_raises(self):
        with pytest.raises(QueryError):
            matches(["a"], {"contains": "a"}, S, is_list=True)


class TestComparator:
    """Tests for compare() and SortOrder."""

    def test_default_nulls_first_ascending(self):
        values = [3, None, 1]
        values.sort(key=_key("asc"))
        assert values == [None, 1, 3]

    def test_default_nulls_last_descending(self):
        values = [3, None, 1]
        values.sort(key=_key("desc"))
        assert values == [3, 1, None]

    def test_explicit_nulls_placement(self):
        values = [3, None, 1]
        values.sort(key=_key({"sort": "asc", "nulls": "last"}))
        assert values == [1, 3, None]

    def test_strings_compare_by_codepoint(self):
        assert compare("B", "a") < 0

    def test_bytes_compare_by_length_first(self):
        assert compare(b"zz", b"aaa") < 0

    def test_mixed_types_raise(self):
        with pytest.raises(QueryError):
            compare("a", 1)

    def test_invalid_direction(self):
        with pytest.raises(QueryError, match="Invalid sort direction"):
            SortOrder.parse("up")


def _key(order):
    return cmp_to_key(lambda a, b: compare(a, b, order))
