"""
Unit tests for where compilation, logical combinators and update operators.

Tests cover:
- Compiling field, relation and compound-key filters
- Rejection of unknown fields and quantifiers
- AND / OR / NOT set algebra by primary key
- Scalar update operators and nested operation parsing
"""

import pytest

from replicadb.errors import QueryError
from replicadb.query.filters import matches
from replicadb.query.logical import apply_logical_filters, intersect_by_key, union_by_key
from replicadb.query.operations import RelationOp, parse_relation_ops
from replicadb.query.updates import apply_update
from replicadb.query.where import Quantifier, compile_where
from replicadb.schema.types import field


def key_of(record):
    return (record["id"],)


class TestCompileWhere:
    """Tests for compile_where()."""

    def test_none_is_empty(self, frozen_registry):
        assert compile_where(frozen_registry, "Todo", None).is_empty

    def test_field_conditions(self, frozen_registry):
        where = compile_where(frozen_registry, "Todo", {"title": {"contains": "x"}, "completed": False})
        assert [c.field.name for c in where.fields] == ["title", "completed"]

    def test_to_many_quantifiers(self, frozen_registry):
        where = compile_where(frozen_registry, "Board", {"todos": {"some": {"completed": True}, "none": {}}})
        assert [c.quantifier for c in where.relations] == [Quantifier.SOME, Quantifier.NONE]

    def test_to_one_shorthand_and_null(self, frozen_registry):
        where = compile_where(frozen_registry, "Note", {"author": None})
        (condition,) = where.relations
        assert condition.quantifier == Quantifier.IS
        assert condition.where is None

        where = compile_where(frozen_registry, "Todo", {"board": {"name": "Home"}})
        assert where.relations[0].where.fields[0].field.name == "name"

    def test_compound_key_expands_to_equals(self, frozen_registry):
        where = compile_where(
            frozen_registry, "Membership", {"user_id_group_id": {"user_id": "u1", "group_id": 2}}
        )
        assert {c.field.name: c.spec for c in where.fields} == {
            "user_id": {"equals": "u1"},
            "group_id": {"equals": 2},
        }

    def test_unknown_field_raises(self, frozen_registry):
        with pytest.raises(QueryError, match="Unknown field 'titel'"):
            compile_where(frozen_registry, "Todo", {"titel": "x"})

    def test_to_many_needs_quantifier(self, frozen_registry):
        with pytest.raises(QueryError, match="some/every/none"):
            compile_where(frozen_registry, "Board", {"todos": {"completed": True}})

    def test_cannot_mix_is_with_fields(self, frozen_registry):
        with pytest.raises(QueryError, match="Cannot mix"):
            compile_where(frozen_registry, "Todo", {"board": {"is": {}, "name": "x"}})

    def test_empty_or_matches_nothing(self, frozen_registry):
        where = compile_where(frozen_registry, "Todo", {"OR": []})
        assert not where.is_empty
        assert where.or_ == ()


class TestLogicalFilters:
    """Tests for the AND / OR / NOT combinators."""

    RECORDS = [{"id": 1, "n": 1}, {"id": 2, "n": 2}, {"id": 3, "n": 3}, {"id": 4, "n": 4}]

    async def _evaluate(self, records, where):
        result = records
        for condition in where.fields:
            result = [r for r in result if matches(r["id"], condition.spec, condition.field.kind)]
        return await apply_logical_filters(result, where, key_of, self._evaluate)

    async def test_and_intersects(self, frozen_registry):
        where = compile_where(frozen_registry, "Todo", {"AND": [{"id": {"gt": 1}}, {"id": {"lt": 4}}]})
        result = await apply_logical_filters(self.RECORDS, where, key_of, self._evaluate)
        assert [r["id"] for r in result] == [2, 3]

    async def test_or_unions_in_first_occurrence_order(self, frozen_registry):
        where = compile_where(frozen_registry, "Todo", {"OR": [{"id": 4}, {"id": 1}, {"id": 4}]})
        result = await apply_logical_filters(self.RECORDS, where, key_of, self._evaluate)
        assert [r["id"] for r in result] == [4, 1]

    async def test_not_excludes_union(self, frozen_registry):
        where = compile_where(frozen_registry, "Todo", {"NOT": [{"id": 1}, {"id": 3}]})
        result = await apply_logical_filters(self.RECORDS, where, key_of, self._evaluate)
        assert [r["id"] for r in result] == [2, 4]

    async def test_empty_or_yields_nothing(self, frozen_registry):
        where = compile_where(frozen_registry, "Todo", {"OR": []})
        assert await apply_logical_filters(self.RECORDS, where, key_of, self._evaluate) == []

    def test_helpers(self):
        a = [{"id": 1}, {"id": 2}]
        b = [{"id": 2}, {"id": 3}]
        assert intersect_by_key(a, [b], key_of) == [{"id": 2}]
        assert union_by_key([a, b], key_of) == [{"id": 1}, {"id": 2}, {"id": 3}]


class TestApplyUpdate:
    """Tests for scalar update operators."""

    def test_raw_value_sets(self):
        assert apply_update(field("title", "str"), "old", "new") == "new"

    def test_numeric_operators(self):
        count = field("count", "int")
        assert apply_update(count, 4, {"increment": 2}) == 6
        assert apply_update(count, 4, {"decrement": 5}) == -1
        assert apply_update(count, 4, {"multiply": 3}) == 12
        assert apply_update(count, 7, {"divide": 2}) == 3

    def test_integer_division_truncates_toward_zero(self):
        assert apply_update(field("count", "int"), -7, {"divide": 2}) == -3

    def test_division_by_zero_raises(self):
        with pytest.raises(QueryError, match="Division by zero"):
            apply_update(field("count", "int"), 1, {"divide": 0})

    def test_numeric_on_null_stays_null(self):
        assert apply_update(field("count", "int", required=False), None, {"increment": 1}) is None

    def test_push_appends(self):
        tags = field("tags", "str", is_list=True)
        assert apply_update(tags, ["a"], {"push": "b"}) == ["a", "b"]
        assert apply_update(tags, None, {"push": ["b", "c"]}) == ["b", "c"]

    def test_json_takes_raw_dict(self):
        meta = field("meta", "json", required=False)
        assert apply_update(meta, None, {"a": 1}) == {"a": 1}

    def test_increment_on_string_raises(self):
        with pytest.raises(QueryError, match="Unsupported update"):
            apply_update(field("title", "str"), "a", {"increment": 1})


class TestParseRelationOps:
    """Tests for nested relation operation parsing."""

    def test_parses_in_order(self, frozen_registry):
        todos = frozen_registry.descriptor("Board").relations["todos"]
        ops = parse_relation_ops(todos, {"create": [{"title": "a"}], "connect": {"id": 1}}, creating=True)
        assert [op for op, _ in ops] == [RelationOp.CREATE, RelationOp.CONNECT]

    def test_update_not_allowed_on_create(self, frozen_registry):
        todos = frozen_registry.descriptor("Board").relations["todos"]
        with pytest.raises(QueryError, match="not allowed while creating"):
            parse_relation_ops(todos, {"update": {}}, creating=True)

    def test_to_many_only_operation_on_to_one(self, frozen_registry):
        board = frozen_registry.descriptor("Todo").relations["board"]
        with pytest.raises(QueryError, match="needs a to-many relation"):
            parse_relation_ops(board, {"set": []}, creating=False)

    def test_unknown_operation(self, frozen_registry):
        board = frozen_registry.descriptor("Todo").relations["board"]
        with pytest.raises(QueryError, match="Unknown nested operation"):
            parse_relation_ops(board, {"link": {}}, creating=False)
