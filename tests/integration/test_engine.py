"""
Integration tests for the model engine.

Tests cover:
- Filtering, ordering, pagination and projections
- Unique lookups, counts and aggregates
- Creates with defaults, nested writes and integrity checks
- Updates, primary key renames and reference propagation
- Deletes with referential actions
- Event publication and outbox capture
"""

import re
from datetime import datetime, timezone

import pytest

from replicadb.engine import Created, Deleted, Updated
from replicadb.errors import (
    InvalidRelationOperationError,
    NotFoundError,
    QueryError,
    ReferentialIntegrityError,
    UniqueConstraintError,
    ValidationError,
)
from replicadb.store import TransactionMode
from replicadb.sync.types import Operation


@pytest.fixture
async def todos(db, board):
    await db.model("Todo").create_many(
        {
            "data": [
                {"title": "Buy milk", "priority": 2, "tags": ["home"], "board_id": board["id"]},
                {"title": "Write report", "priority": 1, "completed": True, "tags": ["work"], "board_id": board["id"]},
                {"title": "Call mom", "board_id": board["id"]},
                {"title": "buy bread", "priority": 3, "tags": ["home", "food"], "board_id": board["id"]},
            ]
        },
        add_to_outbox=False,
    )
    return await db.model("Todo").find_many({"order_by": {"id": "asc"}})


def titles(records):
    return [r["title"] for r in records]


class TestFind:
    @pytest.mark.asyncio
    async def test_insensitive_contains(self, db, todos):
        found = await db.model("Todo").find_many({"where": {"title": {"contains": "buy", "mode": "insensitive"}}})
        assert titles(found) == ["Buy milk", "buy bread"]

    @pytest.mark.asyncio
    async def test_list_filters(self, db, todos):
        found = await db.model("Todo").find_many({"where": {"tags": {"has": "home"}}})
        assert [r["id"] for r in found] == [1, 4]
        found = await db.model("Todo").find_many({"where": {"tags": {"is_empty": True}}})
        assert titles(found) == ["Call mom"]

    @pytest.mark.asyncio
    async def test_order_places_nulls(self, db, todos):
        engine = db.model("Todo")
        ascending = await engine.find_many({"order_by": {"priority": "asc"}})
        assert [r["priority"] for r in ascending] == [None, 1, 2, 3]
        descending = await engine.find_many({"order_by": [{"priority": "desc"}]})
        assert [r["priority"] for r in descending] == [3, 2, 1, None]

    @pytest.mark.asyncio
    async def test_skip_take_and_distinct(self, db, todos):
        engine = db.model("Todo")
        page = await engine.find_many({"order_by": {"id": "asc"}, "skip": 1, "take": 2})
        assert [r["id"] for r in page] == [2, 3]
        distinct = await engine.find_many({"order_by": {"id": "asc"}, "distinct": ["completed"]})
        assert [r["id"] for r in distinct] == [1, 2]
        with pytest.raises(QueryError, match="skip"):
            await engine.find_many({"skip": -1})

    @pytest.mark.asyncio
    async def test_logical_combinators(self, db, todos):
        found = await db.model("Todo").find_many(
            {
                "where": {
                    "OR": [{"priority": {"gte": 3}}, {"completed": True}],
                    "NOT": {"title": {"starts_with": "Write"}},
                }
            }
        )
        assert titles(found) == ["buy bread"]

    @pytest.mark.asyncio
    async def test_to_many_quantifiers(self, db, user, board, todos):
        empty = await db.model("Board").create({"data": {"name": "Empty", "user_id": user["id"]}})
        boards = db.model("Board")

        some = await boards.find_many({"where": {"todos": {"some": {"completed": True}}}})
        assert [b["id"] for b in some] == [board["id"]]

        every = await boards.find_many({"where": {"todos": {"every": {"completed": True}}}})
        assert [b["id"] for b in every] == [empty["id"]]

        none = await boards.find_many({"where": {"todos": {"none": {}}}})
        assert [b["id"] for b in none] == [empty["id"]]

    @pytest.mark.asyncio
    async def test_to_one_filters(self, db, user, todos):
        assert await db.model("Todo").count({"where": {"board": {"name": "Home"}}}) == 4
        assert await db.model("Todo").count({"where": {"board": {"is_not": {"name": "Home"}}}}) == 0

        notes = db.model("Note")
        await notes.create({"data": {"body": "orphan"}})
        await notes.create({"data": {"body": "mine", "author_id": user["id"]}})
        orphans = await notes.find_many({"where": {"author": None}})
        assert [n["body"] for n in orphans] == ["orphan"]

    @pytest.mark.asyncio
    async def test_include_with_nested_query(self, db, board, todos):
        found = await db.model("Board").find_unique(
            {
                "where": {"id": board["id"]},
                "include": {
                    "todos": {"where": {"completed": False}, "order_by": {"priority": "desc"}, "take": 2},
                    "user": True,
                },
            }
        )
        assert titles(found["todos"]) == ["buy bread", "Buy milk"]
        assert found["user"]["email"] == "ann@example.com"
        assert found["name"] == "Home"

    @pytest.mark.asyncio
    async def test_select_projects_fields_and_relations(self, db, todos):
        first = await db.model("Todo").find_first(
            {"order_by": {"id": "asc"}, "select": {"title": True, "board": {"select": {"name": True}}}}
        )
        assert first == {"title": "Buy milk", "board": {"name": "Home"}}

    @pytest.mark.asyncio
    async def test_select_and_include_conflict(self, db, todos):
        with pytest.raises(QueryError, match="either select or include"):
            await db.model("Todo").find_many({"select": {"title": True}, "include": {"board": True}})

    @pytest.mark.asyncio
    async def test_order_by_relation(self, db, user, board, todos):
        await db.model("Board").create({"data": {"name": "Empty", "user_id": user["id"]}})
        boards = await db.model("Board").find_many({"order_by": {"todos": {"_count": "desc"}}})
        assert [b["name"] for b in boards] == ["Home", "Empty"]

        by_board = await db.model("Todo").find_many({"order_by": [{"board": {"name": "asc"}}, {"id": "desc"}]})
        assert [r["id"] for r in by_board] == [4, 3, 2, 1]

        with pytest.raises(QueryError, match="nested relation"):
            await db.model("Todo").find_many({"order_by": {"board": {"user": {"email": "asc"}}}})

    @pytest.mark.asyncio
    async def test_unique_lookups(self, db, user):
        users = db.model("User")
        assert (await users.find_unique({"where": {"email": "ann@example.com"}}))["id"] == user["id"]
        assert await users.find_unique({"where": {"email": "nobody@example.com"}}) is None
        with pytest.raises(NotFoundError):
            await users.find_unique_or_raise({"where": {"id": "missing"}})
        with pytest.raises(QueryError, match="Unique lookup"):
            await users.find_unique({"where": {"name": "Ann"}})

    @pytest.mark.asyncio
    async def test_unique_lookup_applies_extra_filters(self, db, user):
        users = db.model("User")
        assert await users.find_unique({"where": {"id": user["id"], "name": "Bob"}}) is None

    @pytest.mark.asyncio
    async def test_find_first_or_raise(self, db, todos):
        with pytest.raises(NotFoundError):
            await db.model("Todo").find_first_or_raise({"where": {"title": "nope"}})

    @pytest.mark.asyncio
    async def test_count(self, db, todos):
        engine = db.model("Todo")
        assert await engine.count() == 4
        assert await engine.count({"where": {"completed": False}}) == 3
        assert await engine.count({"select": {"_all": True, "priority": True}}) == {"_all": 4, "priority": 3}

    @pytest.mark.asyncio
    async def test_aggregate(self, db, todos):
        result = await db.model("Todo").aggregate(
            {
                "_count": True,
                "_sum": {"priority": True},
                "_avg": {"priority": True},
                "_min": {"priority": True, "title": True},
                "_max": {"priority": True},
            }
        )
        assert result == {
            "_count": 4,
            "_sum": {"priority": 6},
            "_avg": {"priority": 2.0},
            "_min": {"priority": 1, "title": "Buy milk"},
            "_max": {"priority": 3},
        }

    @pytest.mark.asyncio
    async def test_aggregate_rejects_non_numeric_sum(self, db, todos):
        with pytest.raises(QueryError, match="numeric"):
            await db.model("Todo").aggregate({"_sum": {"title": True}})

    @pytest.mark.asyncio
    async def test_naive_and_aware_timestamps_compare(self, db, user):
        engine = db.model("User")
        await engine.create({"data": {"email": "bo@example.com", "created_at": "2024-01-01T00:00:00"}})
        await engine.create({"data": {"email": "cy@example.com", "created_at": datetime(2023, 6, 1)}})

        ordered = await engine.find_many({"order_by": {"created_at": "asc"}})
        assert [u["email"] for u in ordered] == ["cy@example.com", "bo@example.com", "ann@example.com"]
        assert all(u["created_at"].tzinfo is not None for u in ordered)

        recent = await engine.find_many({"where": {"created_at": {"gt": "2023-12-31T23:00:00"}}})
        assert {u["email"] for u in recent} == {"bo@example.com", "ann@example.com"}

        result = await engine.aggregate({"_min": {"created_at": True}, "_max": {"created_at": True}})
        assert result["_min"]["created_at"] == datetime(2023, 6, 1, tzinfo=timezone.utc)
        assert result["_max"]["created_at"] == user["created_at"]

    @pytest.mark.asyncio
    async def test_unknown_arguments_rejected(self, db):
        with pytest.raises(QueryError, match="Unknown query arguments"):
            await db.model("Todo").find_many({"filter": {}})


class TestCreate:
    @pytest.mark.asyncio
    async def test_generated_defaults(self, db, user, board):
        assert re.fullmatch(r"[0-9a-f-]{36}", user["id"])
        assert isinstance(user["created_at"], datetime)
        assert user["created_at"].tzinfo is not None

        todo = await db.model("Todo").create({"data": {"title": "x", "board_id": board["id"]}})
        assert todo["id"] == 1
        assert todo["completed"] is False
        assert todo["tags"] == []
        assert todo["priority"] is None

    @pytest.mark.asyncio
    async def test_content_hash_default(self, db):
        notes = db.model("Note")
        first = await notes.create({"data": {"body": "same"}})
        second = await notes.create({"data": {"body": "same"}})
        assert re.fullmatch(r"[0-9a-f]{64}", first["checksum"])
        assert first["checksum"] != second["checksum"]

    @pytest.mark.asyncio
    async def test_duplicate_unique_field(self, db, user):
        with pytest.raises(UniqueConstraintError):
            await db.model("User").create({"data": {"email": "ann@example.com"}})

    @pytest.mark.asyncio
    async def test_missing_foreign_key_target(self, db):
        with pytest.raises(ReferentialIntegrityError, match="Related record not found"):
            await db.model("Todo").create({"data": {"title": "x", "board_id": "ghost"}})

    @pytest.mark.asyncio
    async def test_invalid_payload(self, db, board):
        with pytest.raises(ValidationError) as exc:
            await db.model("Todo").create({"data": {"title": 5, "board_id": board["id"]}})
        assert exc.value.model == "Todo"

    @pytest.mark.asyncio
    async def test_nested_create_through_inverse_relations(self, db):
        user = await db.model("User").create(
            {
                "data": {
                    "email": "bo@example.com",
                    "boards": {
                        "create": [
                            {"name": "Work", "todos": {"create": [{"title": "a"}, {"title": "b"}]}},
                        ]
                    },
                },
                "include": {"boards": {"include": {"todos": True}}},
            }
        )
        (work,) = user["boards"]
        assert work["user_id"] == user["id"]
        assert titles(work["todos"]) == ["a", "b"]
        assert {t["board_id"] for t in work["todos"]} == {work["id"]}

    @pytest.mark.asyncio
    async def test_nested_connect_and_create_on_owner_side(self, db, user, board):
        todo = await db.model("Todo").create(
            {"data": {"title": "x", "board": {"connect": {"id": board["id"]}}}}
        )
        assert todo["board_id"] == board["id"]

        todo = await db.model("Todo").create(
            {"data": {"title": "y", "board": {"create": {"name": "New", "user_id": user["id"]}}}},
            )
        created = await db.model("Board").find_unique({"where": {"id": todo["board_id"]}})
        assert created["name"] == "New"

        with pytest.raises(NotFoundError):
            await db.model("Todo").create({"data": {"title": "z", "board": {"connect": {"id": "ghost"}}}})

    @pytest.mark.asyncio
    async def test_connect_or_create(self, db, user):
        groups = db.model("Group")
        await groups.create({"data": {"name": "g"}})
        membership = await db.model("Membership").create(
            {
                "data": {
                    "user": {"connect": {"id": user["id"]}},
                    "group": {"connect_or_create": {"where": {"id": 1}, "create": {"name": "other"}}},
                }
            }
        )
        assert membership["group_id"] == 1
        assert await groups.count() == 1

    @pytest.mark.asyncio
    async def test_failed_nested_write_rolls_back_parent(self, db, user):
        with pytest.raises(ValidationError):
            await db.model("Board").create(
                {
                    "data": {
                        "name": "Broken",
                        "user_id": user["id"],
                        "todos": {"create": [{"title": "ok"}, {"priority": 1}]},
                    }
                }
            )
        assert await db.model("Board").count() == 0
        assert await db.model("Todo").count() == 0

    @pytest.mark.asyncio
    async def test_create_many_skip_duplicates(self, db):
        users = db.model("User")
        result = await users.create_many(
            {"data": [{"email": "a@x"}, {"email": "a@x"}, {"email": "b@x"}], "skip_duplicates": True}
        )
        assert result == {"count": 2}
        with pytest.raises(UniqueConstraintError):
            await users.create_many({"data": [{"email": "c@x"}, {"email": "a@x"}]})
        assert await users.count() == 2

    @pytest.mark.asyncio
    async def test_create_many_and_return(self, db, board):
        created = await db.model("Todo").create_many_and_return(
            {"data": [{"title": "a", "board_id": board["id"]}], "select": {"id": True, "title": True}}
        )
        assert created == [{"id": 1, "title": "a"}]

    @pytest.mark.asyncio
    async def test_create_many_rejects_nested_writes(self, db):
        with pytest.raises(QueryError, match="nested writes"):
            await db.model("User").create_many({"data": [{"email": "a", "boards": {"create": []}}]})


class TestUpdate:
    @pytest.mark.asyncio
    async def test_scalar_operators(self, db, todos):
        engine = db.model("Todo")
        updated = await engine.update(
            {"where": {"id": 1}, "data": {"priority": {"increment": 5}, "tags": {"push": "urgent"}}}
        )
        assert updated["priority"] == 7
        assert updated["tags"] == ["home", "urgent"]

    @pytest.mark.asyncio
    async def test_missing_target(self, db):
        with pytest.raises(NotFoundError):
            await db.model("Todo").update({"where": {"id": 99}, "data": {"title": "x"}})

    @pytest.mark.asyncio
    async def test_key_rename_propagates_to_dependents(self, db, board, todos):
        events = []
        db.events("Board").subscribe(events.append, Updated)

        renamed = await db.model("Board").update({"where": {"id": board["id"]}, "data": {"id": "board-2"}})

        assert renamed["id"] == "board-2"
        assert await db.model("Board").find_unique({"where": {"id": board["id"]}}) is None
        assert await db.model("Todo").count({"where": {"board_id": "board-2"}}) == 4
        (event,) = events
        assert event.key_path == ("board-2",)
        assert event.old_key_path == (board["id"],)

    @pytest.mark.asyncio
    async def test_key_rename_collision(self, db, user, board):
        other = await db.model("Board").create({"data": {"name": "Other", "user_id": user["id"]}})
        with pytest.raises(UniqueConstraintError, match="same key path"):
            await db.model("Board").update({"where": {"id": other["id"]}, "data": {"id": board["id"]}})

    @pytest.mark.asyncio
    async def test_update_many(self, db, todos):
        result = await db.model("Todo").update_many(
            {"where": {"completed": False}, "data": {"completed": True}}
        )
        assert result == {"count": 3}
        assert await db.model("Todo").count({"where": {"completed": True}}) == 4

    @pytest.mark.asyncio
    async def test_upsert(self, db, board):
        engine = db.model("Todo")
        query = {
            "where": {"id": 10},
            "create": {"id": 10, "title": "new", "board_id": board["id"]},
            "update": {"title": "updated"},
        }
        assert (await engine.upsert(query))["title"] == "new"
        assert (await engine.upsert(query))["title"] == "updated"
        assert await engine.count() == 1

    @pytest.mark.asyncio
    async def test_required_relation_cannot_be_disconnected(self, db, todos):
        with pytest.raises(InvalidRelationOperationError):
            await db.model("Todo").update({"where": {"id": 1}, "data": {"board": {"disconnect": True}}})

    @pytest.mark.asyncio
    async def test_required_relation_cannot_be_emptied(self, db, board, todos):
        with pytest.raises(InvalidRelationOperationError, match="Cannot set required relation"):
            await db.model("Board").update({"where": {"id": board["id"]}, "data": {"todos": {"set": []}}})
        assert await db.model("Todo").count() == 4

    @pytest.mark.asyncio
    async def test_optional_relation_disconnect(self, db, user):
        note = await db.model("Note").create({"data": {"body": "n", "author_id": user["id"]}})
        await db.model("User").update(
            {"where": {"id": user["id"]}, "data": {"notes": {"disconnect": [{"id": note["id"]}]}}}
        )
        assert (await db.model("Note").find_unique({"where": {"id": note["id"]}}))["author_id"] is None

    @pytest.mark.asyncio
    async def test_nested_update_and_delete_through_inverse_relation(self, db, board, todos):
        updated = await db.model("Board").update(
            {
                "where": {"id": board["id"]},
                "data": {
                    "name": "Chores",
                    "todos": {
                        "update": [{"where": {"id": 1}, "data": {"title": "Buy oat milk"}}],
                        "delete": [{"id": 3}],
                    },
                },
                "include": {"todos": {"order_by": {"id": "asc"}}},
            }
        )
        assert updated["name"] == "Chores"
        assert [t["id"] for t in updated["todos"]] == [1, 2, 4]
        assert updated["todos"][0]["title"] == "Buy oat milk"

    @pytest.mark.asyncio
    async def test_nested_write_rejects_foreign_records(self, db, user, board, todos):
        other = await db.model("Board").create({"data": {"name": "Other", "user_id": user["id"]}})
        with pytest.raises(NotFoundError):
            await db.model("Board").update(
                {"where": {"id": other["id"]}, "data": {"todos": {"delete": [{"id": 1}]}}}
            )
        assert await db.model("Todo").count() == 4


class TestDelete:
    @pytest.mark.asyncio
    async def test_cascade_and_set_null(self, db, user, board, todos):
        note = await db.model("Note").create({"data": {"body": "n", "author_id": user["id"]}})

        deleted = await db.model("User").delete({"where": {"id": user["id"]}, "include": {"boards": True}})

        assert [b["id"] for b in deleted["boards"]] == [board["id"]]
        assert await db.model("Board").count() == 0
        assert await db.model("Todo").count() == 0
        assert (await db.model("Note").find_unique({"where": {"id": note["id"]}}))["author_id"] is None

    @pytest.mark.asyncio
    async def test_restrict_blocks_whole_delete(self, db, user, board, todos):
        group = await db.model("Group").create({"data": {"name": "g"}})
        await db.model("Membership").create({"data": {"user_id": user["id"], "group_id": group["id"]}})

        with pytest.raises(ReferentialIntegrityError, match="depend on it"):
            await db.model("User").delete({"where": {"id": user["id"]}})

        assert await db.model("User").count() == 1
        assert await db.model("Board").count() == 1
        assert await db.model("Todo").count() == 4

    @pytest.mark.asyncio
    async def test_cascade_through_composite_key(self, db, user):
        group = await db.model("Group").create({"data": {"name": "g"}})
        memberships = db.model("Membership")
        await memberships.create({"data": {"user_id": user["id"], "group_id": group["id"]}})
        found = await memberships.find_unique(
            {"where": {"user_id_group_id": {"user_id": user["id"], "group_id": group["id"]}}}
        )
        assert found["group_id"] == group["id"]

        await db.model("Group").delete({"where": {"id": group["id"]}})
        assert await memberships.count() == 0

    @pytest.mark.asyncio
    async def test_delete_missing_raises(self, db):
        with pytest.raises(NotFoundError):
            await db.model("Group").delete({"where": {"id": 1}})

    @pytest.mark.asyncio
    async def test_delete_many(self, db, todos):
        assert await db.model("Todo").delete_many({"where": {"tags": {"has": "home"}}}) == {"count": 2}
        assert titles(await db.model("Todo").find_many({"order_by": {"id": "asc"}})) == [
            "Write report",
            "Call mom",
        ]


class TestEventsAndOutbox:
    @pytest.mark.asyncio
    async def test_events_published_after_commit(self, db, board):
        events = []
        db.events("Todo").subscribe(events.append)
        todo = await db.model("Todo").create({"data": {"title": "x", "board_id": board["id"]}})
        await db.model("Todo").delete({"where": {"id": todo["id"]}})
        assert [type(e) for e in events] == [Created, Deleted]
        assert events[0].key_path == (todo["id"],)

    @pytest.mark.asyncio
    async def test_silent_writes_publish_nothing(self, db, board):
        events = []
        db.events("Todo").subscribe(events.append)
        await db.model("Todo").create({"data": {"title": "x", "board_id": board["id"]}}, silent=True)
        assert events == []

    @pytest.mark.asyncio
    async def test_rolled_back_writes_publish_nothing(self, db, user):
        events = []
        db.events("Board").subscribe(events.append)
        with pytest.raises(ValidationError):
            await db.model("Board").create(
                {"data": {"name": "B", "user_id": user["id"], "todos": {"create": [{"priority": 1}]}}}
            )
        assert events == []

    @pytest.mark.asyncio
    async def test_tracked_writes_are_captured(self, db, board):
        todo = await db.model("Todo").create({"data": {"title": "x", "board_id": board["id"]}})
        await db.model("Todo").update({"where": {"id": todo["id"]}, "data": {"title": "y"}})

        batch = await db.outbox.get_next_batch()
        assert [(e.entity_type, e.operation) for e in batch] == [
            ("Todo", Operation.CREATE),
            ("Todo", Operation.UPDATE),
        ]
        assert batch[1].payload["title"] == "y"
        assert all(e.origin_id == "replica-test" for e in batch)

    @pytest.mark.asyncio
    async def test_untracked_and_opted_out_writes_are_not_captured(self, db, board):
        await db.model("Group").create({"data": {"name": "g"}})
        await db.model("Todo").create({"data": {"title": "x", "board_id": board["id"]}}, add_to_outbox=False)
        assert await db.outbox.get_next_batch() == []

    @pytest.mark.asyncio
    async def test_cascades_are_captured(self, db, board, todos):
        await db.model("Board").delete({"where": {"id": board["id"]}})
        batch = await db.outbox.get_next_batch(limit=10)
        assert [(e.entity_type, e.operation) for e in batch] == [("Todo", Operation.DELETE)] * 4 + [
            ("Board", Operation.DELETE)
        ]

    @pytest.mark.asyncio
    async def test_caller_transaction_is_atomic(self, db, board):
        todos = db.model("Todo")
        with pytest.raises(RuntimeError):
            async with db.backend.transaction(db.planner.for_all(), TransactionMode.READWRITE) as tx:
                await todos.create({"data": {"title": "a", "board_id": board["id"]}}, tx=tx)
                assert await todos.count(tx=tx) == 1
                raise RuntimeError("abort")
        assert await todos.count() == 0
        assert await db.outbox.get_next_batch() == []
