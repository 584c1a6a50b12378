"""
Shared fixtures: a small kanban schema exercising every relation shape.

    User 1--* Board 1--* Todo           (cascade, cascade)
    User 1--* Membership *--1 Group     (restrict, cascade; composite key)
    User 1--* Note                      (set null; content hash default)
"""

import pytest

from replicadb.engine.client import LocalDatabase
from replicadb.schema.registry import SchemaRegistry
from replicadb.schema.types import ModelDef, ReferentialAction, RelationDef, field

TRACKED = ("User", "Board", "Todo")
ORIGIN_ID = "replica-test"


def build_registry() -> SchemaRegistry:
    User = ModelDef(
        name="User",
        fields=(
            field("id", "str", default_kind="uuid"),
            field("email", "str", unique=True),
            field("name", "str", required=False),
            field("created_at", "datetime", default_kind="now"),
        ),
    )
    Board = ModelDef(
        name="Board",
        fields=(
            field("id", "str", default_kind="uuid"),
            field("name", "str"),
            field("created_at", "datetime", default_kind="now"),
            field("user_id", "str"),
        ),
        relations=(
            RelationDef(
                "user",
                target="User",
                fields=("user_id",),
                references=("id",),
                on_delete=ReferentialAction.CASCADE,
                related_name="boards",
            ),
        ),
    )
    Todo = ModelDef(
        name="Todo",
        fields=(
            field("id", "int", default_kind="autoincrement"),
            field("title", "str"),
            field("completed", "bool", default=False),
            field("priority", "int", required=False),
            field("tags", "str", is_list=True),
            field("board_id", "str"),
        ),
        relations=(
            RelationDef(
                "board",
                target="Board",
                fields=("board_id",),
                references=("id",),
                on_delete=ReferentialAction.CASCADE,
                related_name="todos",
            ),
        ),
    )
    Group = ModelDef(
        name="Group",
        fields=(
            field("id", "int", default_kind="autoincrement"),
            field("name", "str"),
        ),
    )
    Membership = ModelDef(
        name="Membership",
        fields=(
            field("user_id", "str"),
            field("group_id", "int"),
            field("joined_on", "datetime", default_kind="now"),
        ),
        primary_key=("user_id", "group_id"),
        relations=(
            RelationDef(
                "user",
                target="User",
                fields=("user_id",),
                references=("id",),
                on_delete=ReferentialAction.RESTRICT,
                related_name="memberships",
            ),
            RelationDef(
                "group",
                target="Group",
                fields=("group_id",),
                references=("id",),
                on_delete=ReferentialAction.CASCADE,
                related_name="memberships",
            ),
        ),
    )
    Note = ModelDef(
        name="Note",
        fields=(
            field("id", "int", default_kind="autoincrement"),
            field("body", "str"),
            field("checksum", "str", default_kind="content_hash"),
            field("attachment", "bytes", required=False),
            field("author_id", "str", required=False),
        ),
        relations=(
            RelationDef(
                "author",
                target="User",
                fields=("author_id",),
                references=("id",),
                related_name="notes",
            ),
        ),
    )

    registry = SchemaRegistry()
    for model in (User, Board, Todo, Group, Membership, Note):
        registry.register_model(model)
    return registry


@pytest.fixture
def registry():
    """Unfrozen registry with the kanban schema."""
    return build_registry()


@pytest.fixture
def frozen_registry(registry):
    """Frozen registry with the kanban schema."""
    registry.freeze()
    return registry


@pytest.fixture
async def db(registry):
    """Open in-memory database tracking User, Board and Todo."""
    database = await LocalDatabase.open(registry, tracked_models=TRACKED, origin_id=ORIGIN_ID)
    yield database
    await database.close()


@pytest.fixture
async def user(db):
    """A user created without outbox capture."""
    return await db.model("User").create(
        {"data": {"email": "ann@example.com", "name": "Ann"}}, add_to_outbox=False
    )


@pytest.fixture
async def board(db, user):
    """A board owned by `user`, created without outbox capture."""
    return await db.model("Board").create(
        {"data": {"name": "Home", "user_id": user["id"]}}, add_to_outbox=False
    )
