"""
Sync protocol data types.

OutboxEvent is the local, persisted record of one captured mutation. The
wire shapes exchanged with push/pull handlers (SyncResult, ChangeLogEntry,
PullPage) are pydantic models so handler replies given as plain dicts are
validated and coerced at the boundary.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Operation(str, Enum):
    """Mutation kinds carried by outbox events and change logs."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class OutboxEvent:
    """One captured mutation of a tracked model.

    Attributes:
        id: Opaque event id
        entity_type: Model name
        entity_key_path: Primary key of the record at capture time
        operation: create, update or delete
        payload: Record snapshot after the mutation (before it, for deletes)
        created_at: Capture time (UTC)
        tries: Failed push attempts so far
        last_error: Last push error message
        synced: Whether the server acknowledged the event
        synced_at: Acknowledgement time
        origin_id: Origin id of the database that captured the event
        old_key_path: Key before the mutation, for updates that renamed it
        sequence: Capture order tiebreaker within one created_at
        last_attempted_at: Time of the last failed attempt
        abandoned: Permanently failed after exhausting retries
    """

    id: str
    entity_type: str
    entity_key_path: tuple
    operation: Operation
    payload: dict[str, Any]
    created_at: datetime
    tries: int = 0
    last_error: str | None = None
    synced: bool = False
    synced_at: datetime | None = None
    origin_id: str | None = None
    old_key_path: tuple | None = None
    sequence: int = 0
    last_attempted_at: datetime | None = None
    abandoned: bool = False

    def to_record(self) -> dict[str, Any]:
        record = asdict(self)
        record["operation"] = self.operation.value
        record["entity_key_path"] = list(self.entity_key_path)
        if self.old_key_path is not None:
            record["old_key_path"] = list(self.old_key_path)
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> OutboxEvent:
        values = dict(record)
        values["operation"] = Operation(values["operation"])
        values["entity_key_path"] = tuple(values["entity_key_path"])
        if values.get("old_key_path") is not None:
            values["old_key_path"] = tuple(values["old_key_path"])
        return cls(**values)


class SyncResult(BaseModel):
    """Push handler reply for one outbox event."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., description="Outbox event id")
    entity_key_path: list[Any] = Field(..., alias="entityKeyPath", description="Server-side primary key")
    old_key_path: list[Any] | None = Field(None, alias="oldKeyPath", description="Key the record had before")
    merged_record: dict[str, Any] | None = Field(None, alias="mergedRecord", description="Authoritative record")
    error: str | None = Field(None, description="Rejection reason")


class ChangeLogEntry(BaseModel):
    """One remote change delivered by the pull handler."""

    model_config = ConfigDict(populate_by_name=True)

    model: str = Field(..., description="Model name")
    operation: Operation
    key_path: list[Any] = Field(..., alias="keyPath")
    old_key_path: list[Any] | None = Field(None, alias="oldKeyPath")
    record: dict[str, Any] | None = Field(None, description="Null for tombstones and filtered rows")
    scope_key: str | None = Field(None, alias="scopeKey")
    origin_id: str | None = Field(None, alias="originId")


class PullPage(BaseModel):
    """One page of remote changes."""

    model_config = ConfigDict(populate_by_name=True)

    change_log_entries: list[ChangeLogEntry] = Field(default_factory=list, alias="changeLogEntries")
    cursor: int | None = Field(None, description="Cursor to resume from after this page")
