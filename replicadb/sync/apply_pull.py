"""
Applies pulled change-log pages to the local replica.

A page is applied in one readwrite transaction spanning every model store,
so either the whole page lands or none of it does. Remote writes never
re-enter the outbox and never notify local subscribers.

Per entry:
    - echo (origin id equals ours): skipped
    - create / update: validated, then upserted by primary key; an update
      carrying old_key_path renames the local record when it still exists
    - delete: idempotent delete by primary key
    - no record on a create / update: counted as missing

Invariants:
    - Validation failures are collected and skipped, never abort the page
    - Engine errors (integrity, uniqueness) abort the whole page
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Sequence, Union

from ..errors import ValidationError
from ..store.base import Transaction, TransactionMode
from .types import ChangeLogEntry, Operation

if TYPE_CHECKING:
    from ..engine.client import LocalDatabase
    from ..engine.model import ModelEngine

logger = logging.getLogger(__name__)

_REMOTE = {"silent": True, "add_to_outbox": False}


@dataclass
class ApplyPullResult:
    """Outcome of applying one page.

    Attributes:
        applied: Entries written (or deleted) locally
        missing: Create / update entries without a record
        echoed: Entries skipped because this replica produced them
        validation_errors: One message per entry rejected by validation
    """

    applied: int = 0
    missing: int = 0
    echoed: int = 0
    validation_errors: List[str] = field(default_factory=list)


async def write_remote_record(
    engine: ModelEngine,
    record: Dict[str, Any],
    old_key_path: Optional[Sequence[Any]],
    tx: Transaction,
) -> Dict[str, Any]:
    """Upsert an already validated server record, renaming from old_key_path if present."""
    descriptor = engine.descriptor
    key = descriptor.key_of(record)
    if old_key_path is not None:
        old_key = descriptor.validator.validate_key_path(old_key_path)
        if old_key != key and await tx.store(engine.name).get(old_key) is not None:
            return await engine.update(
                {"where": descriptor.key_where(old_key), "data": record}, tx=tx, **_REMOTE
            )
    return await engine.upsert(
        {"where": descriptor.key_where(key), "create": record, "update": record}, tx=tx, **_REMOTE
    )


async def apply_pull(
    db: LocalDatabase,
    entries: Iterable[Union[ChangeLogEntry, Dict[str, Any]]],
    origin_id: Optional[str] = None,
) -> ApplyPullResult:
    """Apply one page of change-log entries atomically.

    Args:
        db: Local database handle
        entries: ChangeLogEntry objects or their dict form
        origin_id: Local origin id for echo suppression (defaults to db.origin_id)

    Raises:
        ReplicaDbError: Any engine error; nothing from the page is applied
    """
    origin_id = origin_id if origin_id is not None else db.origin_id
    parsed = [e if isinstance(e, ChangeLogEntry) else ChangeLogEntry.model_validate(e) for e in entries]
    result = ApplyPullResult()
    if not parsed:
        return result

    async with db.backend.transaction(db.planner.for_all(), TransactionMode.READWRITE) as tx:
        for entry in parsed:
            if origin_id is not None and entry.origin_id == origin_id:
                result.echoed += 1
                continue
            if db.registry.get_model(entry.model) is None:
                message = f"{entry.model}: unknown model"
                logger.warning(f"Skipping pulled change for unknown model {entry.model}")
                result.validation_errors.append(message)
                continue
            engine = db.model(entry.model)

            try:
                if entry.operation == Operation.DELETE:
                    key = engine.descriptor.validator.validate_key_path(entry.key_path)
                    await engine.delete_many({"where": engine.descriptor.key_where(key)}, tx=tx, **_REMOTE)
                    result.applied += 1
                    continue
                if entry.record is None:
                    result.missing += 1
                    continue
                record = engine.descriptor.validator.validate_record(entry.record)
            except ValidationError as e:
                message = f"{entry.model} {entry.key_path}: {'; '.join(e.errors) or e.message}"
                logger.warning(
                    f"Rejected pulled change: {message}",
                    extra={"model": entry.model, "operation": entry.operation.value},
                )
                result.validation_errors.append(message)
                continue

            await write_remote_record(engine, record, entry.old_key_path, tx)
            result.applied += 1

    logger.debug(
        "Applied pull page",
        extra={
            "applied": result.applied,
            "missing": result.missing,
            "echoed": result.echoed,
            "rejected": len(result.validation_errors),
        },
    )
    return result
