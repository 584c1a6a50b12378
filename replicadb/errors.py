"""
Error types for replicadb.

This module defines all exception types raised by the engine and the sync
protocol:
- ReplicaDbError: Base exception
- NotFoundError: Unique lookup or -or-raise variant found nothing
- UniqueConstraintError: Duplicate primary key or unique index value
- ReferentialIntegrityError: Missing foreign key target or restrict violation
- InvalidRelationOperationError: Illegal disconnect/set on a required relation
- ValidationError: Payload rejected by a model validator
- QueryError: Malformed or unsupported query arguments
- SyncHandlerError: A caller-supplied push/pull handler raised
- TransactionAbortedError: The store aborted a transaction
- TransactionScopeError: A store outside the transaction scope was touched

Invariants:
    - All errors inherit from ReplicaDbError
    - Every error carries a stable code for programmatic handling
    - Engine errors propagate to the caller; the sync worker downgrades
      them to recorded status at the cycle boundary
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class ReplicaDbError(Exception):
    """Base exception for all replicadb errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "REPLICADB_ERROR"
        self.details = details or {}


class NotFoundError(ReplicaDbError):
    """Record not found.

    Raised when:
    - find_unique_or_raise / find_first_or_raise match nothing
    - update/delete target does not exist
    - a nested connect names a record that does not exist
    """

    def __init__(
        self,
        message: str = "Record not found",
        model: Optional[str] = None,
        where: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"model": model, "where": where},
        )
        self.model = model
        self.where = where


class UniqueConstraintError(ReplicaDbError):
    """A primary key or unique index value is already taken."""

    def __init__(
        self,
        message: str,
        store: Optional[str] = None,
        key: Any = None,
        index: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="UNIQUE_CONSTRAINT",
            details={"store": store, "key": key, "index": index},
        )
        self.store = store
        self.key = key
        self.index = index


class ReferentialIntegrityError(ReplicaDbError):
    """A foreign key does not resolve, or a restrict policy blocks a delete."""

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        relation: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="REFERENTIAL_INTEGRITY",
            details={"model": model, "relation": relation},
        )
        self.model = model
        self.relation = relation


class InvalidRelationOperationError(ReplicaDbError):
    """Disconnect or empty set attempted on a required relation."""

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        relation: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="INVALID_RELATION_OPERATION",
            details={"model": model, "relation": relation},
        )
        self.model = model
        self.relation = relation


class ValidationError(ReplicaDbError):
    """Payload validation failed.

    Raised when:
    - Required field is missing
    - Field value has wrong type
    - Enum value is invalid
    - Unknown field is present
    """

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"model": model, "errors": errors or []},
        )
        self.model = model
        self.errors = errors or []


class QueryError(ReplicaDbError):
    """Query arguments are malformed or use an unsupported shape."""

    def __init__(self, message: str, model: Optional[str] = None) -> None:
        super().__init__(message, code="QUERY_ERROR", details={"model": model})
        self.model = model


class SyncHandlerError(ReplicaDbError):
    """A caller-supplied push or pull handler raised."""

    def __init__(self, message: str, phase: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message, code="SYNC_HANDLER_ERROR", details={"phase": phase})
        self.phase = phase
        self.__cause__ = cause


class TransactionAbortedError(ReplicaDbError):
    """The underlying store aborted the transaction."""

    def __init__(self, message: str, stores: Optional[List[str]] = None) -> None:
        super().__init__(message, code="TRANSACTION_ABORTED", details={"stores": stores or []})
        self.stores = stores or []


class TransactionScopeError(ReplicaDbError):
    """An operation touched a store that is not part of its transaction."""

    def __init__(self, store: str, scope: List[str]) -> None:
        super().__init__(
            f"Store '{store}' is not part of this transaction (scope: {sorted(scope)})",
            code="TRANSACTION_SCOPE",
            details={"store": store, "scope": sorted(scope)},
        )
        self.store = store
