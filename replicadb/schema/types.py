"""
Core type definitions for the replicadb schema system.

This module defines the declarative model types:
- FieldDef: Individual scalar (or scalar-list) field of a model
- RelationDef: Foreign-key relation declared on the owning model
- ModelDef: Definition of one entity type (one object store)

Invariants:
    - Relations are never stored; only their foreign key fields are
    - Every model has a primary key of one or more fields
    - Primary key fields are required and cannot be lists
    - enum_values must be non-empty for ENUM fields

How to change safely:
    - Add new fields as optional (required=False) or with a default
    - Changing a primary key changes the store layout; bump the fingerprint
    - Never reorder enum values that are already persisted

Example:
    >>> from replicadb.schema.types import ModelDef, RelationDef, field
    >>> Todo = ModelDef(
    ...     name="Todo",
    ...     fields=(
    ...         field("id", "int", default_kind="autoincrement"),
    ...         field("title", "str"),
    ...         field("board_id", "str"),
    ...     ),
    ...     primary_key=("id",),
    ...     relations=(
    ...         RelationDef("board", target="Board", fields=("board_id",),
    ...                     references=("id",), related_name="todos"),
    ...     ),
    ... )
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class FieldKind(Enum):
    """Supported field types in the schema.

    These map to filter families, comparators and validator types.
    """

    STRING = "str"
    INT = "int"
    FLOAT = "float"
    BOOLEAN = "bool"
    DATETIME = "datetime"
    BYTES = "bytes"
    JSON = "json"
    ENUM = "enum"

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Args:
            value: String name of the field kind

        Returns:
            Corresponding FieldKind enum value

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")

    @property
    def is_numeric(self) -> bool:
        return self in (FieldKind.INT, FieldKind.FLOAT)


class DefaultKind(Enum):
    """Generated defaults filled on create when a field is absent."""

    UUID = "uuid"
    NOW = "now"
    AUTOINCREMENT = "autoincrement"
    CONTENT_HASH = "content_hash"


class ReferentialAction(Enum):
    """What happens to dependents when the referenced record is deleted."""

    CASCADE = "cascade"
    SET_NULL = "set_null"
    SET_DEFAULT = "set_default"
    RESTRICT = "restrict"


@dataclass(frozen=True)
class FieldDef:
    """Definition of a single field within a model.

    Attributes:
        name: Field name, also the record key
        kind: The data type of the field
        required: Whether the value may be null
        is_list: Whether the field holds a list of `kind` values
        default: Literal default used when the field is absent on create
        default_kind: Generated default used when the field is absent on create
        enum_values: Valid values if kind is ENUM
        unique: Whether a unique index is kept on this field
        description: Human-readable description

    Example:
        >>> title_field = FieldDef(name="title", kind=FieldKind.STRING)
    """

    name: str
    kind: FieldKind
    required: bool = True
    is_list: bool = False
    default: Any = None
    default_kind: DefaultKind | None = None
    enum_values: tuple[str, ...] | None = None
    unique: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if self.name.startswith("_") or self.name in ("AND", "OR", "NOT"):
            raise ValueError(f"Field name '{self.name}' is reserved")
        if self.kind == FieldKind.ENUM and not self.enum_values:
            raise ValueError(f"enum_values required for ENUM field '{self.name}'")
        if self.default_kind == DefaultKind.AUTOINCREMENT and self.kind != FieldKind.INT:
            raise ValueError(f"autoincrement field '{self.name}' must be an int")
        if self.default_kind is not None and self.default is not None:
            raise ValueError(f"Field '{self.name}' cannot have both default and default_kind")

    @property
    def has_default(self) -> bool:
        return self.default_kind is not None or self.default is not None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation for fingerprinting."""
        result: dict[str, Any] = {"name": self.name, "kind": self.kind.value}
        if not self.required:
            result["required"] = False
        if self.is_list:
            result["is_list"] = True
        if self.default is not None:
            result["default"] = repr(self.default)
        if self.default_kind is not None:
            result["default_kind"] = self.default_kind.value
        if self.enum_values:
            result["enum_values"] = list(self.enum_values)
        if self.unique:
            result["unique"] = True
        return result


@dataclass(frozen=True)
class RelationDef:
    """A foreign-key relation, declared on the model holding the key.

    The inverse side (e.g. Board.todos for Todo.board) is derived by the
    registry and exposed under `related_name`.

    Attributes:
        name: Relation field name on the owning model
        target: Name of the referenced model
        fields: Local foreign key fields
        references: Referenced fields on the target (primary or unique key)
        on_delete: Referential action; None means SET_NULL for optional
            foreign keys and RESTRICT for required ones
        related_name: Name of the inverse relation on the target model
    """

    name: str
    target: str
    fields: tuple[str, ...]
    references: tuple[str, ...]
    on_delete: ReferentialAction | None = None
    related_name: str | None = None

    def __post_init__(self) -> None:
        if not self.fields or len(self.fields) != len(self.references):
            raise ValueError(
                f"Relation '{self.name}' needs matching fields and references, "
                f"got {self.fields} -> {self.references}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "target": self.target,
            "fields": list(self.fields),
            "references": list(self.references),
            "on_delete": self.on_delete.value if self.on_delete else None,
            "related_name": self.related_name,
        }


@dataclass(frozen=True)
class ModelDef:
    """Definition of an entity type.

    Attributes:
        name: Model name; also the object store name
        fields: Scalar fields
        primary_key: Ordered key path (one or more field names)
        relations: Relations owned by this model
        unique_together: Compound unique constraints

    Invariants:
        - Field and relation names are unique within the model
        - primary_key, relation fields and unique fields all name declared fields
    """

    name: str
    fields: tuple[FieldDef, ...]
    primary_key: tuple[str, ...] = ("id",)
    relations: tuple[RelationDef, ...] = ()
    unique_together: tuple[tuple[str, ...], ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Model name cannot be empty")
        names = [f.name for f in self.fields]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate field names in model '{self.name}'")
        relation_names = [r.name for r in self.relations]
        clash = set(relation_names) & set(names)
        if clash or len(relation_names) != len(set(relation_names)):
            raise ValueError(f"Relation names clash in model '{self.name}': {sorted(clash)}")
        if not self.primary_key:
            raise ValueError(f"Model '{self.name}' needs a primary key")
        for key_field in self.primary_key:
            definition = self.get_field(key_field)
            if definition is None:
                raise ValueError(f"Primary key field '{key_field}' not declared on '{self.name}'")
            if not definition.required or definition.is_list:
                raise ValueError(f"Primary key field '{key_field}' must be a required scalar")
        for relation in self.relations:
            for fk in relation.fields:
                if self.get_field(fk) is None:
                    raise ValueError(
                        f"Relation '{relation.name}' uses undeclared field '{fk}' on '{self.name}'"
                    )
        for group in self.unique_together:
            for name in group:
                if self.get_field(name) is None:
                    raise ValueError(f"Unique field '{name}' not declared on '{self.name}'")

    def get_field(self, name: str) -> FieldDef | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "fields": [f.to_dict() for f in self.fields],
            "primary_key": list(self.primary_key),
            "relations": [r.to_dict() for r in self.relations],
            "unique_together": [list(g) for g in self.unique_together],
        }


def field(
    name: str,
    kind: str | FieldKind,
    *,
    required: bool = True,
    is_list: bool = False,
    default: Any = None,
    default_kind: str | DefaultKind | None = None,
    enum_values: tuple[str, ...] | None = None,
    unique: bool = False,
    description: str = "",
) -> FieldDef:
    """Convenience constructor for FieldDef accepting string kinds.

    Example:
        >>> field("created_at", "datetime", default_kind="now")
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    if isinstance(default_kind, str):
        default_kind = DefaultKind(default_kind)
    return FieldDef(
        name=name,
        kind=kind,
        required=required,
        is_list=is_list,
        default=default,
        default_kind=default_kind,
        enum_values=enum_values,
        unique=unique,
        description=description,
    )
