"""
Schema definitions for replicadb.

Models are declared in Python, registered with a SchemaRegistry and frozen
before a database opens. Freezing resolves inverse relations and builds one
ModelDescriptor (dispatch table) per model.
"""

from .descriptor import ModelDescriptor, RelationView
from .registry import (
    DuplicateRegistrationError,
    RegistryFrozenError,
    SchemaError,
    SchemaRegistry,
)
from .types import (
    DefaultKind,
    FieldDef,
    FieldKind,
    ModelDef,
    ReferentialAction,
    RelationDef,
    field,
)
from .validate import ModelValidator

__all__ = [
    "DefaultKind",
    "DuplicateRegistrationError",
    "FieldDef",
    "FieldKind",
    "ModelDef",
    "ModelDescriptor",
    "ModelValidator",
    "ReferentialAction",
    "RegistryFrozenError",
    "RelationDef",
    "RelationView",
    "SchemaError",
    "SchemaRegistry",
    "field",
]
