"""
Schema Registry for replicadb.

The SchemaRegistry is the central authority for all model definitions.
It provides:
- Registration of models
- Relation resolution (owned and inverse sides)
- Schema fingerprinting for persisted-store compatibility checks
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Registry is mutable during setup, frozen before a database opens
    - Once frozen, no new models can be registered
    - Model names are unique
    - Fingerprint changes when the schema changes

How to change safely:
    - Register all models before calling freeze()
    - Never modify registered models after freeze

Example:
    >>> registry = SchemaRegistry()
    >>> registry.register_model(Board)
    >>> registry.register_model(Todo)
    >>> registry.freeze()
    'sha256:...'
    >>> registry.descriptor("Board").relations["todos"].to_many
    True
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from typing import Dict, Iterator, Optional

from .descriptor import ModelDescriptor, RelationView
from .types import ModelDef, ReferentialAction

logger = logging.getLogger(__name__)


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""
    pass


class DuplicateRegistrationError(Exception):
    """Raised when attempting to register a duplicate model name."""
    pass


class SchemaError(Exception):
    """Raised when the registered models do not form a consistent schema."""
    pass


class SchemaRegistry:
    """Central registry for all model definitions.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of the schema (computed on freeze)
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._models: Dict[str, ModelDef] = {}
        self._descriptors: Dict[str, ModelDescriptor] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def register_model(self, model: ModelDef) -> None:
        """Register a model definition.

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the name is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register model '{model.name}': registry is frozen"
                )
            if model.name in self._models:
                raise DuplicateRegistrationError(f"Model '{model.name}' already registered")
            self._models[model.name] = model
            logger.debug(f"Registered model: {model.name}")

    def get_model(self, name: str) -> Optional[ModelDef]:
        return self._models.get(name)

    def models(self) -> Iterator[ModelDef]:
        """Iterate over all registered models in registration order."""
        yield from self._models.values()

    def descriptor(self, name: str) -> ModelDescriptor:
        """Get the dispatch descriptor for a model.

        Raises:
            SchemaError: If the registry is not frozen
            KeyError: If the model is unknown
        """
        if not self._frozen:
            raise SchemaError("Descriptors are available only after freeze()")
        try:
            return self._descriptors[name]
        except KeyError:
            raise KeyError(f"Unknown model '{name}'") from None

    def descriptors(self) -> Iterator[ModelDescriptor]:
        yield from self._descriptors.values()

    def freeze(self) -> str:
        """Freeze the registry, resolve relations and compute the fingerprint.

        Returns:
            Schema fingerprint string

        Raises:
            RegistryFrozenError: If already frozen
            SchemaError: If a relation references an unknown model or key
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            self._descriptors = {name: ModelDescriptor(m) for name, m in self._models.items()}
            self._resolve_relations()
            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Schema registry frozen with {len(self._models)} models, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def _resolve_relations(self) -> None:
        for model in self._models.values():
            owner = self._descriptors[model.name]
            for relation in model.relations:
                target = self._descriptors.get(relation.target)
                if target is None:
                    raise SchemaError(
                        f"Relation '{model.name}.{relation.name}' targets unknown model '{relation.target}'"
                    )
                if not target.is_unique_set(relation.references):
                    raise SchemaError(
                        f"Relation '{model.name}.{relation.name}' must reference a unique key "
                        f"of '{relation.target}', got {relation.references}"
                    )
                required = all(owner.fields[name].required for name in relation.fields)
                on_delete = relation.on_delete or (
                    ReferentialAction.RESTRICT if required else ReferentialAction.SET_NULL
                )
                if on_delete == ReferentialAction.SET_NULL and required:
                    raise SchemaError(
                        f"Relation '{model.name}.{relation.name}' cannot SET_NULL a required foreign key"
                    )
                owner.add_relation(
                    RelationView(
                        name=relation.name,
                        model=model.name,
                        target=relation.target,
                        local_fields=relation.fields,
                        target_fields=relation.references,
                        to_many=False,
                        owner=True,
                        required=required,
                        on_delete=on_delete,
                        definition=relation,
                    )
                )
                inverse_name = relation.related_name or f"_{model.name.lower()}_{relation.name}"
                target.add_relation(
                    RelationView(
                        name=inverse_name,
                        model=relation.target,
                        target=model.name,
                        local_fields=relation.references,
                        target_fields=relation.fields,
                        to_many=not owner.is_unique_set(relation.fields),
                        owner=False,
                        required=required,
                        on_delete=on_delete,
                        definition=relation,
                    )
                )

    def _compute_fingerprint(self) -> str:
        """Compute SHA-256 fingerprint of the schema."""
        canonical = json.dumps(
            [m.to_dict() for m in sorted(self._models.values(), key=lambda m: m.name)],
            sort_keys=True,
            separators=(",", ":"),
        )
        return f"sha256:{hashlib.sha256(canonical.encode()).hexdigest()}"
