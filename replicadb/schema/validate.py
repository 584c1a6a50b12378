"""
Record and key-path validators built from model definitions.

Each model gets a pydantic TypeAdapter over a generated TypedDict, so
untrusted payloads (server merged records, pulled change logs, create
input after default fill) are parsed into plain dict records or rejected.

Invariants:
    - Unknown keys are rejected (extra="forbid")
    - Strings, ints and bools are strict; datetimes accept ISO strings
    - Datetimes come out timezone-aware UTC; naive input is read as UTC
    - Validated records are new dicts; the input is never mutated
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Sequence

from pydantic import AfterValidator, ConfigDict, StrictBool, StrictInt, StrictStr, TypeAdapter, with_config
from pydantic import ValidationError as PydanticValidationError
from typing_extensions import Annotated, NotRequired, Required, TypedDict

from ..errors import ValidationError
from .types import FieldDef, FieldKind, ModelDef


def as_utc(value: datetime) -> datetime:
    """Return `value` as an aware UTC datetime, reading naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


_SCALAR_TYPES: Dict[FieldKind, Any] = {
    FieldKind.STRING: StrictStr,
    FieldKind.INT: StrictInt,
    FieldKind.FLOAT: float,
    FieldKind.BOOLEAN: StrictBool,
    FieldKind.DATETIME: Annotated[datetime, AfterValidator(as_utc)],
    FieldKind.BYTES: bytes,
    FieldKind.JSON: Any,
}


def _annotation(definition: FieldDef, nullable: bool) -> Any:
    if definition.kind == FieldKind.ENUM:
        base: Any = Literal[tuple(definition.enum_values or ())]  # type: ignore[misc]
    else:
        base = _SCALAR_TYPES[definition.kind]
    if definition.is_list:
        base = List[base]  # type: ignore[valid-type]
    if nullable:
        base = Optional[base]
    return base


def _format_errors(exc: PydanticValidationError) -> List[str]:
    return [
        f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
        for err in exc.errors()
    ]


class ModelValidator:
    """Parses untrusted payloads into records of one model.

    Attributes:
        model: The model definition this validator was built from

    Example:
        >>> validator = ModelValidator(Todo)
        >>> validator.validate_record({"id": 1, "title": "x", "board_id": "b1"})
        {'id': 1, 'title': 'x', 'board_id': 'b1'}
    """

    def __init__(self, model: ModelDef) -> None:
        self.model = model
        record_fields: Dict[str, Any] = {}
        for definition in model.fields:
            if definition.required:
                record_fields[definition.name] = Required[_annotation(definition, False)]
            else:
                record_fields[definition.name] = NotRequired[_annotation(definition, True)]
        record_type = TypedDict(f"{model.name}Record", record_fields)  # type: ignore[operator]
        record_type = with_config(ConfigDict(extra="forbid"))(record_type)
        self._record_adapter: TypeAdapter[Any] = TypeAdapter(record_type)

        key_types = tuple(
            _annotation(model.get_field(name), False)  # type: ignore[arg-type]
            for name in model.primary_key
        )
        self._key_adapter: TypeAdapter[Any] = TypeAdapter(tuple[key_types])  # type: ignore[valid-type]

    def validate_record(self, payload: Any) -> Dict[str, Any]:
        """Validate a full record.

        Args:
            payload: Candidate record (usually a dict)

        Returns:
            A new dict with every declared field present (optional fields
            that were absent are set to None)

        Raises:
            ValidationError: If the payload does not match the model
        """
        try:
            record = dict(self._record_adapter.validate_python(payload))
        except PydanticValidationError as e:
            raise ValidationError(
                f"Invalid {self.model.name} record",
                model=self.model.name,
                errors=_format_errors(e),
            ) from e
        for definition in self.model.fields:
            record.setdefault(definition.name, None)
        return record

    def validate_key_path(self, key_path: Sequence[Any]) -> tuple:
        """Validate a primary key path.

        Raises:
            ValidationError: If the key path does not match the primary key types
        """
        try:
            return tuple(self._key_adapter.validate_python(tuple(key_path)))
        except (PydanticValidationError, TypeError) as e:
            errors = _format_errors(e) if isinstance(e, PydanticValidationError) else [str(e)]
            raise ValidationError(
                f"Invalid {self.model.name} key path",
                model=self.model.name,
                errors=errors,
            ) from e
