"""
JSON codec for persisted records.

Records hold datetimes and bytes, which JSON cannot carry natively. They are
tagged as single-key objects:

    datetime -> {"$date": "<ISO 8601>"}
    bytes    -> {"$bytes": "<base64>"}

Tuples are written as lists; keys are stored as JSON arrays.
"""

from __future__ import annotations

import base64
import json
from datetime import datetime
from typing import Any, Tuple


def to_jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"$date": value.isoformat()}
    if isinstance(value, (bytes, bytearray)):
        return {"$bytes": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


def from_jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        if len(value) == 1 and "$date" in value:
            return datetime.fromisoformat(value["$date"])
        if len(value) == 1 and "$bytes" in value:
            return base64.b64decode(value["$bytes"])
        return {k: from_jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_jsonable(v) for v in value]
    return value


def dumps(value: Any) -> str:
    return json.dumps(to_jsonable(value), sort_keys=True, separators=(",", ":"))


def loads(text: str) -> Any:
    return from_jsonable(json.loads(text))


def dumps_key(key: Tuple[Any, ...]) -> str:
    return dumps(list(key))


def loads_key(text: str) -> Tuple[Any, ...]:
    return tuple(loads(text))
