from __future__ import annotations

import base64
import dataclasses
import enum
import json
from typing import Any

_BUFFER = "Buffer"


def _default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray, memoryview)):
        return {"type": _BUFFER, "data": base64.b64encode(bytes(obj)).decode("ascii")}
    if isinstance(obj, enum.Enum):
        return obj.value
    # `is_dataclass()` is also true for dataclass *types*; only encode instances.
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _object_hook(obj: dict[str, Any]) -> Any:
    if obj.get("type") == _BUFFER and isinstance(obj.get("data"), str):
        return base64.b64decode(obj["data"].encode("ascii"), validate=True)
    return obj


def dumps(obj: Any, *, indent: int | None = None) -> str:
    """JSON with Baileys-style `{"type": "Buffer", "data": <base64>}` bytes."""

    return json.dumps(obj, default=_default, indent=indent, sort_keys=True)


def loads(data: str | bytes) -> Any:
    """Inverse of `dumps`. Raises `ValueError` on malformed input."""

    return json.loads(data, object_hook=_object_hook)
