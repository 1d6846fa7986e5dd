"""Cache key encoding.

Keys look like ``getJobs({"page":1,"status":"open"})``: the endpoint name
followed by the canonical JSON of its arguments. Mapping keys are sorted
recursively, so two argument values that are equal apart from key order
produce the same key.
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Callable, Mapping
from datetime import date, datetime, time
from enum import Enum
from typing import Any
from uuid import UUID

from tagq.errors import InvalidArgumentShape

_SCALARS = (str, int, float, bool, type(None))


def canonicalize(value: Any) -> Any:
    """Convert an argument value into plain JSON-compatible data.

    Raises InvalidArgumentShape for callables, cyclic structures and types
    with no stable representation.
    """
    return _canonicalize(value, set())


def _canonicalize(value: Any, seen: set[int]) -> Any:
    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, Enum):
        return _canonicalize(value.value, seen)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if callable(value) and not dataclasses.is_dataclass(value):
        raise InvalidArgumentShape(
            f"Cannot use {type(value).__name__} as query arguments"
        )

    marker = id(value)
    if marker in seen:
        raise InvalidArgumentShape("Cyclic structure in query arguments")
    seen.add(marker)
    try:
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            return {
                f.name: _canonicalize(getattr(value, f.name), seen)
                for f in dataclasses.fields(value)
            }
        if isinstance(value, Mapping):
            result: dict[str, Any] = {}
            for k, v in value.items():
                if not isinstance(k, (str, int, float, bool)):
                    raise InvalidArgumentShape(
                        f"Unsupported mapping key type {type(k).__name__}"
                    )
                name = str(k)
                if name in result:
                    raise InvalidArgumentShape(
                        f"Mapping keys collide once stringified: {name!r}"
                    )
                result[name] = _canonicalize(v, seen)
            return result
        if isinstance(value, (list, tuple)):
            return [_canonicalize(v, seen) for v in value]
        if isinstance(value, (set, frozenset)):
            items = [_canonicalize(v, seen) for v in value]
            return sorted(items, key=_dumps)
    finally:
        seen.discard(marker)

    raise InvalidArgumentShape(
        f"Cannot use {type(value).__name__} as query arguments"
    )


def _dumps(value: Any) -> str:
    try:
        return json.dumps(
            value, sort_keys=True, separators=(",", ":"), ensure_ascii=False
        )
    except ValueError as e:
        raise InvalidArgumentShape(str(e)) from e


def encode_key(
    endpoint_name: str,
    args: Any,
    serialize_args: Callable[[Any], str] | None = None,
) -> str:
    """Generate a cache key from endpoint name and arguments."""
    if serialize_args is not None:
        return f"{endpoint_name}({serialize_args(args)})"
    return f"{endpoint_name}({_dumps(canonicalize(args))})"


__all__ = ["canonicalize", "encode_key"]
