"""
Deterministic JSON serialization for byte-stable archive files.

Identical data always produces identical bytes regardless of dict
ordering, so per-file checksums in a manifest are reproducible.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePath
from typing import Any

import orjson


def _default_serializer(obj: Any) -> Any:
    """
    Custom serializer for types not natively supported by orjson.

    Args:
        obj: Object to serialize.

    Returns:
        JSON-serializable representation.

    Raises:
        TypeError: If object cannot be serialized.
    """
    if isinstance(obj, datetime):
        return obj.strftime("%Y-%m-%dT%H:%M:%S.%fZ")
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, PurePath):
        return obj.as_posix()
    if isinstance(obj, (set, frozenset)):
        # Sorted for determinism
        return sorted(obj, key=str)
    if hasattr(obj, "model_dump"):
        # Pydantic models use their wire (alias) names
        return obj.model_dump(by_alias=True, exclude_none=True)

    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def canonical_json_dumps(obj: Any, *, indent: bool = False) -> str:
    """
    Serialize object to canonical JSON string.

    Guarantees:
    - Sorted dictionary keys
    - UTF-8 encoding
    - Normalized newlines

    Args:
        obj: Object to serialize.
        indent: If True, pretty-print with 2-space indentation.

    Returns:
        Canonical JSON string.

    Examples:
        >>> canonical_json_dumps({"b": 2, "a": 1})
        '{"a":1,"b":2}'
    """
    options = orjson.OPT_SORT_KEYS

    if indent:
        options |= orjson.OPT_INDENT_2

    json_str = orjson.dumps(obj, default=_default_serializer, option=options).decode("utf-8")

    # Normalize line endings
    return json_str.replace("\r\n", "\n").replace("\r", "\n")


def canonical_json_loads(json_str: str | bytes) -> Any:
    """
    Parse JSON string.

    Examples:
        >>> canonical_json_loads('{"a":1,"b":2}')
        {'a': 1, 'b': 2}
    """
    return orjson.loads(json_str)


def canonical_json_bytes(obj: Any) -> bytes:
    """
    Serialize object to canonical JSON bytes.

    Useful for computing hashes of JSON objects.
    """
    return orjson.dumps(obj, default=_default_serializer, option=orjson.OPT_SORT_KEYS)


def write_json_file(path: Path, obj: Any) -> None:
    """Write ``obj`` as indented canonical JSON, creating parent dirs."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(canonical_json_dumps(obj, indent=True) + "\n", encoding="utf-8")


def read_json_file(path: Path) -> Any:
    """Read a JSON file written by :func:`write_json_file` (or any JSON)."""
    return canonical_json_loads(path.read_bytes())


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string with millisecond precision."""
    now = datetime.now(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
