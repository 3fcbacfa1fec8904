"""JSON text helpers for ``jsonb`` columns and outbound payloads.

asyncpg hands ``jsonb`` to Python as text unless a codec is registered; the store keeps
that default and converts at the edges with these two functions.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic_core import to_jsonable_python


def encode_jsonb(value: Any) -> str:
    """Models, datetimes, enums and UUIDs are converted as ``model_dump(mode="json")`` would."""
    return json.dumps(to_jsonable_python(value, fallback=str), separators=(",", ":"))


def decode_jsonb(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        value = bytes(value).decode("utf-8")
    return json.loads(value)
