"""Variable values shared between scripts, templates and the engine.

Script variables are restricted to JSON-like data so that dot-path lookups and
filters can dispatch on a small, closed set of types.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional, Union

Value = Union[None, bool, int, float, str, List["Value"], Dict[str, "Value"]]
Variables = Dict[str, Value]


def normalize(obj: Any, *, none_as: Optional[str] = None) -> Value:
    """Coerce parsed YAML/JSON data into a ``Value``.

    ``none_as`` replaces nulls, which is how front matter treats empty keys.
    """
    if obj is None:
        return none_as
    if isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, Mapping):
        return {str(k): normalize(v, none_as=none_as) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [normalize(v, none_as=none_as) for v in obj]
    return str(obj)


def lookup(variables: Mapping[str, Value], path: str) -> Value:
    """Resolve ``a.b.c`` against nested mappings; any miss yields None."""
    current: Value = dict(variables)
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            idx = int(segment)
            if idx >= len(current):
                return None
            current = current[idx]
        else:
            return None
    return current


def stringify(value: Value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (int, float, str)):
        return str(value)
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def is_truthy(value: Value) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() not in ("", "false", "0", "null", "none")
    return len(value) > 0


def coerce_scalar(raw: str) -> Value:
    """Best-effort number parsing for bare DSL parameter values."""
    try:
        return int(raw)
    except ValueError:
        pass
    try:
        return float(raw)
    except ValueError:
        return raw
