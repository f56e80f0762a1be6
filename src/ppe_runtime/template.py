from __future__ import annotations

import re
from typing import Callable, Dict, List, Mapping

from .values import Value, lookup, stringify

_EXPR_RE = re.compile(r"\{\{([^}]+)\}\}")

FILTERS: Dict[str, Callable[[str], str]] = {
    "upper": str.upper,
    "lower": str.lower,
    "trim": str.strip,
}


def _evaluate(expression: str, variables: Mapping[str, Value]) -> str:
    parts = [p.strip() for p in expression.strip().split("|")]
    text = stringify(lookup(variables, parts[0]))
    for name in parts[1:]:
        fn = FILTERS.get(name.lower())
        if fn is not None:
            text = fn(text)
    return text


def render(text: str, variables: Mapping[str, Value]) -> str:
    """Expand ``{{path|filter}}`` spans; missing variables render as ""."""
    if "{{" not in text:
        return text
    return _EXPR_RE.sub(lambda m: _evaluate(m.group(1), variables), text)


def has_variables(text: str) -> bool:
    return _EXPR_RE.search(text) is not None


def extract_variables(text: str) -> List[str]:
    names: List[str] = []
    for m in _EXPR_RE.finditer(text):
        name = m.group(1).split("|")[0].strip()
        if name and name not in names:
            names.append(name)
    return names
