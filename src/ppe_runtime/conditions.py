from __future__ import annotations

import re
from typing import Mapping, Protocol

from . import template
from .values import Value, is_truthy, lookup, stringify

_PATH_RE = re.compile(r"^[A-Za-z_][\w.]*$")
_LITERALS = {"true": True, "false": False, "null": None, "none": None}


class ConditionEvaluator(Protocol):
    def evaluate(self, condition: str, variables: Mapping[str, Value]) -> bool:
        ...

    def value_of(self, expression: str, variables: Mapping[str, Value]) -> Value:
        ...


def _unquote(text: str):
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return None


class SimpleConditionEvaluator:
    """
    Minimal evaluator for control-flow conditions.

    Supports ``a == b``, ``a != b`` (and ``===``/``!==``), ``!a`` and plain
    truthiness. Operands are variable paths, ``{{templates}}`` or literals.
    Anything richer needs a custom evaluator.
    """

    def value_of(self, expression: str, variables: Mapping[str, Value]) -> Value:
        expr = expression.strip()
        if "{{" in expr:
            return template.render(expr, variables)
        quoted = _unquote(expr)
        if quoted is not None:
            return quoted
        if expr.lower() in _LITERALS:
            return _LITERALS[expr.lower()]
        if _PATH_RE.match(expr):
            return lookup(variables, expr)
        return expr

    def evaluate(self, condition: str, variables: Mapping[str, Value]) -> bool:
        cond = condition.strip()
        for op in ("!==", "===", "!=", "=="):
            if op in cond:
                left, right = cond.split(op, 1)
                equal = stringify(self.value_of(left, variables)) == stringify(self.value_of(right, variables))
                return not equal if op.startswith("!") else equal
        if cond.startswith("!"):
            return not self.evaluate(cond[1:], variables)
        return is_truthy(self.value_of(cond, variables))
