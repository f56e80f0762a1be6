"""
Observer hooks for API calls, tool calls and errors.

Observers are fire-and-forget: ``notify`` swallows and logs any exception
raised by an observer so that accounting can never break execution.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, Protocol

from .constants import COST_PER_1K_TOKENS, DEFAULT_COST_PER_1K_TOKENS
from .logging import log_json

logger = logging.getLogger(__name__)


class Observer(Protocol):
    def record_api_call(self, operation_id: str, tokens_used: int, cost: float) -> None:
        ...

    def record_tool_call(self, name: str, duration_ms: float, success: bool) -> None:
        ...

    def record_error(self, category: str, message: str) -> None:
        ...


def estimate_cost(model: str, tokens: int) -> float:
    """USD estimate for ``tokens`` using the closest price-table entry."""
    name = (model or "").lower()
    price = DEFAULT_COST_PER_1K_TOKENS
    # longest key first so "gpt-4-turbo" wins over "gpt-4"
    for key in sorted(COST_PER_1K_TOKENS, key=len, reverse=True):
        if key in name:
            price = COST_PER_1K_TOKENS[key]
            break
    return tokens / 1000.0 * price


class LoggingObserver:
    """Emits JSON log events and keeps running totals."""

    def __init__(self):
        self._lock = threading.Lock()
        self.api_calls = 0
        self.tokens_used = 0
        self.total_cost = 0.0
        self.tool_calls = 0
        self.tool_failures = 0
        self.errors: List[Dict[str, str]] = []

    def record_api_call(self, operation_id: str, tokens_used: int, cost: float) -> None:
        with self._lock:
            self.api_calls += 1
            self.tokens_used += tokens_used
            self.total_cost += cost
        log_json(logging.INFO, "api_call", operation_id=operation_id, tokens_used=tokens_used, cost=round(cost, 6))

    def record_tool_call(self, name: str, duration_ms: float, success: bool) -> None:
        with self._lock:
            self.tool_calls += 1
            if not success:
                self.tool_failures += 1
        log_json(logging.INFO, "tool_call", tool=name, duration_ms=round(duration_ms, 2), success=success)

    def record_error(self, category: str, message: str) -> None:
        with self._lock:
            self.errors.append({"category": category, "message": message})
        log_json(logging.WARNING, "error", category=category, message=message)

    def summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "api_calls": self.api_calls,
                "tokens_used": self.tokens_used,
                "total_cost": round(self.total_cost, 6),
                "tool_calls": self.tool_calls,
                "tool_failures": self.tool_failures,
                "errors": len(self.errors),
            }


def notify(observer: Optional[Observer], method: str, *args: Any) -> None:
    if observer is None:
        return
    fn: Optional[Callable[..., None]] = getattr(observer, method, None)
    if fn is None:
        return
    try:
        fn(*args)
    except Exception as e:
        logger.warning(f"Observer {method} failed: {e}")
