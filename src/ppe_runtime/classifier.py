"""Classification of provider failures into retry guidance."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import httpx

from .errors import CredentialsExhaustedError, ProviderError, ToolUnsupportedError


class ErrorCategory(str, Enum):
    RATE_LIMIT = "RATE_LIMIT"
    AUTH = "AUTH"
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    TOOL_UNSUPPORTED = "TOOL_UNSUPPORTED"
    SERVER_ERROR = "SERVER_ERROR"
    CLIENT_ERROR = "CLIENT_ERROR"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    CREDENTIALS_EXHAUSTED = "CREDENTIALS_EXHAUSTED"
    UNKNOWN = "UNKNOWN"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class ErrorClassification:
    category: ErrorCategory
    severity: Severity
    is_retryable: bool
    retry_delay: float
    max_retries: int
    recovery_suggestion: str
    max_delay: float = 0.0
    multiplier: float = 1.0
    context: Dict[str, Any] = field(default_factory=dict)

    def backoff(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based)."""
        if not self.is_retryable:
            return 0.0
        return min(self.max_delay, self.retry_delay * (self.multiplier ** attempt))


_RETRY_AFTER_RE = re.compile(r"retry[\s_-]?after[\s:=]+(\d+)", re.IGNORECASE)
_STATUS_RE = re.compile(r"\b([45]\d\d)\b")

TOOL_SUBJECT_MARKERS = ("tool", "function")
TOOL_REJECTION_MARKERS = ("not support", "unsupported")


def looks_like_tool_unsupported(message: str) -> bool:
    """True only when the message names tools/functions and says they are rejected."""
    text = message.lower()
    return _has(text, *TOOL_SUBJECT_MARKERS) and _has(text, *TOOL_REJECTION_MARKERS)


def _has(text: str, *needles: str) -> bool:
    return any(n in text for n in needles)


def _status_of(error: BaseException, message: str) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    m = _STATUS_RE.search(message)
    return int(m.group(1)) if m else None


class ErrorClassifier:
    def classify(self, error: BaseException, context: Optional[Mapping[str, Any]] = None) -> ErrorClassification:
        ctx: Dict[str, Any] = dict(context or {})
        message = str(error).lower()
        status = _status_of(error, message)
        if isinstance(error, ProviderError):
            if error.provider:
                ctx.setdefault("provider", error.provider)
            if error.retry_after is not None:
                ctx.setdefault("retry_after", error.retry_after)
            if error.body:
                message = f"{message} {error.body.lower()}"
        ctx["error_type"] = type(error).__name__

        if isinstance(error, CredentialsExhaustedError):
            return ErrorClassification(
                category=ErrorCategory.CREDENTIALS_EXHAUSTED,
                severity=Severity.CRITICAL,
                is_retryable=False,
                retry_delay=error.retry_delay or 0.0,
                max_retries=0,
                recovery_suggestion="Every configured API key is rate limited or exhausted. "
                "Wait before retrying or add another key.",
                context=ctx,
            )

        if isinstance(error, ToolUnsupportedError):
            return self._tool_unsupported(ctx)

        if status == 429 or _has(message, "rate limit", "rate_limit", "too many requests", "resource_exhausted"):
            return ErrorClassification(
                category=ErrorCategory.RATE_LIMIT,
                severity=Severity.MEDIUM,
                is_retryable=True,
                retry_delay=self._rate_limit_delay(message, ctx),
                max_retries=3,
                max_delay=60.0,
                multiplier=2.0,
                recovery_suggestion="Rate limit exceeded. Wait before retrying. "
                "Consider reducing request frequency or upgrading API tier.",
                context=ctx,
            )

        if status == 401 or _has(message, "unauthorized", "authentication", "invalid api key", "api key not valid"):
            return ErrorClassification(
                category=ErrorCategory.AUTH,
                severity=Severity.CRITICAL,
                is_retryable=False,
                retry_delay=0.0,
                max_retries=0,
                recovery_suggestion="Authentication failed. Check API key configuration "
                "and ensure it is valid and has proper permissions.",
                context=ctx,
            )

        if _has(message, "quota", "billing", "payment required", "insufficient"):
            return ErrorClassification(
                category=ErrorCategory.QUOTA_EXCEEDED,
                severity=Severity.CRITICAL,
                is_retryable=False,
                retry_delay=0.0,
                max_retries=0,
                recovery_suggestion="Quota or billing limit exceeded. Check API usage limits and billing status.",
                context=ctx,
            )

        if status in (400, 404, 422, 501) and looks_like_tool_unsupported(message):
            return self._tool_unsupported(ctx)

        if "model" in message and _has(message, "not available", "unavailable", "not found"):
            return ErrorClassification(
                category=ErrorCategory.MODEL_UNAVAILABLE,
                severity=Severity.HIGH,
                is_retryable=False,
                retry_delay=0.0,
                max_retries=0,
                recovery_suggestion="Model not available. Try a different model or wait for it to become available.",
                context=ctx,
            )

        if isinstance(error, httpx.TimeoutException) or _has(message, "timeout", "timed out", "deadline exceeded"):
            return ErrorClassification(
                category=ErrorCategory.TIMEOUT,
                severity=Severity.MEDIUM,
                is_retryable=True,
                retry_delay=1.0,
                max_retries=2,
                max_delay=5.0,
                multiplier=1.5,
                recovery_suggestion="Request timeout. The API may be slow or overloaded. "
                "Consider a smaller request or a faster model.",
                context=ctx,
            )

        if isinstance(error, httpx.TransportError) or _has(
            message, "network", "connection", "dns", "unreachable", "unknown host", "reset by peer"
        ):
            return ErrorClassification(
                category=ErrorCategory.NETWORK,
                severity=Severity.HIGH,
                is_retryable=True,
                retry_delay=2.0,
                max_retries=3,
                max_delay=10.0,
                multiplier=1.5,
                recovery_suggestion="Network connectivity issue. Check the connection and verify "
                "the API endpoint is reachable.",
                context=ctx,
            )

        if status is not None and 500 <= status < 600:
            return ErrorClassification(
                category=ErrorCategory.SERVER_ERROR,
                severity=Severity.HIGH,
                is_retryable=True,
                retry_delay=5.0,
                max_retries=3,
                max_delay=30.0,
                multiplier=2.0,
                recovery_suggestion="Server error. The API service may be temporarily unavailable. Wait and retry.",
                context=ctx,
            )

        if status is not None and 400 <= status < 500:
            suggestion = {
                400: "Invalid request. Check request format and parameters.",
                403: "Access forbidden. Check API key permissions and resource access rights.",
                404: "Resource not found. Verify endpoint URL and model name.",
            }.get(status, "Client error. Review request parameters and API documentation.")
            return ErrorClassification(
                category=ErrorCategory.CLIENT_ERROR,
                severity=Severity.CRITICAL if status == 403 else Severity.HIGH,
                is_retryable=False,
                retry_delay=0.0,
                max_retries=0,
                recovery_suggestion=suggestion,
                context=ctx,
            )

        return ErrorClassification(
            category=ErrorCategory.UNKNOWN,
            severity=Severity.MEDIUM,
            is_retryable=False,
            retry_delay=0.0,
            max_retries=0,
            recovery_suggestion="Unknown error occurred. Check the error message and provider documentation.",
            context=ctx,
        )

    @staticmethod
    def _tool_unsupported(ctx: Dict[str, Any]) -> ErrorClassification:
        return ErrorClassification(
            category=ErrorCategory.TOOL_UNSUPPORTED,
            severity=Severity.MEDIUM,
            is_retryable=False,
            retry_delay=0.0,
            max_retries=0,
            recovery_suggestion="Tool/function calling is not supported by this model. "
            "Retry without tools or use a different model.",
            context=ctx,
        )

    @staticmethod
    def _rate_limit_delay(message: str, ctx: Mapping[str, Any]) -> float:
        retry_after = ctx.get("retry_after")
        if isinstance(retry_after, (int, float)):
            return float(retry_after)
        m = _RETRY_AFTER_RE.search(message)
        if m:
            return float(m.group(1))
        return 60.0

    def report(self, error: BaseException, context: Optional[Mapping[str, Any]] = None) -> str:
        """Render a markdown error report."""
        c = self.classify(error, context)
        lines = [
            "## Error Report",
            "",
            f"**Category:** {c.category.value}",
            f"**Severity:** {c.severity.value}",
            f"**Retryable:** {str(c.is_retryable).lower()}",
            "",
            "### Error Details",
            f"- **Type:** {type(error).__name__}",
            f"- **Message:** {error or 'No message'}",
            "",
        ]
        if c.is_retryable:
            lines += [
                "### Retry Strategy",
                f"- **Max Retries:** {c.max_retries}",
                f"- **Retry Delay:** {c.retry_delay:g}s",
                "",
            ]
        lines += ["### Recovery Suggestion", c.recovery_suggestion, ""]
        extra = {k: v for k, v in c.context.items() if k != "error_type"}
        if extra:
            lines.append("### Context")
            lines += [f"- **{k}:** {v}" for k, v in extra.items()]
        return "\n".join(lines).rstrip() + "\n"
