import json
import logging
import re

from opentelemetry import trace

SENSITIVE_KEYS = {
    "authorization",
    "proxy-authorization",
    "api_key",
    "apikey",
    "api-key",
    "x-api-key",
    "key",
    "password",
    "secret",
    "token",
    "access_token",
    "refresh_token",
}

_BEARER_RE = re.compile(r"bearer\s+[A-Za-z0-9._\-]+", re.IGNORECASE)
_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_KEY_PARAM_RE = re.compile(r"((?:api_?)?key|token)=([^&\s\"']+)", re.IGNORECASE)
MAX_LOGGED_TEXT = 1000


def configure_logging(name: str):
    logger = logging.getLogger(name)
    if not logger.handlers:
        logging.basicConfig(level=logging.INFO, format='%(message)s')
    return logger


def _get_trace_fields() -> dict:
    """Extract standard trace fields from the current OpenTelemetry span."""
    fields = {}
    try:
        span = trace.get_current_span()
        ctx = span.get_span_context() if span else None
        if ctx and ctx.is_valid:
            trace_id_hex = format(ctx.trace_id, '032x')
            span_id_hex = format(ctx.span_id, '016x')
            fields["trace_id"] = trace_id_hex
            fields["span_id"] = span_id_hex
    except Exception:
        # Best-effort enrichment
        pass
    return fields


def sanitize_text(text: str) -> str:
    """Redact credentials embedded in free text and cap its length."""
    text = _BEARER_RE.sub("Bearer [REDACTED]", text)
    text = _KEY_PARAM_RE.sub(lambda m: f"{m.group(1)}=[REDACTED]", text)
    if len(text) > MAX_LOGGED_TEXT:
        text = text[:MAX_LOGGED_TEXT] + "...[truncated]"
    return text


def _scrub_value(v):
    if isinstance(v, str):
        if _EMAIL_RE.search(v):
            v = _EMAIL_RE.sub("[REDACTED_EMAIL]", v)
        return sanitize_text(v)
    return v


def _scrub(obj):
    if isinstance(obj, dict):
        out = {}
        for k, v in obj.items():
            if str(k).lower() in SENSITIVE_KEYS:
                out[k] = "[REDACTED]"
            else:
                out[k] = _scrub(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [_scrub(i) for i in obj]
    return _scrub_value(obj)


def log_json(level: int, event: str, **kwargs):
    for k, v in _get_trace_fields().items():
        kwargs.setdefault(k, v)
    payload = _scrub({"event": event, **kwargs})
    logging.getLogger("ppe_runtime").log(level, json.dumps(payload, default=str))
