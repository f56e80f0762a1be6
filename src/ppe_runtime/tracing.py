from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.trace import Span, Status, StatusCode


TRACER_NAME = "ppe_runtime"


def get_tracer():
    return trace.get_tracer(TRACER_NAME)


@contextmanager
def traced_span(name: str, attributes: Optional[Dict[str, Any]] = None) -> Iterator[Span]:
    """Run a block inside a span; exceptions mark the span as errored and propagate."""
    with get_tracer().start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        try:
            yield span
        except Exception as exc:
            span.record_exception(exc)
            span.set_status(Status(StatusCode.ERROR, str(exc)))
            raise
