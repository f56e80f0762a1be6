from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx

from ..classifier import ErrorCategory, ErrorClassification, ErrorClassifier, looks_like_tool_unsupported
from ..constants import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_READ_TIMEOUT,
    FAST_MODEL_MARKERS,
    FAST_MODEL_TIMEOUT,
    OLLAMA_CONNECT_TIMEOUT,
    OLLAMA_READ_TIMEOUT,
    OLLAMA_WRITE_TIMEOUT,
    PRO_MODEL_TIMEOUT,
)
from ..errors import CredentialsExhaustedError, ExecutionCancelledError, ProviderError, ToolUnsupportedError
from ..logging import log_json, sanitize_text
from ..observability import Observer, estimate_cost, notify
from ..tracing import traced_span
from .adapters import ProviderAdapter, get_adapter
from .credentials import CredentialPool
from .models import NormalizedChatRequest, NormalizedChatResponse, ProviderKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeoutPolicy:
    """Per-call timeout budgets in seconds, tiered by backend and model class."""

    pro: float = PRO_MODEL_TIMEOUT
    fast: float = FAST_MODEL_TIMEOUT
    default_connect: float = DEFAULT_CONNECT_TIMEOUT
    default_read: float = DEFAULT_READ_TIMEOUT
    local_connect: float = OLLAMA_CONNECT_TIMEOUT
    local_read: float = OLLAMA_READ_TIMEOUT
    local_write: float = OLLAMA_WRITE_TIMEOUT

    def tier(self, kind: ProviderKind, model: str) -> str:
        name = (model or "").lower()
        if kind == ProviderKind.OLLAMA:
            return "local"
        if "pro" in name and "flash" not in name:
            return "pro"
        if any(marker in name for marker in FAST_MODEL_MARKERS):
            return "fast"
        return "default"

    def for_model(self, kind: ProviderKind, model: str) -> httpx.Timeout:
        tier = self.tier(kind, model)
        if tier == "local":
            return httpx.Timeout(self.local_read, connect=self.local_connect, write=self.local_write)
        if tier == "pro":
            return httpx.Timeout(self.pro)
        if tier == "fast":
            return httpx.Timeout(self.fast)
        return httpx.Timeout(self.default_read, connect=self.default_connect)


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("retry-after") if response.headers is not None else None
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


class ProviderClient:
    """
    Sends normalized chat requests to one provider backend.

    Each ``chat`` call applies the backend's timeout tier, retries
    retryable failures with backoff, rotates API keys on rate limits and
    strips tool declarations once when the model rejects them.
    """

    def __init__(
        self,
        kind: ProviderKind,
        *,
        credentials: Optional[CredentialPool] = None,
        base_url: Optional[str] = None,
        adapter: Optional[ProviderAdapter] = None,
        http_client: Optional[httpx.Client] = None,
        timeouts: Optional[TimeoutPolicy] = None,
        classifier: Optional[ErrorClassifier] = None,
        observer: Optional[Observer] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.kind = kind
        self.adapter = adapter or get_adapter(kind, base_url)
        self.credentials = credentials or CredentialPool([])
        self.timeouts = timeouts or TimeoutPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.observer = observer
        self.max_retries = max_retries
        self._http = http_client
        self._sleep = sleep

    def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str], timeout: httpx.Timeout) -> httpx.Response:
        if self._http is not None:
            return self._http.post(url, json=body, headers=headers, timeout=timeout)
        with httpx.Client(timeout=timeout) as client:
            return client.post(url, json=body, headers=headers)

    def _send(self, request: NormalizedChatRequest, api_key: Optional[str], operation_id: str) -> NormalizedChatResponse:
        url = self.adapter.endpoint(request, api_key)
        body = self.adapter.build_body(request)
        timeout = self.timeouts.for_model(self.kind, request.model)
        attrs = {"ppe.provider": self.kind.value, "ppe.model": request.model, "ppe.operation_id": operation_id}
        with traced_span("ppe.provider.chat", attrs) as span:
            start = time.time()
            response = self._post(url, body, self.adapter.headers(api_key), timeout)
            duration = (time.time() - start) * 1000
            span.set_attribute("http.status_code", response.status_code)
            if not 200 <= response.status_code < 300:
                text = response.text or ""
                logger.warning(
                    f"{self.kind.value} {request.model} HTTP {response.status_code} in {duration:.2f}ms: "
                    f"{sanitize_text(text)}"
                )
                raise ProviderError(
                    f"HTTP {response.status_code}: {sanitize_text(text)[:300]}",
                    status_code=response.status_code,
                    body=text,
                    provider=self.kind.value,
                    retry_after=_retry_after(response),
                )
            try:
                parsed = self.adapter.parse_response(response.text)
            except (AttributeError, TypeError, KeyError) as exc:
                raise ProviderError(
                    f"Unexpected {self.kind.value} response shape: {exc}",
                    status_code=response.status_code,
                    body=response.text[:500],
                    provider=self.kind.value,
                ) from exc
        logger.info(f"{self.kind.value} {request.model} success in {duration:.2f}ms")
        return parsed

    def _is_tool_unsupported(self, exc: Exception) -> bool:
        if isinstance(exc, ToolUnsupportedError):
            return True
        if not isinstance(exc, ProviderError):
            return False
        if exc.status_code in (401, 403, 429) or (exc.status_code or 0) >= 500:
            return False
        return looks_like_tool_unsupported(f"{exc} {exc.body or ''}")

    def _wait(self, delay: float, cancel: Optional[threading.Event]) -> None:
        if delay > 0:
            self._sleep(delay)
        if cancel is not None and cancel.is_set():
            raise ExecutionCancelledError("cancelled while waiting to retry")

    def chat(
        self,
        request: NormalizedChatRequest,
        *,
        cancel: Optional[threading.Event] = None,
        operation_id: Optional[str] = None,
    ) -> NormalizedChatResponse:
        operation_id = operation_id or uuid.uuid4().hex[:12]
        retries = 0
        downgraded = False
        # key rotations since the last backoff, at most one per key
        rotations = 0
        context = {"provider": self.kind.value, "model": request.model, "operation_id": operation_id}

        while True:
            if cancel is not None and cancel.is_set():
                raise ExecutionCancelledError("cancelled before provider call")
            api_key = self.credentials.acquire()
            if api_key is None and self.adapter.requires_api_key:
                raise ProviderError(
                    f"No API key configured for {self.kind.value}", status_code=401, provider=self.kind.value
                )
            try:
                response = self._send(request, api_key, operation_id)
            except (ProviderError, httpx.HTTPError) as exc:
                if request.tools and not downgraded and self._is_tool_unsupported(exc):
                    logger.warning(f"{self.kind.value} {request.model} rejected tool declarations; retrying without tools")
                    notify(self.observer, "record_error", ErrorCategory.TOOL_UNSUPPORTED.value, str(exc))
                    request = request.without_tools()
                    downgraded = True
                    continue

                classification = self.classifier.classify(exc, context)
                notify(self.observer, "record_error", classification.category.value, sanitize_text(str(exc)))
                log_json(
                    logging.WARNING,
                    "provider_error",
                    category=classification.category.value,
                    retryable=classification.is_retryable,
                    attempt=retries + 1,
                    **context,
                )

                if classification.category == ErrorCategory.RATE_LIMIT and api_key is not None:
                    self.credentials.mark_rate_limited(api_key, classification.retry_delay or None)
                    if rotations < len(self.credentials) and self.credentials.has_available():
                        rotations += 1
                        logger.info(f"Rotating {self.kind.value} API key after rate limit")
                        continue

                if not classification.is_retryable:
                    raise
                if retries >= min(classification.max_retries, self.max_retries):
                    if classification.category == ErrorCategory.RATE_LIMIT and len(self.credentials):
                        raise CredentialsExhaustedError(
                            self.kind.value, self.credentials.retry_delay() or classification.retry_delay
                        ) from exc
                    logger.error(f"{self.kind.value} {request.model} failed after {retries + 1} attempts")
                    raise

                delay = self._backoff(classification, retries)
                logger.info(f"Retrying {self.kind.value} call in {delay:.2f}s ({classification.category.value})")
                self._wait(delay, cancel)
                retries += 1
                rotations = 0
                continue

            if api_key is not None:
                self.credentials.mark_success(api_key)
            notify(
                self.observer,
                "record_api_call",
                operation_id,
                response.tokens_used,
                estimate_cost(request.model, response.tokens_used),
            )
            return response

    @staticmethod
    def _backoff(classification: ErrorClassification, attempt: int) -> float:
        delay = classification.backoff(attempt)
        return delay if delay > 0 else DEFAULT_INITIAL_DELAY
