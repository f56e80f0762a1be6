"""Wire formats for the supported provider backends.

Each adapter turns a ``NormalizedChatRequest`` into a URL, headers and JSON
body for its backend, and parses the backend's reply back into a
``NormalizedChatResponse``. Adapters do no I/O.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Iterable, List, Optional

from ..constants import (
    ANTHROPIC_BASE_URL,
    ANTHROPIC_MAX_TOKENS,
    ANTHROPIC_VERSION,
    CHARS_PER_TOKEN,
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_P,
    GEMINI_BASE_URL,
    OLLAMA_BASE_URL,
    OPENAI_BASE_URL,
)
from ..errors import ProviderError
from .models import (
    Content,
    FunctionCall,
    NormalizedChatRequest,
    NormalizedChatResponse,
    ProviderKind,
    ToolDeclaration,
)

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]

_FINISH_REASONS = {
    "stop": "STOP",
    "end_turn": "STOP",
    "stop_sequence": "STOP",
    "length": "MAX_TOKENS",
    "max_tokens": "MAX_TOKENS",
    "tool_calls": "TOOL_CALLS",
    "tool_use": "TOOL_CALLS",
}


def normalize_finish_reason(reason: Optional[str]) -> Optional[str]:
    if not reason:
        return None
    return _FINISH_REASONS.get(reason.lower(), reason.upper())


def estimate_tokens(text: str) -> int:
    return int(len(text) / CHARS_PER_TOKEN)


def _load_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as exc:
        raise ProviderError(f"Malformed response body: {exc}", body=text[:500]) from exc


def _expect_object(payload: Any, text: str, provider: str) -> JsonDict:
    if not isinstance(payload, dict):
        raise ProviderError(
            f"Expected a JSON object, got {type(payload).__name__}", body=text[:500], provider=provider
        )
    return payload


def iter_event_stream(text: str) -> Iterable[Any]:
    """Yield JSON payloads from an event-stream body (``data:`` lines)."""
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith(":"):
            continue
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            break
        if not data:
            continue
        yield _load_json(data)


def _system_text(request: NormalizedChatRequest) -> Optional[str]:
    chunks = [request.system_instruction] if request.system_instruction else []
    chunks.extend(m.text for m in request.messages if m.role == "system" and m.text)
    return "\n\n".join(chunks) if chunks else None


def _conversation(request: NormalizedChatRequest) -> List[Content]:
    return [m for m in request.messages if m.role != "system"]


class ProviderAdapter:
    kind: ProviderKind
    default_base_url: str = ""

    def __init__(self, base_url: Optional[str] = None):
        self.base_url = (base_url or self.default_base_url).rstrip("/")

    def endpoint(self, request: NormalizedChatRequest, api_key: Optional[str]) -> str:
        raise NotImplementedError

    def headers(self, api_key: Optional[str]) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def build_body(self, request: NormalizedChatRequest) -> JsonDict:
        raise NotImplementedError

    def parse_response(self, text: str) -> NormalizedChatResponse:
        raise NotImplementedError

    @property
    def requires_api_key(self) -> bool:
        return True


class GeminiAdapter(ProviderAdapter):
    kind = ProviderKind.GEMINI
    default_base_url = GEMINI_BASE_URL

    def endpoint(self, request: NormalizedChatRequest, api_key: Optional[str]) -> str:
        return f"{self.base_url}/models/{request.model}:generateContent?key={api_key or ''}"

    @staticmethod
    def _part(part) -> JsonDict:
        if part.function_call is not None:
            call: JsonDict = {"name": part.function_call.name, "args": part.function_call.args}
            return {"functionCall": call}
        if part.function_response is not None:
            return {
                "functionResponse": {
                    "name": part.function_response.name,
                    "response": part.function_response.response,
                }
            }
        return {"text": part.text or ""}

    def build_body(self, request: NormalizedChatRequest) -> JsonDict:
        contents = []
        for msg in _conversation(request):
            role = "model" if msg.role in ("assistant", "model") else "user"
            contents.append({"role": role, "parts": [self._part(p) for p in msg.parts]})
        body: JsonDict = {"contents": contents}
        if request.tools:
            body["tools"] = [
                {
                    "functionDeclarations": [
                        {"name": t.name, "description": t.description, "parameters": t.parameters}
                        for t in request.tools
                    ]
                }
            ]
        system = _system_text(request)
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        config: JsonDict = {}
        if request.temperature is not None:
            config["temperature"] = request.temperature
        if request.top_p is not None:
            config["topP"] = request.top_p
        if request.top_k is not None:
            config["topK"] = request.top_k
        if request.max_tokens is not None:
            config["maxOutputTokens"] = request.max_tokens
        if config:
            body["generationConfig"] = config
        return body

    def parse_response(self, text: str) -> NormalizedChatResponse:
        stripped = text.lstrip()
        if stripped.startswith("data:") or stripped.startswith(":"):
            chunks = list(iter_event_stream(text))
        else:
            payload = _load_json(text)
            chunks = payload if isinstance(payload, list) else [payload]

        texts: List[str] = []
        calls: List[FunctionCall] = []
        finish: Optional[str] = None
        tokens = 0
        for chunk in chunks:
            if not isinstance(chunk, dict):
                continue
            if "error" in chunk:
                err = chunk["error"]
                if not isinstance(err, dict):
                    raise ProviderError(str(err or "Gemini error"), body=text[:500], provider=self.kind.value)
                code = err.get("code")
                raise ProviderError(
                    str(err.get("message", "Gemini error")),
                    status_code=code if isinstance(code, int) else None,
                    body=json.dumps(err)[:500],
                    provider=self.kind.value,
                )
            usage = chunk.get("usageMetadata") or {}
            tokens = usage.get("totalTokenCount", tokens)
            candidates = chunk.get("candidates") or []
            if not candidates:
                continue
            candidate = candidates[0]
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("thought") is True:
                    continue
                if "text" in part:
                    texts.append(part["text"])
                elif "functionCall" in part:
                    fc = part["functionCall"]
                    kwargs: JsonDict = {"name": fc.get("name", ""), "args": fc.get("args") or {}}
                    if fc.get("id"):
                        kwargs["id"] = fc["id"]
                    calls.append(FunctionCall(**kwargs))
            finish = normalize_finish_reason(candidate.get("finishReason")) or finish

        joined = "".join(texts)
        return NormalizedChatResponse(
            text=joined,
            tool_calls=calls,
            finish_reason=finish,
            tokens_used=tokens or estimate_tokens(joined),
        )


def _openai_tools(tools: List[ToolDeclaration]) -> List[JsonDict]:
    return [
        {
            "type": "function",
            "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
        }
        for t in tools
    ]


def _openai_messages(request: NormalizedChatRequest, *, stringify_args: bool) -> List[JsonDict]:
    out: List[JsonDict] = []
    system = _system_text(request)
    if system:
        out.append({"role": "system", "content": system})
    for msg in _conversation(request):
        responses = msg.function_responses
        if responses:
            for r in responses:
                item: JsonDict = {"role": "tool", "content": json.dumps(r.response)}
                if r.id:
                    item["tool_call_id"] = r.id
                out.append(item)
            continue
        role = "assistant" if msg.role in ("assistant", "model") else "user"
        item = {"role": role, "content": msg.text}
        calls = msg.function_calls
        if calls:
            item["tool_calls"] = [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {
                        "name": c.name,
                        "arguments": json.dumps(c.args) if stringify_args else c.args,
                    },
                }
                for c in calls
            ]
        out.append(item)
    return out


def _parse_arguments(raw: Any) -> JsonDict:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning(f"Tool call arguments are not valid JSON: {raw[:200]}")
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


class OpenAIAdapter(ProviderAdapter):
    kind = ProviderKind.OPENAI
    default_base_url = OPENAI_BASE_URL

    def endpoint(self, request: NormalizedChatRequest, api_key: Optional[str]) -> str:
        return f"{self.base_url}/chat/completions"

    def headers(self, api_key: Optional[str]) -> Dict[str, str]:
        headers = super().headers(api_key)
        headers["Authorization"] = f"Bearer {api_key or ''}"
        return headers

    def build_body(self, request: NormalizedChatRequest) -> JsonDict:
        body: JsonDict = {
            "model": request.model,
            "stream": False,
            "messages": _openai_messages(request, stringify_args=True),
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
            "top_p": request.top_p if request.top_p is not None else DEFAULT_TOP_P,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if request.tools:
            body["tools"] = _openai_tools(request.tools)
        return body

    def parse_response(self, text: str) -> NormalizedChatResponse:
        payload = _expect_object(_load_json(text), text, self.kind.value)
        choices = payload.get("choices") or []
        if not choices:
            raise ProviderError("Response contained no choices", body=text[:500], provider=self.kind.value)
        choice = choices[0]
        message = choice.get("message") or {}
        calls = []
        for tc in message.get("tool_calls") or []:
            fn = tc.get("function") or {}
            kwargs: JsonDict = {"name": fn.get("name", ""), "args": _parse_arguments(fn.get("arguments"))}
            if tc.get("id"):
                kwargs["id"] = tc["id"]
            calls.append(FunctionCall(**kwargs))
        content = message.get("content") or ""
        usage = payload.get("usage") or {}
        return NormalizedChatResponse(
            text=content,
            tool_calls=calls,
            finish_reason=normalize_finish_reason(choice.get("finish_reason")),
            tokens_used=usage.get("total_tokens") or estimate_tokens(content),
        )


class AnthropicAdapter(ProviderAdapter):
    kind = ProviderKind.ANTHROPIC
    default_base_url = ANTHROPIC_BASE_URL

    def endpoint(self, request: NormalizedChatRequest, api_key: Optional[str]) -> str:
        return f"{self.base_url}/messages"

    def headers(self, api_key: Optional[str]) -> Dict[str, str]:
        headers = super().headers(api_key)
        headers["x-api-key"] = api_key or ""
        headers["anthropic-version"] = ANTHROPIC_VERSION
        return headers

    @staticmethod
    def _blocks(msg: Content) -> List[JsonDict]:
        blocks: List[JsonDict] = []
        for part in msg.parts:
            if part.function_call is not None:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": part.function_call.id,
                        "name": part.function_call.name,
                        "input": part.function_call.args,
                    }
                )
            elif part.function_response is not None:
                blocks.append(
                    {
                        "type": "tool_result",
                        "tool_use_id": part.function_response.id or part.function_response.name,
                        "content": json.dumps(part.function_response.response),
                    }
                )
            elif part.text:
                blocks.append({"type": "text", "text": part.text})
        return blocks

    def build_body(self, request: NormalizedChatRequest) -> JsonDict:
        messages = []
        for msg in _conversation(request):
            role = "assistant" if msg.role in ("assistant", "model") else "user"
            blocks = self._blocks(msg)
            if blocks:
                messages.append({"role": role, "content": blocks})
        body: JsonDict = {
            "model": request.model,
            "max_tokens": request.max_tokens or (ANTHROPIC_MAX_TOKENS if request.tools else DEFAULT_MAX_TOKENS),
            "messages": messages,
        }
        system = _system_text(request)
        if system:
            body["system"] = system
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.top_k is not None:
            body["top_k"] = request.top_k
        if request.tools:
            body["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters} for t in request.tools
            ]
        return body

    def parse_response(self, text: str) -> NormalizedChatResponse:
        payload = _expect_object(_load_json(text), text, self.kind.value)
        texts: List[str] = []
        calls: List[FunctionCall] = []
        for block in payload.get("content") or []:
            kind = block.get("type")
            if kind == "text":
                texts.append(block.get("text", ""))
            elif kind == "tool_use":
                kwargs: JsonDict = {"name": block.get("name", ""), "args": block.get("input") or {}}
                if block.get("id"):
                    kwargs["id"] = block["id"]
                calls.append(FunctionCall(**kwargs))
        usage = payload.get("usage") or {}
        joined = "".join(texts)
        tokens = (usage.get("input_tokens") or 0) + (usage.get("output_tokens") or 0)
        return NormalizedChatResponse(
            text=joined,
            tool_calls=calls,
            finish_reason=normalize_finish_reason(payload.get("stop_reason")),
            tokens_used=tokens or estimate_tokens(joined),
        )


class OllamaAdapter(ProviderAdapter):
    kind = ProviderKind.OLLAMA
    default_base_url = OLLAMA_BASE_URL

    def endpoint(self, request: NormalizedChatRequest, api_key: Optional[str]) -> str:
        return f"{self.base_url}/api/chat"

    @property
    def requires_api_key(self) -> bool:
        return False

    def build_body(self, request: NormalizedChatRequest) -> JsonDict:
        body: JsonDict = {
            "model": request.model,
            "stream": False,
            "messages": _openai_messages(request, stringify_args=False),
        }
        options: JsonDict = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.top_p is not None:
            options["top_p"] = request.top_p
        if request.top_k is not None:
            options["top_k"] = request.top_k
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        if options:
            body["options"] = options
        if request.tools:
            body["tools"] = _openai_tools(request.tools)
        return body

    def parse_response(self, text: str) -> NormalizedChatResponse:
        stripped = text.strip()
        if "\n" in stripped and not stripped.startswith("{\n"):
            # newline-delimited chunks when the daemon streams anyway
            chunks = [_load_json(line) for line in stripped.splitlines() if line.strip()]
        else:
            chunks = [_load_json(stripped)]
        chunks = [_expect_object(chunk, stripped, self.kind.value) for chunk in chunks]
        texts: List[str] = []
        calls: List[FunctionCall] = []
        finish: Optional[str] = None
        tokens = 0
        for chunk in chunks:
            if chunk.get("error"):
                raise ProviderError(str(chunk["error"]), body=stripped[:500], provider=self.kind.value)
            message = chunk.get("message") or {}
            texts.append(message.get("content") or "")
            for tc in message.get("tool_calls") or []:
                fn = tc.get("function") or {}
                calls.append(FunctionCall(name=fn.get("name", ""), args=_parse_arguments(fn.get("arguments"))))
            if chunk.get("done"):
                finish = normalize_finish_reason(chunk.get("done_reason")) or "STOP"
            tokens += (chunk.get("prompt_eval_count") or 0) + (chunk.get("eval_count") or 0)
        joined = "".join(texts)
        return NormalizedChatResponse(
            text=joined,
            tool_calls=calls,
            finish_reason=finish,
            tokens_used=tokens or estimate_tokens(joined),
        )


_ADAPTERS = {
    ProviderKind.GEMINI: GeminiAdapter,
    ProviderKind.OPENAI: OpenAIAdapter,
    ProviderKind.ANTHROPIC: AnthropicAdapter,
    ProviderKind.OLLAMA: OllamaAdapter,
}


def get_adapter(kind: ProviderKind, base_url: Optional[str] = None) -> ProviderAdapter:
    return _ADAPTERS[kind](base_url)
