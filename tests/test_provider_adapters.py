from __future__ import annotations

import json

import pytest

from ppe_runtime.errors import ProviderError
from ppe_runtime.providers import (
    Content,
    FunctionCall,
    FunctionResponse,
    NormalizedChatRequest,
    Part,
    ProviderKind,
    ToolDeclaration,
    get_adapter,
)

WEATHER = ToolDeclaration(
    name="weather",
    description="Current weather",
    parameters={"type": "object", "properties": {"city": {"type": "string"}}},
)


def _request(**overrides) -> NormalizedChatRequest:
    call = FunctionCall(name="weather", args={"city": "Oslo"}, id="call_1")
    base = dict(
        model="m",
        messages=[
            Content.of_text("user", "Weather in Oslo?"),
            Content(role="assistant", parts=[Part(function_call=call)]),
            Content(
                role="tool",
                parts=[Part(function_response=FunctionResponse(name="weather", response={"temp": 3}, id="call_1"))],
            ),
        ],
        tools=[WEATHER],
        system_instruction="Be brief.",
        temperature=0.2,
    )
    base.update(overrides)
    return NormalizedChatRequest(**base)


def test_provider_kind_aliases() -> None:
    assert ProviderKind.parse("Claude") == ProviderKind.ANTHROPIC
    assert ProviderKind.parse("google") == ProviderKind.GEMINI
    with pytest.raises(ValueError):
        ProviderKind.parse("nope")


def test_gemini_request_shape() -> None:
    adapter = get_adapter(ProviderKind.GEMINI)
    request = _request(model="gemini-1.5-flash")
    assert adapter.endpoint(request, "k1").endswith("/models/gemini-1.5-flash:generateContent?key=k1")
    body = adapter.build_body(request)
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["contents"][1]["parts"][0] == {"functionCall": {"name": "weather", "args": {"city": "Oslo"}}}
    assert body["contents"][2]["parts"][0]["functionResponse"]["response"] == {"temp": 3}
    assert body["tools"][0]["functionDeclarations"][0]["name"] == "weather"
    assert body["systemInstruction"] == {"parts": [{"text": "Be brief."}]}
    assert body["generationConfig"] == {"temperature": 0.2}


def test_gemini_parses_event_stream_and_skips_thoughts() -> None:
    chunks = [
        {"candidates": [{"content": {"parts": [{"text": "thinking", "thought": True}]}}]},
        {"candidates": [{"content": {"parts": [{"text": "Hel"}]}}]},
        {
            "candidates": [{"content": {"parts": [{"text": "lo"}]}, "finishReason": "STOP"}],
            "usageMetadata": {"totalTokenCount": 12},
        },
    ]
    body = "\n\n".join(f"data: {json.dumps(c)}" for c in chunks)
    response = get_adapter(ProviderKind.GEMINI).parse_response(body)
    assert response.text == "Hello"
    assert response.finish_reason == "STOP"
    assert response.tokens_used == 12


def test_gemini_parses_function_calls_and_errors() -> None:
    adapter = get_adapter(ProviderKind.GEMINI)
    payload = {"candidates": [{"content": {"parts": [{"functionCall": {"name": "weather", "args": {"city": "Rome"}}}]}}]}
    response = adapter.parse_response(json.dumps(payload))
    assert response.tool_calls[0].name == "weather"
    assert response.tool_calls[0].args == {"city": "Rome"}

    with pytest.raises(ProviderError) as excinfo:
        adapter.parse_response(json.dumps({"error": {"code": 400, "message": "bad"}}))
    assert excinfo.value.status_code == 400


def test_openai_request_and_response() -> None:
    adapter = get_adapter(ProviderKind.OPENAI)
    request = _request(model="gpt-4o-mini")
    assert adapter.headers("sk-1")["Authorization"] == "Bearer sk-1"
    body = adapter.build_body(request)
    assert body["messages"][0] == {"role": "system", "content": "Be brief."}
    assert body["messages"][2]["tool_calls"][0]["function"]["arguments"] == '{"city": "Oslo"}'
    assert body["messages"][3] == {"role": "tool", "content": '{"temp": 3}', "tool_call_id": "call_1"}
    assert body["temperature"] == 0.2
    assert body["top_p"] == 1.0
    assert body["max_tokens"] == 2048
    assert body["tools"][0]["function"]["name"] == "weather"

    reply = {
        "choices": [
            {
                "message": {
                    "content": None,
                    "tool_calls": [{"id": "c9", "function": {"name": "weather", "arguments": '{"city": "Paris"}'}}],
                },
                "finish_reason": "tool_calls",
            }
        ],
        "usage": {"total_tokens": 40},
    }
    response = adapter.parse_response(json.dumps(reply))
    assert response.text == ""
    assert response.tool_calls == [FunctionCall(name="weather", args={"city": "Paris"}, id="c9")]
    assert response.finish_reason == "TOOL_CALLS"
    assert response.tokens_used == 40


def test_openai_response_without_choices_is_an_error() -> None:
    with pytest.raises(ProviderError):
        get_adapter(ProviderKind.OPENAI).parse_response('{"choices": []}')


def test_anthropic_request_and_response() -> None:
    adapter = get_adapter(ProviderKind.ANTHROPIC)
    headers = adapter.headers("ak")
    assert headers["x-api-key"] == "ak"
    assert headers["anthropic-version"] == "2023-06-01"
    body = adapter.build_body(_request(model="claude-3-haiku", temperature=None))
    assert body["system"] == "Be brief."
    assert body["max_tokens"] == 4096
    assert "temperature" not in body
    assert body["messages"][1]["content"][0] == {
        "type": "tool_use",
        "id": "call_1",
        "name": "weather",
        "input": {"city": "Oslo"},
    }
    assert body["messages"][2]["content"][0]["type"] == "tool_result"
    assert body["tools"][0]["input_schema"]["properties"]["city"]["type"] == "string"

    reply = {
        "content": [{"type": "text", "text": "It is "}, {"type": "text", "text": "cold"}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 10, "output_tokens": 5},
    }
    response = adapter.parse_response(json.dumps(reply))
    assert response.text == "It is cold"
    assert response.finish_reason == "STOP"
    assert response.tokens_used == 15


def test_ollama_request_and_streamed_response() -> None:
    adapter = get_adapter(ProviderKind.OLLAMA, "http://gpu-box:11434/")
    request = _request(model="llama3", tools=[], max_tokens=100)
    assert adapter.endpoint(request, None) == "http://gpu-box:11434/api/chat"
    assert adapter.requires_api_key is False
    body = adapter.build_body(request)
    assert body["stream"] is False
    assert body["options"] == {"temperature": 0.2, "num_predict": 100}
    assert body["messages"][2]["tool_calls"][0]["function"]["arguments"] == {"city": "Oslo"}
    assert "tools" not in body

    lines = [
        {"message": {"content": "Hi "}, "done": False},
        {"message": {"content": "there"}, "done": True, "prompt_eval_count": 3, "eval_count": 2},
    ]
    response = adapter.parse_response("\n".join(json.dumps(line) for line in lines))
    assert response.text == "Hi there"
    assert response.finish_reason == "STOP"
    assert response.tokens_used == 5


def test_malformed_body_raises_provider_error() -> None:
    with pytest.raises(ProviderError):
        get_adapter(ProviderKind.ANTHROPIC).parse_response("<html>")


@pytest.mark.parametrize(
    "kind,body",
    [
        (ProviderKind.OPENAI, "[]"),
        (ProviderKind.ANTHROPIC, '"just text"'),
        (ProviderKind.OLLAMA, '[1, 2]\n{"done": true}'),
        (ProviderKind.GEMINI, '{"error": "quota gone"}'),
    ],
)
def test_non_object_payloads_raise_provider_error(kind, body) -> None:
    with pytest.raises(ProviderError) as excinfo:
        get_adapter(kind).parse_response(body)
    assert excinfo.value.provider == kind.value
