from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional


class ProviderKind(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OLLAMA = "ollama"

    @classmethod
    def parse(cls, value: str) -> "ProviderKind":
        aliases = {"google": "gemini", "claude": "anthropic", "local": "ollama"}
        key = value.strip().lower()
        return cls(aliases.get(key, key))


@dataclass(frozen=True)
class FunctionCall:
    name: str
    args: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")


@dataclass(frozen=True)
class FunctionResponse:
    name: str
    response: Dict[str, Any]
    id: Optional[str] = None


@dataclass(frozen=True)
class Part:
    text: Optional[str] = None
    function_call: Optional[FunctionCall] = None
    function_response: Optional[FunctionResponse] = None


@dataclass(frozen=True)
class Content:
    """One chat history entry. Roles: system, user, assistant, tool."""

    role: str
    parts: List[Part]

    @classmethod
    def of_text(cls, role: str, text: str) -> "Content":
        return cls(role=role, parts=[Part(text=text)])

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.text)

    @property
    def function_calls(self) -> List[FunctionCall]:
        return [p.function_call for p in self.parts if p.function_call is not None]

    @property
    def function_responses(self) -> List[FunctionResponse]:
        return [p.function_response for p in self.parts if p.function_response is not None]


@dataclass(frozen=True)
class ToolDeclaration:
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass(frozen=True)
class NormalizedChatRequest:
    model: str
    messages: List[Content]
    tools: List[ToolDeclaration] = field(default_factory=list)
    system_instruction: Optional[str] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    max_tokens: Optional[int] = None

    def without_tools(self) -> "NormalizedChatRequest":
        return replace(self, tools=[])


@dataclass(frozen=True)
class NormalizedChatResponse:
    text: str = ""
    tool_calls: List[FunctionCall] = field(default_factory=list)
    finish_reason: Optional[str] = None
    tokens_used: int = 0

    def as_content(self) -> Content:
        parts: List[Part] = []
        if self.text:
            parts.append(Part(text=self.text))
        parts.extend(Part(function_call=c) for c in self.tool_calls)
        return Content(role="assistant", parts=parts or [Part(text="")])
