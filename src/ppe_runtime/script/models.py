from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from ..values import Value


@dataclass(frozen=True)
class AiPlaceholder:
    var: str
    params: Dict[str, Value]
    placeholder: str


@dataclass(frozen=True)
class ConstrainedOptions:
    """``[[var: | a | b]]``: the model reply must be one of ``options``."""

    var: str
    options: List[str]
    placeholder: str
    count: Optional[int] = None
    random: bool = False


@dataclass(frozen=True)
class ScriptReplacement:
    script_name: str
    params: Dict[str, Value]
    placeholder: str


@dataclass(frozen=True)
class InstructionReplacement:
    instruction_name: str
    params: Dict[str, Value]
    placeholder: str


@dataclass(frozen=True)
class RegexReplacement:
    pattern: str
    variable: str
    placeholder: str
    options: str = ""
    group_name: Optional[str] = None
    group_index: Optional[int] = None


@dataclass(frozen=True)
class Message:
    role: str
    content: str
    immediate_format: bool = False
    ai_placeholder: Optional[AiPlaceholder] = None
    constrained_options: Optional[ConstrainedOptions] = None
    script_replacements: List[ScriptReplacement] = field(default_factory=list)
    instruction_replacements: List[InstructionReplacement] = field(default_factory=list)
    regex_replacements: List[RegexReplacement] = field(default_factory=list)

    @property
    def has_ai_placeholder(self) -> bool:
        return self.ai_placeholder is not None


class ControlFlowKind(str, Enum):
    IF = "if"
    WHILE = "while"
    FOR = "for"
    MATCH = "match"
    PIPE = "pipe"


@dataclass(frozen=True)
class ControlFlowBlock:
    kind: ControlFlowKind
    condition: str = ""
    then_instructions: Optional[List["Instruction"]] = None
    else_instructions: Optional[List["Instruction"]] = None
    do_instructions: Optional[List["Instruction"]] = None
    cases: Optional[Dict[str, List["Instruction"]]] = None
    pipe_chain: Optional[List[str]] = None

    def __post_init__(self) -> None:
        populated = {
            "then": self.then_instructions is not None,
            "do": self.do_instructions is not None,
            "cases": self.cases is not None,
            "pipe": self.pipe_chain is not None,
        }
        expected = {
            ControlFlowKind.IF: "then",
            ControlFlowKind.WHILE: "do",
            ControlFlowKind.FOR: "do",
            ControlFlowKind.MATCH: "cases",
            ControlFlowKind.PIPE: "pipe",
        }[self.kind]
        extra = [k for k, v in populated.items() if v and k != expected]
        if not populated[expected] or extra or (self.else_instructions is not None and self.kind != ControlFlowKind.IF):
            raise ValueError(f"invalid payload for {self.kind.value} block")


@dataclass(frozen=True)
class Instruction:
    """A ``$name`` directive; control-flow directives carry their parsed ``block``."""

    name: str
    args: Dict[str, Value] = field(default_factory=dict)
    raw_content: Optional[str] = None
    block: Optional[ControlFlowBlock] = None


@dataclass(frozen=True)
class Turn:
    messages: List[Message] = field(default_factory=list)
    instructions: List[Instruction] = field(default_factory=list)
    chain_to: Optional[str] = None
    chain_params: Optional[Dict[str, Value]] = None

    @property
    def control_flow_blocks(self) -> List[ControlFlowBlock]:
        return [i.block for i in self.instructions if i.block is not None]

    def is_empty(self) -> bool:
        return not self.messages and not self.instructions and self.chain_to is None


@dataclass(frozen=True)
class Script:
    parameters: Dict[str, Value] = field(default_factory=dict)
    input: Optional[List[str]] = None
    output: Optional[Dict[str, Value]] = None
    response_format: Optional[Dict[str, Value]] = None
    turns: List[Turn] = field(default_factory=list)
    metadata: Dict[str, Value] = field(default_factory=dict)
    source_path: Optional[str] = None
    type: Optional[str] = None
    imports: Optional[List[str]] = None
    auto_run_llm_if_prompt_available: bool = True
    prompt: Optional[Dict[str, Value]] = None
