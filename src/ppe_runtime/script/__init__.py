from .loader import ScriptLoader
from .models import (
    AiPlaceholder,
    ConstrainedOptions,
    ControlFlowBlock,
    ControlFlowKind,
    Instruction,
    InstructionReplacement,
    Message,
    RegexReplacement,
    Script,
    ScriptReplacement,
    Turn,
)
from .parser import create_message, parse_file, parse_instruction, parse_params, parse_script, parse_turn

__all__ = [
    "AiPlaceholder",
    "ConstrainedOptions",
    "ControlFlowBlock",
    "ControlFlowKind",
    "Instruction",
    "InstructionReplacement",
    "Message",
    "RegexReplacement",
    "Script",
    "ScriptLoader",
    "ScriptReplacement",
    "Turn",
    "create_message",
    "parse_file",
    "parse_instruction",
    "parse_params",
    "parse_script",
    "parse_turn",
]
