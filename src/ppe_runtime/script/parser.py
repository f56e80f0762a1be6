"""Parser for ``.ai.yaml`` prompt scripts.

A script is a YAML front matter segment followed by turns, separated by
lines consisting of ``---`` or ``***``. Each turn is scanned line by line for
role lines (``user: text``), directives (``$instruction`` and ``-> chain``) and
continuation text.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..errors import ScriptParseError
from ..values import Value, coerce_scalar, normalize
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

logger = logging.getLogger(__name__)

_DELIMITER_RE = re.compile(r"^(?:---|\*\*\*)[ \t]*$", re.MULTILINE)
_ROLE_RE = re.compile(r"^(\w+):\s*(.*)$")
_CALL_RE = re.compile(r"^(\w+)(?:\((.*)\))?$")
_PARAM_RE = re.compile(r"""(\w+)=(?:'([^']*)'|"([^"]*)"|([^\s,]+))""")
_AI_PARAM_RE = re.compile(r"""(\w+)=(?:'([^']*)'|"([^"]*)"|([^\s,|]+))""")
_CONTROL_RE = re.compile(r"^\$(if|while|for|match|pipe)\b\s*(.*)$")
_SECTION_RE = re.compile(r"^(then|else|do):\s*(.*)$")

_SCRIPT_REPL_RE = re.compile(r"\[\[@(\w+)(?:\((.*?)\))?\]\]")
_INSTRUCTION_REPL_RE = re.compile(r"\[\[@\$(\w+)(?:\((.*?)\))?\]\]")
_REGEX_REPL_RE = re.compile(r"/([^/]+)/([^:]*):(\w+)(?::(\d+|[a-zA-Z_][a-zA-Z0-9_]*))?")
_AI_PLACEHOLDER_RE = re.compile(r"\[\[(\w+)(?::(.*?))?\]\]")
_CONSTRAINED_RE = re.compile(r"\[\[(\w+):\s*\|([^\]]+)\]\]")

_FRONT_MATTER_KEYS = (
    "parameters",
    "input",
    "output",
    "response_format",
    "type",
    "import",
    "autoRunLLMIfPromptAvailable",
    "prompt",
)


def parse_params(text: str) -> Dict[str, Value]:
    """Parse ``k=v, k2='v 2'`` lists; anything unparseable is ignored."""
    params: Dict[str, Value] = {}
    for m in _PARAM_RE.finditer(text or ""):
        key, single, double, bare = m.groups()
        params[key] = single if single is not None else double if double is not None else bare
    return params


def _parse_ai_params(text: str) -> Dict[str, Value]:
    params: Dict[str, Value] = {}
    for m in _AI_PARAM_RE.finditer(text or ""):
        key, single, double, bare = m.groups()
        if single is not None:
            params[key] = single
        elif double is not None:
            params[key] = double
        else:
            params[key] = coerce_scalar(bare)
    return params


def _strip_quotes(value: str) -> str:
    for q in ('"', "'"):
        if len(value) >= 2 and value.startswith(q) and value.endswith(q):
            return value[1:-1]
    return value


def parse_instruction(text: str) -> Instruction:
    """Parse a single ``$name...`` line into an Instruction."""
    body = text.strip()
    if body.startswith("$"):
        body = body[1:].strip()

    colon = body.find(":")
    paren = body.find("(")
    if colon > 0 and (paren < 0 or colon < paren):
        name = body[:colon].strip()
        raw = body[colon + 1:].strip()
        is_ref = raw.startswith("?=")
        value = raw[2:].strip() if is_ref else _strip_quotes(raw)
        return Instruction(name=name, args={"value": value, "isTemplateRef": is_ref}, raw_content=raw)

    m = _CALL_RE.match(body)
    if m:
        return Instruction(name=m.group(1), args=parse_params(m.group(2) or ""))
    return Instruction(name=body)


def _indent_of(line: str) -> int:
    return len(line) - len(line.lstrip(" \t"))


def _body_instruction(text: str) -> Optional[Instruction]:
    if text.startswith("-"):
        text = text[1:].strip()
    if text.startswith("$"):
        return parse_instruction(text)
    return None


def _parse_control_block(lines: List[str], start: int) -> Tuple[Instruction, int]:
    """Parse a control-flow block starting at ``lines[start]``.

    The body is every following line indented deeper than the header.
    Returns the instruction and the index of the first line after the block.
    """
    header = lines[start]
    m = _CONTROL_RE.match(header.strip())
    if m is None:
        raise ScriptParseError(f"Not a control-flow header: {header.strip()}")
    kind = ControlFlowKind(m.group(1))
    expression = _strip_quotes(m.group(2).strip())
    base_indent = _indent_of(header)

    i = start + 1
    body: List[str] = []
    while i < len(lines):
        line = lines[i]
        if line.strip() and _indent_of(line) <= base_indent:
            break
        body.append(line)
        i += 1

    if kind == ControlFlowKind.PIPE:
        chain = [p.strip() for p in expression.split("->") if p.strip()]
        block = ControlFlowBlock(kind=kind, pipe_chain=chain)
        return Instruction(name=kind.value, raw_content=expression, block=block), i

    if kind == ControlFlowKind.MATCH:
        cases: Dict[str, List[Instruction]] = {}
        current: Optional[str] = None
        for line in body:
            text = line.strip()
            if not text or text.startswith("#"):
                continue
            instr = _body_instruction(text)
            if instr is not None:
                if current is not None:
                    cases[current].append(instr)
                continue
            if ":" in text:
                current = _strip_quotes(text.split(":", 1)[0].strip())
                cases[current] = []
                inline = text.split(":", 1)[1].strip()
                for part in (p.strip() for p in inline.split(";")):
                    instr = _body_instruction(part)
                    if instr is not None:
                        cases[current].append(instr)
        block = ControlFlowBlock(kind=kind, condition=expression, cases=cases)
        return Instruction(name=kind.value, raw_content=expression, block=block), i

    sections: Dict[str, List[Instruction]] = {}
    current_section = "do" if kind in (ControlFlowKind.WHILE, ControlFlowKind.FOR) else "then"
    saw_else = False
    for line in body:
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        sm = _SECTION_RE.match(text)
        if sm:
            current_section = sm.group(1)
            saw_else = saw_else or current_section == "else"
            sections.setdefault(current_section, [])
            instr = _body_instruction(sm.group(2).strip())
            if instr is not None:
                sections[current_section].append(instr)
            continue
        instr = _body_instruction(text)
        if instr is not None:
            sections.setdefault(current_section, []).append(instr)

    if kind == ControlFlowKind.IF:
        block = ControlFlowBlock(
            kind=kind,
            condition=expression,
            then_instructions=sections.get("then", []),
            else_instructions=sections.get("else", []) if saw_else else None,
        )
    else:
        block = ControlFlowBlock(kind=kind, condition=expression, do_instructions=sections.get("do", []))
    return Instruction(name=kind.value, raw_content=expression, block=block), i


def _replacement_params(text: Optional[str]) -> Dict[str, Value]:
    return parse_params(text) if text else {}


def create_message(role: str, content: str) -> Message:
    """Build a Message, extracting placeholders from its content."""
    immediate = content.startswith("#")
    if immediate:
        content = content[1:]

    scripts = [
        ScriptReplacement(script_name=m.group(1), params=_replacement_params(m.group(2)), placeholder=m.group(0))
        for m in _SCRIPT_REPL_RE.finditer(content)
    ]
    instructions = [
        InstructionReplacement(
            instruction_name=m.group(1), params=_replacement_params(m.group(2)), placeholder=m.group(0)
        )
        for m in _INSTRUCTION_REPL_RE.finditer(content)
    ]
    regexes = []
    for m in _REGEX_REPL_RE.finditer(content):
        selector = m.group(4)
        regexes.append(
            RegexReplacement(
                pattern=m.group(1),
                options=m.group(2),
                variable=m.group(3),
                group_index=int(selector) if selector and selector.isdigit() else None,
                group_name=selector if selector and not selector.isdigit() else None,
                placeholder=m.group(0),
            )
        )

    ai: Optional[AiPlaceholder] = None
    am = _AI_PLACEHOLDER_RE.search(content)
    if am:
        ai = AiPlaceholder(var=am.group(1), params=_parse_ai_params(am.group(2) or ""), placeholder=am.group(0))

    constrained: Optional[ConstrainedOptions] = None
    cm = _CONSTRAINED_RE.search(content)
    if cm:
        raw_options = [o.strip() for o in cm.group(2).split("|")]
        count: Optional[int] = None
        is_random = False
        if raw_options:
            # trailing ``:N`` / ``:random`` / ``:type=random`` modifiers ride on the last option
            last, _, modifier = raw_options[-1].rpartition(":")
            modifier = modifier.strip()
            if last and (modifier.isdigit() or modifier in ("random", "type=random")):
                raw_options[-1] = last.strip()
                if modifier.isdigit():
                    count = int(modifier)
                else:
                    is_random = True
        constrained = ConstrainedOptions(
            var=cm.group(1),
            options=[o for o in raw_options if o],
            placeholder=cm.group(0),
            count=count,
            random=is_random,
        )

    return Message(
        role=role,
        content=content,
        immediate_format=immediate,
        ai_placeholder=ai,
        constrained_options=constrained,
        script_replacements=scripts,
        instruction_replacements=instructions,
        regex_replacements=regexes,
    )


def parse_turn(text: str) -> Optional[Turn]:
    """Parse one turn segment; returns None when it holds nothing executable."""
    lines = text.splitlines()
    messages: List[Message] = []
    instructions: List[Instruction] = []
    chain_to: Optional[str] = None
    chain_params: Optional[Dict[str, Value]] = None

    role: Optional[str] = None
    buf: List[str] = []
    multiline = False

    def flush() -> None:
        nonlocal role, buf, multiline
        content = "\n".join(buf).strip()
        if role is not None and content:
            messages.append(create_message(role, content))
        role = None
        buf = []
        multiline = False

    i = 0
    while i < len(lines):
        line = lines[i]
        stripped = line.strip()

        if not stripped or stripped.startswith("#"):
            if multiline and role is not None:
                buf.append("")
            i += 1
            continue

        if _CONTROL_RE.match(stripped):
            flush()
            instr, i = _parse_control_block(lines, i)
            instructions.append(instr)
            continue

        if stripped.startswith("->"):
            flush()
            target = stripped[2:].strip()
            m = _CALL_RE.match(target)
            head = re.match(r"^\w+", target)
            if m:
                chain_to = m.group(1)
                chain_params = parse_params(m.group(2)) if m.group(2) else None
            elif head:
                chain_to = head.group(0)
                chain_params = {}
                logger.warning(f"Unparseable chain parameters ignored: {stripped}")
            else:
                logger.warning(f"Ignoring malformed chain directive: {stripped}")
            i += 1
            continue

        if stripped.startswith("$"):
            flush()
            instructions.append(parse_instruction(stripped))
            i += 1
            continue

        rm = _ROLE_RE.match(stripped)
        if rm and multiline and line[:1] in (" ", "\t"):
            # indented block-scalar text stays content even when it looks like a role line
            rm = None
        if rm:
            flush()
            role = rm.group(1)
            rest = rm.group(2)
            if rest in ("|", "|-"):
                multiline = True
            elif rest:
                buf.append(rest)
        elif role is not None:
            buf.append(stripped)
        else:
            role = "user"
            buf.append(stripped)
        i += 1

    flush()
    turn = Turn(messages=messages, instructions=instructions, chain_to=chain_to, chain_params=chain_params)
    if turn.is_empty():
        return None
    return turn


def _load_front_matter(text: str) -> Dict[str, Any]:
    if not text.strip():
        return {}
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logger.warning(f"Failed to parse front matter: {exc}")
        return {}
    if not isinstance(data, dict):
        return {}
    return data


def _as_map(obj: Any) -> Optional[Dict[str, Value]]:
    if isinstance(obj, dict):
        return normalize(obj, none_as="")  # type: ignore[return-value]
    return None


def parse_script(content: str, source_path: Optional[Union[str, Path]] = None) -> Script:
    """Parse script text into a Script.

    Malformed front matter degrades to an empty mapping; it never aborts the parse.
    """
    segments = _DELIMITER_RE.split(content)
    if len(segments) > 1 and not segments[0].strip():
        # leading delimiter: the block between the first two delimiters is the front matter
        segments = segments[1:]

    fm = _load_front_matter(segments[0])

    raw_input = fm.get("input")
    raw_import = fm.get("import")
    if isinstance(raw_import, str):
        imports: Optional[List[str]] = [raw_import]
    elif isinstance(raw_import, list):
        imports = [str(x) for x in raw_import if x is not None]
    else:
        imports = None
    auto_run = fm.get("autoRunLLMIfPromptAvailable")

    turns: List[Turn] = []
    for segment in segments[1:]:
        if not segment.strip():
            continue
        turn = parse_turn(segment.strip("\n"))
        if turn is not None:
            turns.append(turn)

    return Script(
        parameters=_as_map(fm.get("parameters")) or {},
        input=[str(x) for x in raw_input if x is not None] if isinstance(raw_input, list) else None,
        output=_as_map(fm.get("output")),
        response_format=_as_map(fm.get("response_format")),
        turns=turns,
        metadata={
            str(k): normalize(v, none_as="")
            for k, v in fm.items()
            if k not in _FRONT_MATTER_KEYS
        },
        source_path=str(source_path) if source_path is not None else None,
        type=str(fm["type"]) if fm.get("type") is not None else None,
        imports=imports,
        auto_run_llm_if_prompt_available=auto_run if isinstance(auto_run, bool) else True,
        prompt=_as_map(fm.get("prompt")),
    )


def parse_file(path: Union[str, Path]) -> Script:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ScriptParseError(f"{p} is not valid UTF-8: {exc}") from exc
    return parse_script(text, source_path=p)
