"""Placeholder resolution for script messages.

Resolution order for a message:

1. render ``{{templates}}`` when the message is immediate-format (``#`` prefix)
2. ``[[@script(params)]]`` sub-script replacements
3. ``[[@$instruction(params)]]`` instruction replacements
4. ``/pattern/opts:VAR[:group]`` regex replacements
5. render ``{{templates}}`` for ordinary messages

A failing placeholder never aborts the message: it is replaced by an error
marker and reported as a diagnostic.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Protocol

from . import template
from .errors import ExecutionCancelledError, ScriptNotFoundError
from .script.models import InstructionReplacement, Message, RegexReplacement, ScriptReplacement
from .values import Value, Variables, lookup, stringify

logger = logging.getLogger(__name__)


class ReplacementExecutor(Protocol):
    """What the processor needs from the engine to expand nested placeholders."""

    def run_script(self, name: str, variables: Variables, source_path: Optional[str]) -> str:
        ...

    def run_instruction(self, name: str, params: Dict[str, Value], variables: Variables) -> str:
        ...


@dataclass(frozen=True)
class ReplacementResult:
    placeholder: str
    value: str
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class ProcessedMessage:
    content: str
    results: List[ReplacementResult] = field(default_factory=list)

    @property
    def diagnostics(self) -> List[ReplacementResult]:
        return [r for r in self.results if not r.ok]


def resolve_script(
    replacement: ScriptReplacement,
    variables: Mapping[str, Value],
    executor: ReplacementExecutor,
    source_path: Optional[str],
) -> ReplacementResult:
    merged: Variables = {**variables, **replacement.params}
    try:
        value = executor.run_script(replacement.script_name, merged, source_path)
    except ExecutionCancelledError:
        raise
    except ScriptNotFoundError as exc:
        return ReplacementResult(replacement.placeholder, f"Script not found: {exc.name}", error=str(exc))
    except Exception as exc:
        logger.warning(f"Script replacement {replacement.script_name} failed: {exc}")
        return ReplacementResult(replacement.placeholder, f"Error: {exc}", error=str(exc))
    return ReplacementResult(replacement.placeholder, value)


def resolve_instruction(
    replacement: InstructionReplacement,
    variables: Mapping[str, Value],
    executor: ReplacementExecutor,
) -> ReplacementResult:
    try:
        value = executor.run_instruction(replacement.instruction_name, dict(replacement.params), dict(variables))
    except ExecutionCancelledError:
        raise
    except Exception as exc:
        logger.warning(f"Instruction replacement ${replacement.instruction_name} failed: {exc}")
        return ReplacementResult(replacement.placeholder, f"Error: {exc}", error=str(exc))
    return ReplacementResult(replacement.placeholder, value)


def _regex_flags(options: str) -> int:
    flags = 0
    if "i" in options:
        flags |= re.IGNORECASE
    if "m" in options:
        flags |= re.MULTILINE
    if "s" in options:
        flags |= re.DOTALL
    return flags


def resolve_regex(replacement: RegexReplacement, variables: Mapping[str, Value]) -> ReplacementResult:
    """Apply a regex to a variable.

    When nothing matches, the variable's value is returned unchanged; scripts
    rely on this to pass text through when an optional pattern is absent.
    """
    value = stringify(lookup(variables, replacement.variable))
    if not value:
        return ReplacementResult(replacement.placeholder, value)
    try:
        compiled = re.compile(replacement.pattern, _regex_flags(replacement.options))
    except re.error as exc:
        return ReplacementResult(replacement.placeholder, "", error=f"invalid pattern /{replacement.pattern}/: {exc}")

    m = compiled.search(value)
    if m is None:
        return ReplacementResult(replacement.placeholder, value)

    if replacement.group_name is not None:
        if replacement.group_name in compiled.groupindex:
            return ReplacementResult(replacement.placeholder, m.group(replacement.group_name) or "")
        return ReplacementResult(replacement.placeholder, "")
    if replacement.group_index is not None:
        if replacement.group_index <= compiled.groups:
            return ReplacementResult(replacement.placeholder, m.group(replacement.group_index) or "")
        return ReplacementResult(replacement.placeholder, "")
    if compiled.groups >= 1 and m.group(1) is not None:
        return ReplacementResult(replacement.placeholder, m.group(1))
    return ReplacementResult(replacement.placeholder, m.group(0))


class MessageProcessor:
    def resolve(
        self,
        message: Message,
        variables: Mapping[str, Value],
        executor: ReplacementExecutor,
        source_path: Optional[str] = None,
    ) -> ProcessedMessage:
        content = message.content
        results: List[ReplacementResult] = []

        if message.immediate_format:
            content = template.render(content, variables)

        def apply(result: ReplacementResult) -> None:
            nonlocal content
            results.append(result)
            content = content.replace(result.placeholder, result.value)

        for repl in message.script_replacements:
            apply(resolve_script(repl, variables, executor, source_path))
        for repl in message.instruction_replacements:
            apply(resolve_instruction(repl, variables, executor))
        for repl in message.regex_replacements:
            apply(resolve_regex(repl, variables))

        if not message.immediate_format:
            content = template.render(content, variables)

        return ProcessedMessage(content=content, results=results)

    def process(
        self,
        message: Message,
        variables: Mapping[str, Value],
        executor: ReplacementExecutor,
        source_path: Optional[str] = None,
    ) -> str:
        return self.resolve(message, variables, executor, source_path).content
