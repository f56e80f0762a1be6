from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from . import template
from .conditions import ConditionEvaluator, SimpleConditionEvaluator
from .constants import CHAIN_CONTENT_VAR, LATEST_RESULT_VAR, MAX_LOOP_ITERATIONS
from .errors import PpeError
from .script.models import ControlFlowBlock, ControlFlowKind, Instruction
from .script.parser import parse_instruction
from .values import Value, Variables, lookup, stringify

logger = logging.getLogger(__name__)

# (script name, variables) -> final result text
ScriptRunner = Callable[[str, Variables], str]


def _strip_quotes(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        return text[1:-1]
    return text


class InstructionRunner:
    """
    Executes ``$instructions`` and control-flow blocks against a variable map.

    Built-ins:
      - ``$echo: text`` renders text (``$echo: ?=path`` reads a variable) and emits it
      - ``$set: key=value`` / ``$set: key: value`` / ``$set(key=value)`` assigns variables
      - ``$print`` emits ``LatestResult``
      - ``$call(script=name, ...)`` runs a sub-script into ``LatestResult``

    Emitted text is appended to ``output`` and stored as ``LatestResult``.
    """

    def __init__(
        self,
        *,
        evaluator: Optional[ConditionEvaluator] = None,
        run_script: Optional[ScriptRunner] = None,
    ):
        self.evaluator = evaluator or SimpleConditionEvaluator()
        self._run_script = run_script

    def run_all(self, instructions: List[Instruction], variables: Variables, output: List[str]) -> None:
        for instruction in instructions:
            self.run(instruction, variables, output)

    def run(self, instruction: Instruction, variables: Variables, output: List[str]) -> None:
        if instruction.block is not None:
            self.run_block(instruction.block, variables, output)
            return
        handler = getattr(self, f"_do_{instruction.name.lower()}", None)
        if handler is None:
            logger.warning(f"Unknown instruction ${instruction.name}; skipping")
            return
        handler(instruction, variables, output)

    def _emit(self, text: str, variables: Variables, output: List[str]) -> None:
        output.append(text)
        variables[LATEST_RESULT_VAR] = text

    def _do_echo(self, instruction: Instruction, variables: Variables, output: List[str]) -> None:
        value = stringify(instruction.args.get("value", instruction.raw_content or ""))
        if instruction.args.get("isTemplateRef"):
            rendered = stringify(lookup(variables, value.strip()))
        else:
            rendered = template.render(value, variables)
        self._emit(rendered, variables, output)

    def _do_set(self, instruction: Instruction, variables: Variables, output: List[str]) -> None:
        content = instruction.raw_content or ""
        if content:
            found = [(content.find(s), s) for s in ("=", ":") if s in content]
            sep = min(found)[1] if found else None
            if sep is None:
                logger.warning(f"$set without a key: {content}")
                return
            key, raw_value = content.split(sep, 1)
            variables[_strip_quotes(key)] = template.render(_strip_quotes(raw_value), variables)
            return
        for key, value in instruction.args.items():
            if key in ("value", "isTemplateRef"):
                continue
            variables[key] = template.render(value, variables) if isinstance(value, str) else value

    def _do_print(self, instruction: Instruction, variables: Variables, output: List[str]) -> None:
        output.append(stringify(variables.get(LATEST_RESULT_VAR)))

    def _do_call(self, instruction: Instruction, variables: Variables, output: List[str]) -> None:
        args = dict(instruction.args)
        name = stringify(args.pop("script", None) or args.pop("value", None))
        args.pop("isTemplateRef", None)
        if not name:
            logger.warning("$call without a script name")
            return
        self._call_script(name, {**variables, **args}, variables)

    _do_run = _do_call

    def _call_script(self, name: str, call_vars: Variables, variables: Variables) -> str:
        if self._run_script is None:
            raise PpeError(f"cannot run script {name}: no script runner configured")
        result = self._run_script(name, call_vars)
        variables[LATEST_RESULT_VAR] = result
        return result

    def run_block(self, block: ControlFlowBlock, variables: Variables, output: List[str]) -> None:
        kind = block.kind
        if kind == ControlFlowKind.IF:
            branch = block.then_instructions if self.evaluator.evaluate(block.condition, variables) else block.else_instructions
            self.run_all(branch or [], variables, output)
        elif kind == ControlFlowKind.WHILE:
            self._loop(block, variables, output)
        elif kind == ControlFlowKind.FOR:
            items = self.evaluator.value_of(block.condition, variables)
            if isinstance(items, list):
                for index, item in enumerate(items[:MAX_LOOP_ITERATIONS]):
                    variables["item"] = item
                    variables["index"] = index
                    self.run_all(block.do_instructions or [], variables, output)
            else:
                self._loop(block, variables, output)
        elif kind == ControlFlowKind.MATCH:
            key = stringify(self.evaluator.value_of(block.condition, variables))
            cases: Dict[str, List[Instruction]] = block.cases or {}
            chosen = cases.get(key)
            if chosen is None:
                chosen = cases.get("_") or cases.get("default")
            self.run_all(chosen or [], variables, output)
        elif kind == ControlFlowKind.PIPE:
            for item in block.pipe_chain or []:
                if item.startswith("$"):
                    self.run(parse_instruction(item), variables, output)
                else:
                    content: Value = variables.get(LATEST_RESULT_VAR, variables.get(CHAIN_CONTENT_VAR, ""))
                    self._call_script(item, {**variables, CHAIN_CONTENT_VAR: content}, variables)

    def _loop(self, block: ControlFlowBlock, variables: Variables, output: List[str]) -> None:
        iterations = 0
        while iterations < MAX_LOOP_ITERATIONS and self.evaluator.evaluate(block.condition, variables):
            self.run_all(block.do_instructions or [], variables, output)
            iterations += 1
        if iterations >= MAX_LOOP_ITERATIONS:
            logger.warning(f"${block.kind.value} {block.condition!r} stopped after {MAX_LOOP_ITERATIONS} iterations")
