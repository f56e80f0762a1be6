"""Turn-by-turn execution of parsed scripts.

An invocation walks the script's turns in order. For each turn the
instructions run first, then each message is resolved by the message
processor and appended to the chat history; a message carrying an AI
placeholder first sends the history to the provider and splices the reply
in. A turn's ``-> chain`` hands the accumulated history and variables to the
next script; chaining is a loop here, not recursion.
"""

from __future__ import annotations

import copy
import json
import logging
import random
import re
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import httpx
from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from . import template
from .classifier import ErrorClassification, ErrorClassifier
from .conditions import ConditionEvaluator
from .constants import (
    CHAIN_CONTENT_VAR,
    LATEST_RESULT_VAR,
    MAX_CHAIN_HOPS,
    MAX_TOOL_ROUNDS,
    RESPONSE_VAR,
)
from .errors import (
    ExecutionCancelledError,
    PpeError,
    ProviderError,
    ToolExecutionError,
)
from .instructions import InstructionRunner
from .observability import Observer, notify
from .permissions import PermissionDecision, PermissionPolicy
from .processor import MessageProcessor
from .providers.client import ProviderClient
from .providers.models import (
    Content,
    FunctionCall,
    FunctionResponse,
    NormalizedChatRequest,
    NormalizedChatResponse,
    Part,
)
from .script.loader import ScriptLoader
from .script.models import ConstrainedOptions, Instruction, Message, Script, Turn
from .tools import ToolRegistry
from .values import Value, Variables, coerce_scalar, normalize, stringify

logger = logging.getLogger(__name__)

_PLACEHOLDER_TOKEN_RE = re.compile(r"\[\[.*?\]\]")
MAX_NESTING = 16


class ExecutionState(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    CHAINING = "CHAINING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


@dataclass
class ExecutionContext:
    """Mutable state of one script invocation (or one chained hop)."""

    script: Script
    variables: Variables
    chat_history: List[Content]
    cancel: Optional[threading.Event] = None
    depth: int = 0
    output: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)

    def check_cancelled(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise ExecutionCancelledError("execution cancelled")


@dataclass
class ExecutionResult:
    success: bool
    final_result: str
    variables: Variables
    chat_history: List[Content]
    state: ExecutionState
    error: Optional[str] = None
    classification: Optional[ErrorClassification] = None
    output: List[str] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)

    @property
    def recovery_suggestion(self) -> Optional[str]:
        return self.classification.recovery_suggestion if self.classification else None


def final_result_of(variables: Mapping[str, Value]) -> str:
    for key in (RESPONSE_VAR, LATEST_RESULT_VAR):
        if variables.get(key) is not None:
            return stringify(variables[key])
    return ""


class _Replacements:
    """Bridges message placeholders back into the engine for one invocation."""

    def __init__(self, engine: "ExecutionEngine", ctx: ExecutionContext):
        self._engine = engine
        self._ctx = ctx

    def run_script(self, name: str, variables: Variables, source_path: Optional[str]) -> str:
        return self._engine._run_nested(name, variables, source_path, self._ctx)

    def run_instruction(self, name: str, params: Dict[str, Value], variables: Variables) -> str:
        output: List[str] = []
        runner = self._engine._instruction_runner(self._ctx)
        runner.run(Instruction(name=name, args=params), variables, output)
        if output:
            return "".join(output)
        return stringify(variables.get(LATEST_RESULT_VAR))


class ExecutionEngine:
    """
    Runs scripts against a provider client.

    Every collaborator is injected; one engine can serve concurrent
    invocations because per-invocation state lives in ``ExecutionContext``.
    """

    def __init__(
        self,
        client: Optional[ProviderClient] = None,
        *,
        model: Optional[str] = None,
        loader: Optional[ScriptLoader] = None,
        tools: Optional[ToolRegistry] = None,
        permissions: Optional[PermissionPolicy] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        classifier: Optional[ErrorClassifier] = None,
        observer: Optional[Observer] = None,
        processor: Optional[MessageProcessor] = None,
        rng: Optional[random.Random] = None,
    ):
        self.client = client
        self.model = model
        self.loader = loader or ScriptLoader()
        self.tools = tools or ToolRegistry()
        self.permissions = permissions
        self.evaluator = evaluator
        self.classifier = classifier or ErrorClassifier()
        self.observer = observer
        self.processor = processor or MessageProcessor()
        self.rng = rng or random.Random()

    def execute_file(
        self,
        path: Union[str, Path],
        params: Optional[Mapping[str, Any]] = None,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> ExecutionResult:
        try:
            script = self.loader.load_path(path)
        except PpeError as exc:
            return self._failed(exc, {}, [], ExecutionState.FAILED)
        return self.execute(script, params, cancel=cancel)

    def execute(
        self,
        script: Script,
        params: Optional[Mapping[str, Any]] = None,
        *,
        history: Optional[List[Content]] = None,
        cancel: Optional[threading.Event] = None,
        _depth: int = 0,
    ) -> ExecutionResult:
        variables: Variables = {**script.parameters, **(normalize(dict(params or {})) or {})}
        ctx = ExecutionContext(
            script=script,
            variables=variables,
            chat_history=list(history or []),
            cancel=cancel,
            depth=_depth,
        )
        state = ExecutionState.PENDING
        hops = 0
        started = time.time()
        logger.debug(f"Executing {script.source_path or '<inline>'} ({len(script.turns)} turns)")

        try:
            while True:
                state = ExecutionState.RUNNING
                hop = self._run_turns(ctx)
                if hop is None:
                    break
                state = ExecutionState.CHAINING
                hops += 1
                if hops > MAX_CHAIN_HOPS:
                    raise PpeError(f"Chain exceeded {MAX_CHAIN_HOPS} hops")
                ctx = hop
            state = ExecutionState.COMPLETED
        except ExecutionCancelledError as exc:
            logger.info(f"Execution cancelled: {exc}")
            return ExecutionResult(
                success=False,
                final_result=final_result_of(ctx.variables),
                variables=ctx.variables,
                chat_history=ctx.chat_history,
                state=ExecutionState.CANCELLED,
                error=str(exc),
                output=ctx.output,
                diagnostics=ctx.diagnostics,
            )
        except (PpeError, httpx.HTTPError) as exc:
            result = self._failed(exc, ctx.variables, ctx.chat_history, state)
            result.output = ctx.output
            result.diagnostics = ctx.diagnostics
            return result

        final = final_result_of(ctx.variables)
        self._validate_output(ctx.script, final, ctx.diagnostics)
        duration = (time.time() - started) * 1000
        logger.info(f"Execution completed in {duration:.2f}ms after {hops} chain hops")
        return ExecutionResult(
            success=True,
            final_result=final,
            variables=ctx.variables,
            chat_history=ctx.chat_history,
            state=state,
            output=ctx.output,
            diagnostics=ctx.diagnostics,
        )

    def _failed(
        self,
        exc: BaseException,
        variables: Variables,
        history: List[Content],
        state: ExecutionState,
    ) -> ExecutionResult:
        classification = self.classifier.classify(exc, {"state": state.value})
        logger.error(f"Execution failed ({classification.category.value}) in state {state.value}: {exc}")
        return ExecutionResult(
            success=False,
            final_result="",
            variables=variables,
            chat_history=history,
            state=ExecutionState.FAILED,
            error=f"{classification.category.value}: {classification.recovery_suggestion}",
            classification=classification,
        )

    def _run_turns(self, ctx: ExecutionContext) -> Optional[ExecutionContext]:
        """Run every turn of ``ctx.script``; returns the next hop's context when a turn chains."""
        for index, turn in enumerate(ctx.script.turns):
            ctx.check_cancelled()
            logger.debug(f"Turn {index + 1}/{len(ctx.script.turns)}")
            working = copy.deepcopy(ctx.variables)
            turn_history: List[Content] = []
            output: List[str] = []
            diagnostics: List[str] = []

            self._instruction_runner(ctx).run_all(turn.instructions, working, output)
            self._run_messages(turn, ctx, working, turn_history, diagnostics)

            # commit the turn
            ctx.variables = working
            ctx.chat_history.extend(turn_history)
            ctx.output.extend(output)
            ctx.diagnostics.extend(diagnostics)

            if turn.chain_to:
                return self._chain(turn, ctx)
        return None

    def _run_messages(
        self,
        turn: Turn,
        ctx: ExecutionContext,
        variables: Variables,
        turn_history: List[Content],
        diagnostics: List[str],
    ) -> None:
        bridge = _Replacements(self, ctx)
        had_placeholder = False
        for message in turn.messages:
            processed = self.processor.resolve(message, variables, bridge, ctx.script.source_path)
            diagnostics.extend(
                f"{r.placeholder}: {r.error}" for r in processed.diagnostics
            )
            content = processed.content
            if message.ai_placeholder is not None:
                had_placeholder = True
                content = self._resolve_placeholder(
                    message, content, ctx.chat_history + turn_history, variables, turn_history, ctx
                )
            turn_history.append(Content.of_text(message.role, content))

        if (
            not had_placeholder
            and ctx.script.auto_run_llm_if_prompt_available
            and turn.messages
            and turn.messages[-1].role == "user"
            and self.client is not None
        ):
            request = self._request(ctx.chat_history + turn_history, {})
            response = self._complete(request, ctx, turn_history)
            variables[RESPONSE_VAR] = response.text
            variables[LATEST_RESULT_VAR] = response.text
            turn_history.append(Content.of_text("assistant", response.text))

    def _chain(self, turn: Turn, ctx: ExecutionContext) -> ExecutionContext:
        target = self.loader.load(turn.chain_to, ctx.script.source_path)
        logger.info(f"Chaining to {turn.chain_to}")
        params = {
            k: template.render(v, ctx.variables) if isinstance(v, str) else v
            for k, v in (turn.chain_params or {}).items()
        }
        latest = ctx.variables.get(LATEST_RESULT_VAR)
        content = latest if latest not in (None, "") else ctx.variables.get(RESPONSE_VAR, "")
        incoming: Variables = {**ctx.variables, CHAIN_CONTENT_VAR: stringify(content), **params}
        return ExecutionContext(
            script=target,
            variables={**target.parameters, **incoming},
            chat_history=ctx.chat_history,
            cancel=ctx.cancel,
            depth=ctx.depth,
            output=ctx.output,
            diagnostics=ctx.diagnostics,
        )

    def _instruction_runner(self, ctx: ExecutionContext) -> InstructionRunner:
        def run_script(name: str, variables: Variables) -> str:
            return self._run_nested(name, variables, ctx.script.source_path, ctx)

        return InstructionRunner(evaluator=self.evaluator, run_script=run_script)

    def _run_nested(self, name: str, variables: Variables, source_path: Optional[str], ctx: ExecutionContext) -> str:
        if ctx.depth + 1 > MAX_NESTING:
            raise PpeError(f"Script nesting deeper than {MAX_NESTING} while running {name}")
        ctx.check_cancelled()
        script = self.loader.load(name, source_path)
        result = self.execute(script, variables, cancel=ctx.cancel, _depth=ctx.depth + 1)
        if result.state == ExecutionState.CANCELLED:
            raise ExecutionCancelledError(f"cancelled inside {name}")
        if not result.success:
            raise PpeError(result.error or f"{name} failed")
        return result.final_result

    def _request(
        self,
        history: List[Content],
        params: Mapping[str, Value],
        prompt: Optional[Content] = None,
    ) -> NormalizedChatRequest:
        system = "\n\n".join(c.text for c in history if c.role == "system" and c.text) or None
        messages = [
            c for c in history
            if c.role != "system" and (c.text or c.function_calls or c.function_responses)
        ]
        if prompt is not None:
            messages.append(prompt)

        def number(key: str, cast):
            raw = params.get(key)
            if raw is None or raw == "":
                return None
            value = coerce_scalar(raw) if isinstance(raw, str) else raw
            try:
                return cast(value)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric {key}={raw!r}")
                return None

        return NormalizedChatRequest(
            model=stringify(params.get("model")) or self.model or "",
            messages=messages,
            tools=self.tools.declarations(),
            system_instruction=system,
            temperature=number("temperature", float),
            top_p=number("top_p", float),
            top_k=number("top_k", int),
            max_tokens=number("max_tokens", int),
        )

    def _resolve_placeholder(
        self,
        message: Message,
        content: str,
        history: List[Content],
        variables: Variables,
        turn_history: List[Content],
        ctx: ExecutionContext,
    ) -> str:
        placeholder = message.ai_placeholder
        if placeholder is None:
            return content
        if self.client is None:
            raise ProviderError("No provider client configured for AI placeholder", provider="none")

        # text around an assistant placeholder is a reply prefix, not a prompt
        is_reply = message.role in ("assistant", "model")
        prompt_text = "" if is_reply else _PLACEHOLDER_TOKEN_RE.sub("", content).strip()
        constrained = message.constrained_options
        if constrained is not None and constrained.options:
            hint = f"You must choose from these options only: {' | '.join(constrained.options)}"
            prompt_text = f"{prompt_text}\n\n{hint}".strip()
        prompt = None
        if prompt_text:
            prompt = Content.of_text("user" if is_reply else message.role, prompt_text)

        request = self._request(history, placeholder.params, prompt)
        response = self._complete(request, ctx, turn_history)
        text = response.text
        if constrained is not None and constrained.options:
            text = self._constrain(text, constrained)

        variables[placeholder.var] = text
        variables[RESPONSE_VAR] = text
        return content.replace(placeholder.placeholder, text, 1)

    def _constrain(self, text: str, constrained: ConstrainedOptions) -> str:
        options = constrained.options
        if constrained.random:
            k = min(constrained.count or 1, len(options))
            return ", ".join(self.rng.sample(options, k))
        reply = text.strip().lower()
        for option in options:
            if reply == option.lower():
                return option
        mentioned = [o for o in options if o.lower() in reply]
        if mentioned:
            return ", ".join(mentioned[: constrained.count or 1])
        if len(options) == 1:
            return options[0]
        logger.warning(f"Model reply matched none of {options}; keeping raw reply")
        return text

    def _complete(
        self,
        request: NormalizedChatRequest,
        ctx: ExecutionContext,
        turn_history: List[Content],
    ) -> NormalizedChatResponse:
        """Call the model and service tool calls until it answers in text."""
        if self.client is None:
            raise ProviderError("No provider client configured", provider="none")
        ctx.check_cancelled()
        response = self.client.chat(request, cancel=ctx.cancel)
        rounds = 0
        while response.tool_calls and rounds < MAX_TOOL_ROUNDS:
            rounds += 1
            call_content = response.as_content()
            results = [Part(function_response=self._run_tool(call)) for call in response.tool_calls]
            tool_content = Content(role="tool", parts=results)
            turn_history.extend([call_content, tool_content])
            request = replace(request, messages=request.messages + [call_content, tool_content])
            ctx.check_cancelled()
            response = self.client.chat(request, cancel=ctx.cancel)
        if response.tool_calls:
            logger.warning(f"Stopped servicing tool calls after {MAX_TOOL_ROUNDS} rounds")
        return response

    def _run_tool(self, call: FunctionCall) -> FunctionResponse:
        decision = PermissionDecision.ALLOWED
        if self.permissions is not None and not self.permissions.is_allowed(call.name, call.args):
            decision = PermissionDecision(self.permissions.request_permission(call.name, call.args))
        if decision != PermissionDecision.ALLOWED:
            logger.info(f"Tool {call.name} not run: {decision.value}")
            return FunctionResponse(
                name=call.name,
                response={"error": f"Tool call {decision.value.lower()} by permission policy"},
                id=call.id,
            )

        started = time.time()
        try:
            payload = self.tools.execute(call.name, call.args)
            success = True
        except ToolExecutionError as exc:
            logger.warning(f"Tool {call.name} failed: {exc}")
            payload = {"error": str(exc)}
            success = False
        notify(self.observer, "record_tool_call", call.name, (time.time() - started) * 1000, success)
        return FunctionResponse(name=call.name, response=payload, id=call.id)

    def _validate_output(self, script: Script, final: str, diagnostics: List[str]) -> None:
        schema = script.output
        if not schema or "type" not in schema:
            return
        try:
            doc = json.loads(final)
        except ValueError:
            return
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as exc:
            diagnostics.append(f"output schema invalid: {exc.message}")
            return
        for err in sorted(Draft7Validator(schema).iter_errors(doc), key=lambda e: list(e.path)):
            path = "/" + "/".join(str(p) for p in err.path) if err.path else "/"
            diagnostics.append(f"output {path}: {err.message}")
