from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from .errors import ToolExecutionError
from .providers.models import ToolDeclaration

logger = logging.getLogger(__name__)

ToolFn = Callable[..., Any]


@dataclass(frozen=True)
class RegisteredTool:
    declaration: ToolDeclaration
    fn: ToolFn


class ToolRegistry:
    """Tools the model may call, keyed by name."""

    def __init__(self):
        self._tools: Dict[str, RegisteredTool] = {}

    def register(
        self,
        name: str,
        fn: ToolFn,
        *,
        description: str = "",
        parameters: Optional[Dict[str, Any]] = None,
    ) -> None:
        decl = ToolDeclaration(
            name=name,
            description=description or (fn.__doc__ or "").strip(),
            parameters=parameters or {"type": "object", "properties": {}},
        )
        self._tools[name] = RegisteredTool(declaration=decl, fn=fn)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def declarations(self) -> List[ToolDeclaration]:
        return [t.declaration for t in self._tools.values()]

    def execute(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]:
        """Run a tool and wrap its return value as a function-response payload."""
        tool = self._tools.get(name)
        if tool is None:
            raise ToolExecutionError(f"Unknown tool: {name}")
        try:
            result = tool.fn(**args)
        except TypeError as exc:
            raise ToolExecutionError(f"Bad arguments for {name}: {exc}") from exc
        except Exception as exc:
            raise ToolExecutionError(f"{name} failed: {exc}") from exc
        if isinstance(result, dict):
            return result
        return {"output": result}
