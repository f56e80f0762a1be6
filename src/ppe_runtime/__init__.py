"""
ppe-runtime - programmable prompt scripts executed against LLM providers
"""

__version__ = "0.1.0"

from .classifier import ErrorCategory, ErrorClassification, ErrorClassifier, Severity
from .config import RuntimeConfig
from .engine import ExecutionContext, ExecutionEngine, ExecutionResult, ExecutionState
from .errors import (
    ConfigError,
    CredentialsExhaustedError,
    ExecutionCancelledError,
    PpeError,
    ProviderError,
    ScriptNotFoundError,
    ScriptParseError,
    ToolExecutionError,
    ToolUnsupportedError,
)
from .permissions import AllowList, PermissionDecision
from .processor import MessageProcessor
from .script import ScriptLoader, parse_script
from .template import render

__all__ = [
    "AllowList",
    "ConfigError",
    "CredentialsExhaustedError",
    "ErrorCategory",
    "ErrorClassification",
    "ErrorClassifier",
    "ExecutionCancelledError",
    "ExecutionContext",
    "ExecutionEngine",
    "ExecutionResult",
    "ExecutionState",
    "MessageProcessor",
    "PermissionDecision",
    "PpeError",
    "ProviderError",
    "RuntimeConfig",
    "ScriptLoader",
    "ScriptNotFoundError",
    "ScriptParseError",
    "Severity",
    "ToolExecutionError",
    "ToolUnsupportedError",
    "parse_script",
    "render",
]
