from __future__ import annotations

from typing import Optional


class PpeError(Exception):
    pass


class ConfigError(PpeError):
    pass


class ScriptParseError(PpeError):
    pass


class ScriptNotFoundError(PpeError):
    def __init__(self, name: str, searched: Optional[list] = None):
        self.name = name
        self.searched = list(searched or [])
        super().__init__(f"Script not found: {name}")


class ProviderError(PpeError):
    """Non-2xx response or transport failure from a provider backend."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Optional[str] = None,
        provider: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        self.status_code = status_code
        self.body = body
        self.provider = provider
        self.retry_after = retry_after
        super().__init__(message)


class ToolUnsupportedError(ProviderError):
    pass


class CredentialsExhaustedError(PpeError):
    def __init__(self, provider: str, retry_delay: Optional[float] = None):
        self.provider = provider
        self.retry_delay = retry_delay
        super().__init__(f"All API keys are exhausted for {provider}")


class ExecutionCancelledError(PpeError):
    pass


class ToolExecutionError(PpeError):
    pass
