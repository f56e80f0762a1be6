from .adapters import (
    AnthropicAdapter,
    GeminiAdapter,
    OllamaAdapter,
    OpenAIAdapter,
    ProviderAdapter,
    get_adapter,
)
from .client import ProviderClient, TimeoutPolicy
from .credentials import CredentialPool
from .models import (
    Content,
    FunctionCall,
    FunctionResponse,
    NormalizedChatRequest,
    NormalizedChatResponse,
    Part,
    ProviderKind,
    ToolDeclaration,
)

__all__ = [
    "AnthropicAdapter",
    "Content",
    "CredentialPool",
    "FunctionCall",
    "FunctionResponse",
    "GeminiAdapter",
    "NormalizedChatRequest",
    "NormalizedChatResponse",
    "OllamaAdapter",
    "OpenAIAdapter",
    "Part",
    "ProviderAdapter",
    "ProviderClient",
    "ProviderKind",
    "TimeoutPolicy",
    "ToolDeclaration",
    "get_adapter",
]
