"""LLM provider abstraction."""

from blockflow.llm.litellm import LiteLLMProvider
from blockflow.llm.mock import MockLLMProvider
from blockflow.llm.provider import (
    LLMProvider,
    ProviderError,
    ProviderErrorKind,
    ProviderRequest,
    ProviderResponse,
    ProviderResult,
    Tool,
    ToolUse,
)
from blockflow.llm.registry import ProviderRegistry

__all__ = [
    "LLMProvider",
    "LiteLLMProvider",
    "MockLLMProvider",
    "ProviderError",
    "ProviderErrorKind",
    "ProviderRegistry",
    "ProviderRequest",
    "ProviderResponse",
    "ProviderResult",
    "Tool",
    "ToolUse",
]
