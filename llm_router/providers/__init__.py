"""Provider abstraction layer for LLM providers.

This package defines the base interface that all LLM providers must implement,
enabling interchangeable usage and fallback logic.
"""

from .base import (
    BaseLLMProvider,
    CompletionResult,
    TokenUsage,
    ProviderConfig,
    ProviderIdentity,
    ErrorKind,
    ProviderError,
    RateLimitError,
    AuthenticationError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from .registry import PROVIDER_CLASSES, create_provider, create_providers, get_provider_class
from .openai_provider import OpenAIProvider
from .anthropic_provider import AnthropicProvider
from .gemini_provider import GeminiProvider
from .huggingface_provider import HuggingFaceProvider
from .ollama_provider import OllamaProvider

__all__ = [
    "BaseLLMProvider",
    "CompletionResult",
    "TokenUsage",
    "ProviderConfig",
    "ProviderIdentity",
    "ErrorKind",
    "ProviderError",
    "RateLimitError",
    "AuthenticationError",
    "ProviderTimeoutError",
    "ProviderUnavailableError",
    "PROVIDER_CLASSES",
    "create_provider",
    "create_providers",
    "get_provider_class",
    "OpenAIProvider",
    "AnthropicProvider",
    "GeminiProvider",
    "HuggingFaceProvider",
    "OllamaProvider",
]
