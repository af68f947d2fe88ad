"""Provider registry mapping each provider identity to its adapter class."""

import logging
from typing import Dict, Mapping, Type

from .anthropic_provider import AnthropicProvider
from .base import BaseLLMProvider, ProviderConfig, ProviderIdentity
from .gemini_provider import GeminiProvider
from .huggingface_provider import HuggingFaceProvider
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)


PROVIDER_CLASSES: Dict[ProviderIdentity, Type[BaseLLMProvider]] = {
    ProviderIdentity.OPENAI: OpenAIProvider,
    ProviderIdentity.ANTHROPIC: AnthropicProvider,
    ProviderIdentity.GEMINI: GeminiProvider,
    ProviderIdentity.HUGGINGFACE: HuggingFaceProvider,
    ProviderIdentity.OLLAMA: OllamaProvider,
}

_missing = set(ProviderIdentity) - set(PROVIDER_CLASSES)
if _missing:
    raise RuntimeError(f"No provider class registered for: {sorted(m.value for m in _missing)}")


def get_provider_class(identity: ProviderIdentity) -> Type[BaseLLMProvider]:
    """Return the adapter class for a provider identity."""
    return PROVIDER_CLASSES[identity]


def create_provider(config: ProviderConfig) -> BaseLLMProvider:
    """Create a provider instance for a single configuration."""
    return get_provider_class(config.identity)(config)


def create_providers(
    configs: Mapping[ProviderIdentity, ProviderConfig],
) -> Dict[ProviderIdentity, BaseLLMProvider]:
    """Create one provider instance per configuration.

    Providers that fail to initialize are logged and left out.

    Args:
        configs: Provider configurations keyed by identity.

    Returns:
        Provider instances keyed by identity.
    """
    providers: Dict[ProviderIdentity, BaseLLMProvider] = {}
    for identity, config in configs.items():
        if not config.enabled:
            logger.info(f"Provider {identity.value} disabled, skipping")
            continue
        try:
            providers[identity] = create_provider(config)
            logger.info(f"Initialized {identity.value} provider (model: {config.model})")
        except Exception as e:
            logger.warning(f"Failed to initialize {identity.value} provider: {e}")
    return providers
