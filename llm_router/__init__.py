"""Multi-provider LLM completion routing.

Routes chat completions across hosted and local LLM backends with API key
rotation, per-provider cooldowns and priority-ordered fallback.
"""

from .config import RouterConfig, ConfigurationError, get_settings, load_provider_configs, load_router_config
from .health import ProviderHealthState, ProviderHealthTracker
from .orchestrator import (
    AllProvidersFailedError,
    CompletionOrchestrator,
    CooldownInfo,
    get_orchestrator,
    reset_orchestrator,
)
from .providers import CompletionResult, ProviderConfig, ProviderIdentity, TokenUsage
from .schemas import ChatMessage, CompletionOptions, ConversationContext

__all__ = [
    "RouterConfig",
    "ConfigurationError",
    "get_settings",
    "load_provider_configs",
    "load_router_config",
    "ProviderHealthState",
    "ProviderHealthTracker",
    "AllProvidersFailedError",
    "CompletionOrchestrator",
    "CooldownInfo",
    "get_orchestrator",
    "reset_orchestrator",
    "CompletionResult",
    "ProviderConfig",
    "ProviderIdentity",
    "TokenUsage",
    "ChatMessage",
    "CompletionOptions",
    "ConversationContext",
]
