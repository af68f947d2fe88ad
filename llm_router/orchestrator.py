"""Completion orchestrator routing requests across LLM providers.

The orchestrator owns the provider priority order, prefers the provider
that most recently succeeded, skips providers in cooldown, and falls back
through the remaining providers until one produces a completion.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from .config import RouterConfig, get_settings
from .health import ProviderHealthTracker
from .providers.base import (
    BaseLLMProvider,
    CompletionResult,
    ErrorKind,
    ProviderError,
    ProviderIdentity,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from .providers.registry import create_providers
from .schemas import (
    ChatMessage,
    CompletionOptions,
    ConversationContext,
    ProviderStatusResponse,
    ProviderTestResponse,
)

logger = logging.getLogger(__name__)

MessageInput = Union[ChatMessage, Mapping[str, Any]]


@dataclass(frozen=True)
class CooldownInfo:
    """A provider excluded from routing and when it becomes eligible again."""

    provider_id: str
    retry_at: datetime


class AllProvidersFailedError(Exception):
    """Raised when every eligible provider failed to produce a completion."""

    kind = ErrorKind.ALL_FAILED

    def __init__(
        self,
        message: str,
        available_providers: List[str],
        cooling_down_providers: List[CooldownInfo],
        last_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.available_providers = available_providers
        self.cooling_down_providers = cooling_down_providers
        self.last_error = last_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "message": self.message,
            "available_providers": self.available_providers,
            "cooling_down_providers": [
                {"provider_id": info.provider_id, "retry_at": info.retry_at.isoformat()}
                for info in self.cooling_down_providers
            ],
        }


def normalize_messages(messages: Sequence[MessageInput]) -> List[ChatMessage]:
    """Validate caller messages into ChatMessage instances.

    Raises:
        ValueError: If the conversation is empty or a message is malformed.
    """
    if not messages:
        raise ValueError("At least one message is required")
    return [
        m if isinstance(m, ChatMessage) else ChatMessage.model_validate(dict(m))
        for m in messages
    ]


class CompletionOrchestrator:
    """Routes completion requests across registered providers.

    Each instance holds its own health tracker and last-successful-provider
    pointer. Both are mutated without locks: the orchestrator is meant to be
    shared by coroutines on one event loop, not across threads.
    """

    def __init__(
        self,
        config: RouterConfig,
        providers: Optional[Mapping[ProviderIdentity, BaseLLMProvider]] = None,
        health: Optional[ProviderHealthTracker] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Router configuration.
            providers: Provider instances keyed by identity. Built from
                ``config.providers`` when omitted.
            health: Health tracker. A new one is built from the config
                thresholds when omitted.
            clock: Returns the current time in epoch seconds.
        """
        self.config = config
        self._clock = clock
        if providers is None:
            providers = create_providers(config.providers)
        self._providers: Dict[ProviderIdentity, BaseLLMProvider] = dict(providers)

        self.health = health or ProviderHealthTracker(
            max_failures_before_cooldown=config.max_failures_before_cooldown,
            cooldown_ms=config.cooldown_ms,
            clock=clock,
        )
        for identity in self._providers:
            self.health.register(identity.value)

        self._priority: List[ProviderIdentity] = [
            identity for identity in config.provider_priority if identity in self._providers
        ]
        self._last_successful: Optional[ProviderIdentity] = None

        if config.verbose_logging:
            logging.getLogger("llm_router.providers").setLevel(logging.DEBUG)

        logger.info(
            f"Provider priority: {' -> '.join(p.value for p in self._priority) or '(none)'} "
            f"(fallback {'enabled' if config.fallback_enabled else 'disabled'})"
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def last_successful_provider(self) -> Optional[ProviderIdentity]:
        return self._last_successful

    def get_provider(self, identity: ProviderIdentity) -> Optional[BaseLLMProvider]:
        return self._providers.get(identity)

    def list_providers(self) -> List[str]:
        """List names of all registered providers."""
        return [identity.value for identity in self._providers]

    def debug_config(self) -> Dict[str, Any]:
        """Return the routing settings in effect."""
        return {
            "providers": self.list_providers(),
            "priority": [identity.value for identity in self._priority],
            "fallback_enabled": self.config.fallback_enabled,
            "max_failures_before_cooldown": self.health.max_failures_before_cooldown,
            "cooldown_ms": self.health.cooldown_ms,
        }

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def get_providers_to_try(self) -> List[ProviderIdentity]:
        """Compute the provider try-order for the next request.

        The last successful provider moves to the front. Providers in
        cooldown are dropped unless fallback is disabled, in which case only
        the head of the order is returned, cooling down or not.
        """
        order = list(self._priority)
        if self._last_successful is not None and self._last_successful in order:
            order.remove(self._last_successful)
            order.insert(0, self._last_successful)

        if not self.config.fallback_enabled:
            return order[:1]

        now = self._clock()
        return [
            identity for identity in order
            if not self.health.is_cooling_down(identity.value, now)
        ]

    def _cooling_down_providers(self) -> List[CooldownInfo]:
        now = self._clock()
        cooling: List[CooldownInfo] = []
        for identity in self._providers:
            if self.health.is_cooling_down(identity.value, now):
                retry_at = self.health.cooldown_expires_at(identity.value)
                if retry_at is not None:
                    cooling.append(CooldownInfo(provider_id=identity.value, retry_at=retry_at))
        return cooling

    def _last_recorded_error(self) -> Optional[str]:
        """Most recent failure recorded for any registered provider."""
        latest = None
        for identity in self._providers:
            state = self.health.get_state(identity.value)
            if state.last_error is None or state.last_failure_at is None:
                continue
            if latest is None or state.last_failure_at >= latest.last_failure_at:
                latest = state
        return latest.last_error if latest is not None else None

    def _call_timeout(self, provider: BaseLLMProvider, options: CompletionOptions) -> float:
        """Upper bound for one provider call, one request window per API key."""
        per_request_ms = options.timeout_ms or provider.config.timeout_ms
        return per_request_ms * max(1, len(provider.api_keys)) / 1000.0

    def mark_provider_failure(
        self,
        identity: ProviderIdentity,
        error: Optional[BaseException] = None,
        force_cooldown: bool = False,
    ) -> None:
        """Record a failure for a provider outside of a request."""
        self.health.record_failure(identity.value, error, force_cooldown=force_cooldown)

    async def generate_completion(
        self,
        messages: Sequence[MessageInput],
        options: Optional[CompletionOptions] = None,
        context: Optional[ConversationContext] = None,
    ) -> CompletionResult:
        """Generate a completion using the best available provider.

        Args:
            messages: Ordered conversation messages (ChatMessage or dicts).
            options: Optional per-request overrides.
            context: Optional context carrying a system prompt.

        Returns:
            CompletionResult from the first provider that succeeded.

        Raises:
            ValueError: If the messages are empty or malformed.
            AllProvidersFailedError: If no provider produced a completion.
        """
        prepared = normalize_messages(messages)
        options = options or CompletionOptions()

        providers_to_try = self.get_providers_to_try()
        last_error: Optional[BaseException] = None

        for identity in providers_to_try:
            provider = self._providers[identity]
            name = identity.value

            try:
                available = await provider.is_available()
            except Exception as e:
                logger.warning(f"Availability check for {name} failed: {e}")
                available = False

            if not available:
                last_error = ProviderUnavailableError("Provider not available", name)
                self.health.record_failure(name, last_error)
                logger.warning(f"{name} is not available, trying next provider")
                continue

            logger.info(f"Attempting generation with {name}")
            start = time.perf_counter()
            try:
                result = await asyncio.wait_for(
                    provider.generate_response(prepared, options, context),
                    timeout=self._call_timeout(provider, options),
                )
            except asyncio.TimeoutError:
                last_error = ProviderTimeoutError("Request timeout", name)
                self.health.record_failure(name, last_error)
                logger.warning(f"{name} timed out, trying next provider")
                continue
            except ProviderError as e:
                last_error = e
                self.health.record_failure(name, e)
                self._log_provider_failure(name, e)
                continue
            except Exception as e:
                last_error = e
                self.health.record_failure(name, e)
                logger.warning(f"{name} failed: {e}")
                continue

            elapsed_ms = (time.perf_counter() - start) * 1000.0
            self.health.record_success(name)
            self._last_successful = identity
            result.provider = name
            result.processing_time_ms = elapsed_ms
            logger.info(f"{name} responded successfully in {elapsed_ms:.0f}ms")
            return result

        raise self._all_failed(last_error)

    def _log_provider_failure(self, name: str, error: ProviderError) -> None:
        if error.kind is ErrorKind.AUTHENTICATION:
            logger.error(f"Authentication failed for {name}, trying next provider")
        elif error.kind is ErrorKind.RATE_LIMIT:
            logger.warning(f"Rate limit/quota exceeded for {name}, trying next provider")
        else:
            logger.warning(f"{name} failed after {error.attempts} attempt(s): {error}")

    def _all_failed(self, last_error: Optional[BaseException]) -> AllProvidersFailedError:
        available = self.list_providers()
        cooling = self._cooling_down_providers()

        # When every provider was skipped this call, report what put them in cooldown
        reported_error = last_error or self._last_recorded_error() or "Unknown"
        message = f"All AI providers failed. Last error: {reported_error}."
        if not available:
            message = "No AI providers available. Configure at least one API key or enable Ollama."
        else:
            message += f" Available providers: {', '.join(available)}."
        if cooling:
            message += " Cooling down: " + ", ".join(
                f"{info.provider_id} until {info.retry_at.isoformat()}" for info in cooling
            ) + "."

        logger.error(message)
        return AllProvidersFailedError(
            message,
            available_providers=available,
            cooling_down_providers=cooling,
            last_error=last_error,
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def get_provider_status(self) -> Dict[str, ProviderStatusResponse]:
        """Report availability and health for every registered provider."""
        status: Dict[str, ProviderStatusResponse] = {}
        now = self._clock()
        for identity, provider in self._providers.items():
            name = identity.value
            try:
                available = await provider.is_available()
            except Exception as e:
                logger.warning(f"Availability check for {name} failed: {e}")
                available = False

            cooldown_active = self.health.is_cooling_down(name, now)
            state = self.health.get_state(name)
            status[name] = ProviderStatusResponse(
                available=available,
                cooldown_active=cooldown_active,
                cooldown_expires_at=self.health.cooldown_expires_at(name),
                last_error=state.last_error,
                failure_count=state.failure_count,
                model=provider.model,
            )
        return status

    async def test_all_providers(self) -> Dict[str, ProviderTestResponse]:
        """Run a live connection test against every registered provider."""
        results: Dict[str, ProviderTestResponse] = {}
        for identity, provider in self._providers.items():
            start = time.perf_counter()
            try:
                success = await provider.test_connection()
            except Exception as e:
                results[identity.value] = ProviderTestResponse(success=False, error=str(e))
                continue

            if success:
                results[identity.value] = ProviderTestResponse(
                    success=True,
                    latency_ms=(time.perf_counter() - start) * 1000.0,
                )
            else:
                results[identity.value] = ProviderTestResponse(
                    success=False,
                    error="Connection test failed",
                )
        return results

    async def close(self) -> None:
        """Close every provider's HTTP clients."""
        for provider in self._providers.values():
            await provider.close()


# Global orchestrator instance
_orchestrator: Optional[CompletionOrchestrator] = None


def get_orchestrator() -> CompletionOrchestrator:
    """Get the global orchestrator instance.

    Creates it from the process settings if it doesn't exist.
    """
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = CompletionOrchestrator(get_settings())
        logger.info("Initialized global completion orchestrator")
    return _orchestrator


def reset_orchestrator() -> None:
    """Reset the global orchestrator (useful for testing)."""
    global _orchestrator
    _orchestrator = None
    get_settings.cache_clear()
    logger.info("Reset global completion orchestrator")
