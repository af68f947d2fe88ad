"""Per-provider failure tracking with cooldown windows.

A provider that fails ``max_failures_before_cooldown`` times in a row is
excluded from routing until ``cooldown_ms`` has elapsed. Expired cooldowns
are cleared lazily on the next eligibility check; there is no half-open
probing phase. Any success resets the provider completely.
"""

import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_FAILURES_BEFORE_COOLDOWN = 3
DEFAULT_COOLDOWN_MS = 300_000


@dataclass
class ProviderHealthState:
    """Mutable health record for one provider."""

    failure_count: int = 0
    cooldown_until: Optional[float] = None  # epoch seconds
    last_error: Optional[str] = None
    last_failure_at: Optional[float] = None  # epoch seconds


class ProviderHealthTracker:
    """Tracks consecutive failures and cooldowns for registered providers."""

    def __init__(
        self,
        max_failures_before_cooldown: int = DEFAULT_MAX_FAILURES_BEFORE_COOLDOWN,
        cooldown_ms: int = DEFAULT_COOLDOWN_MS,
        clock: Callable[[], float] = time.time,
        provider_ids: Iterable[str] = (),
    ) -> None:
        """Initialize the tracker.

        Args:
            max_failures_before_cooldown: Consecutive failures that open the cooldown.
            cooldown_ms: Length of a cooldown window in milliseconds.
            clock: Returns the current time in epoch seconds.
            provider_ids: Providers to register up front.
        """
        if max_failures_before_cooldown < 1:
            raise ValueError("max_failures_before_cooldown must be at least 1")
        if cooldown_ms < 0:
            raise ValueError("cooldown_ms must not be negative")

        self.max_failures_before_cooldown = max_failures_before_cooldown
        self.cooldown_ms = cooldown_ms
        self._clock = clock
        self._states: Dict[str, ProviderHealthState] = {}
        for provider_id in provider_ids:
            self.register(provider_id)

    def register(self, provider_id: str) -> None:
        """Create a fresh health entry for a provider."""
        self._states[provider_id] = ProviderHealthState()

    def list_providers(self) -> List[str]:
        return list(self._states.keys())

    def _state(self, provider_id: str) -> ProviderHealthState:
        try:
            return self._states[provider_id]
        except KeyError:
            raise KeyError(f"Provider not registered with health tracker: {provider_id}") from None

    def get_state(self, provider_id: str) -> ProviderHealthState:
        """Return a copy of a provider's health state."""
        return replace(self._state(provider_id))

    def record_failure(
        self,
        provider_id: str,
        error: Optional[BaseException] = None,
        force_cooldown: bool = False,
    ) -> None:
        """Count a failure and open the cooldown once the threshold is hit.

        Args:
            provider_id: Provider that failed.
            error: The failure, kept as ``last_error``.
            force_cooldown: Open the cooldown regardless of the count.
        """
        state = self._state(provider_id)
        state.failure_count += 1
        state.last_failure_at = self._clock()
        if error is not None:
            state.last_error = str(error)

        if force_cooldown or state.failure_count >= self.max_failures_before_cooldown:
            state.cooldown_until = self._clock() + self.cooldown_ms / 1000.0
            logger.warning(
                f"Provider {provider_id} entering cooldown for {self.cooldown_ms}ms "
                f"after {state.failure_count} failure(s)"
            )
        else:
            logger.debug(f"Provider {provider_id} failure count: {state.failure_count}")

    def record_success(self, provider_id: str) -> None:
        """Reset a provider to a clean state."""
        state = self._state(provider_id)
        if state.cooldown_until is not None or state.failure_count:
            logger.info(f"Provider {provider_id} recovered after {state.failure_count} failure(s)")
        self._states[provider_id] = ProviderHealthState()

    def is_cooling_down(self, provider_id: str, now: Optional[float] = None) -> bool:
        """Return whether a provider is currently excluded.

        An expired cooldown resets the provider before answering.
        """
        state = self._state(provider_id)
        if state.cooldown_until is None:
            return False

        now = self._clock() if now is None else now
        if now >= state.cooldown_until:
            logger.info(f"Provider {provider_id} cooldown expired")
            self._states[provider_id] = ProviderHealthState()
            return False
        return True

    def cooldown_expires_at(self, provider_id: str) -> Optional[datetime]:
        """Return when the provider's cooldown ends, if one is active."""
        cooldown_until = self._state(provider_id).cooldown_until
        if cooldown_until is None:
            return None
        return datetime.fromtimestamp(cooldown_until, tz=timezone.utc)
