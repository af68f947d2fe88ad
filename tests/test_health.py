"""Tests for per-provider failure tracking and cooldowns."""

from datetime import datetime, timezone

import pytest

from llm_router.health import ProviderHealthTracker


@pytest.fixture
def tracker(clock):
    return ProviderHealthTracker(
        max_failures_before_cooldown=3,
        cooldown_ms=60_000,
        clock=clock,
        provider_ids=["openai", "gemini"],
    )


class TestProviderHealthTracker:
    """Tests for ProviderHealthTracker."""

    def test_registered_providers_start_healthy(self, tracker):
        assert tracker.list_providers() == ["openai", "gemini"]
        state = tracker.get_state("openai")
        assert state.failure_count == 0
        assert state.cooldown_until is None
        assert tracker.is_cooling_down("openai") is False

    def test_failures_below_threshold_do_not_cool_down(self, tracker):
        tracker.record_failure("openai", RuntimeError("boom"))
        tracker.record_failure("openai", RuntimeError("boom again"))

        state = tracker.get_state("openai")
        assert state.failure_count == 2
        assert state.last_error == "boom again"
        assert tracker.is_cooling_down("openai") is False

    def test_failure_time_recorded(self, tracker, clock):
        assert tracker.get_state("openai").last_failure_at is None

        tracker.record_failure("openai", RuntimeError("boom"))
        clock.advance(10)
        tracker.record_failure("openai", RuntimeError("boom again"))

        assert tracker.get_state("openai").last_failure_at == clock.now

    def test_threshold_opens_cooldown(self, tracker, clock):
        for _ in range(3):
            tracker.record_failure("openai")

        assert tracker.is_cooling_down("openai") is True
        assert tracker.get_state("openai").cooldown_until == clock.now + 60.0
        # Other providers are unaffected
        assert tracker.is_cooling_down("gemini") is False

    def test_cooldown_expires_and_resets(self, tracker, clock):
        for _ in range(3):
            tracker.record_failure("openai")

        clock.advance(59)
        assert tracker.is_cooling_down("openai") is True

        clock.advance(1)
        assert tracker.is_cooling_down("openai") is False
        state = tracker.get_state("openai")
        assert state.failure_count == 0
        assert state.cooldown_until is None

    def test_explicit_now_is_used(self, tracker, clock):
        for _ in range(3):
            tracker.record_failure("openai")

        assert tracker.is_cooling_down("openai", now=clock.now + 61) is False

    def test_success_resets_failures(self, tracker):
        tracker.record_failure("openai", RuntimeError("boom"))
        tracker.record_failure("openai")
        tracker.record_success("openai")

        state = tracker.get_state("openai")
        assert state.failure_count == 0
        assert state.last_error is None

    def test_success_clears_active_cooldown(self, tracker):
        for _ in range(3):
            tracker.record_failure("openai")
        tracker.record_success("openai")

        assert tracker.is_cooling_down("openai") is False

    def test_force_cooldown_ignores_threshold(self, tracker):
        tracker.record_failure("gemini", force_cooldown=True)

        assert tracker.get_state("gemini").failure_count == 1
        assert tracker.is_cooling_down("gemini") is True

    def test_cooldown_expires_at(self, tracker, clock):
        assert tracker.cooldown_expires_at("openai") is None

        tracker.record_failure("openai", force_cooldown=True)

        expected = datetime.fromtimestamp(clock.now + 60.0, tz=timezone.utc)
        assert tracker.cooldown_expires_at("openai") == expected

    def test_get_state_returns_copy(self, tracker):
        state = tracker.get_state("openai")
        state.failure_count = 99

        assert tracker.get_state("openai").failure_count == 0

    def test_zero_cooldown_never_excludes(self, clock):
        tracker = ProviderHealthTracker(
            max_failures_before_cooldown=1,
            cooldown_ms=0,
            clock=clock,
            provider_ids=["openai"],
        )
        tracker.record_failure("openai")

        assert tracker.is_cooling_down("openai") is False

    def test_unknown_provider_raises(self, tracker):
        with pytest.raises(KeyError, match="not registered"):
            tracker.record_failure("ollama")

    def test_invalid_settings_rejected(self):
        with pytest.raises(ValueError):
            ProviderHealthTracker(max_failures_before_cooldown=0)
        with pytest.raises(ValueError):
            ProviderHealthTracker(cooldown_ms=-1)
