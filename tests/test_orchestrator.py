"""Tests for the completion orchestrator."""

from datetime import datetime, timezone

import pytest

from llm_router.config import load_router_config
from llm_router.orchestrator import (
    AllProvidersFailedError,
    CompletionOrchestrator,
    get_orchestrator,
    normalize_messages,
    reset_orchestrator,
)
from llm_router.providers.base import (
    AuthenticationError,
    ErrorKind,
    ProviderError,
    ProviderIdentity,
    RateLimitError,
)
from llm_router.schemas import ChatMessage, CompletionOptions, ConversationContext

OPENAI = ProviderIdentity.OPENAI
ANTHROPIC = ProviderIdentity.ANTHROPIC
GEMINI = ProviderIdentity.GEMINI
HUGGINGFACE = ProviderIdentity.HUGGINGFACE


class TestProvidersToTry:
    """Tests for try-order computation."""

    def test_priority_order_when_all_healthy(self, scripted, make_orchestrator):
        orchestrator = make_orchestrator(scripted(HUGGINGFACE), scripted(GEMINI))

        assert orchestrator.get_providers_to_try() == [HUGGINGFACE, GEMINI]

    def test_unconfigured_providers_are_skipped(self):
        config = load_router_config({
            "GEMINI_API_KEY": "g-real",
            "AI_PROVIDER_PRIORITY": "huggingface,gemini",
        })
        orchestrator = CompletionOrchestrator(config)

        assert orchestrator.list_providers() == ["gemini"]
        assert orchestrator.get_providers_to_try() == [GEMINI]

    def test_cooling_down_provider_excluded(self, scripted, make_orchestrator):
        orchestrator = make_orchestrator(
            scripted(HUGGINGFACE),
            scripted(GEMINI),
            max_failures_before_cooldown=1,
            cooldown_ms=60000,
        )

        orchestrator.mark_provider_failure(HUGGINGFACE, force_cooldown=True)

        assert orchestrator.get_providers_to_try() == [GEMINI]

    def test_cooldown_expiry_restores_provider(self, scripted, make_orchestrator, clock):
        orchestrator = make_orchestrator(
            scripted(HUGGINGFACE),
            scripted(GEMINI),
            cooldown_ms=60000,
        )
        orchestrator.mark_provider_failure(HUGGINGFACE, force_cooldown=True)

        clock.advance(60)

        assert orchestrator.get_providers_to_try() == [HUGGINGFACE, GEMINI]

    def test_fallback_disabled_returns_single_provider(self, scripted, make_orchestrator):
        orchestrator = make_orchestrator(
            scripted(OPENAI),
            scripted(ANTHROPIC),
            fallback_enabled=False,
        )

        assert orchestrator.get_providers_to_try() == [OPENAI]

        # Cooldown state of the head does not matter without fallback
        orchestrator.mark_provider_failure(OPENAI, force_cooldown=True)
        assert orchestrator.get_providers_to_try() == [OPENAI]

    def test_no_providers(self, make_orchestrator):
        assert make_orchestrator().get_providers_to_try() == []


class TestGenerateCompletion:
    """Tests for generate_completion."""

    @pytest.mark.asyncio
    async def test_first_provider_succeeds(self, scripted, make_orchestrator, sample_messages):
        openai = scripted(OPENAI)
        gemini = scripted(GEMINI)
        orchestrator = make_orchestrator(openai, gemini)

        result = await orchestrator.generate_completion(sample_messages)

        assert result.content == "Hello from openai"
        assert result.provider == "openai"
        assert result.processing_time_ms >= 0
        assert orchestrator.last_successful_provider == OPENAI
        assert gemini.attempted_keys == []

    @pytest.mark.asyncio
    async def test_messages_options_and_context_reach_provider(
        self, scripted, make_orchestrator, sample_messages
    ):
        openai = scripted(OPENAI)
        orchestrator = make_orchestrator(openai)
        options = CompletionOptions(max_tokens=50, temperature=0.1)
        context = ConversationContext(system_prompt="Be brief.", session_id="s-1")

        await orchestrator.generate_completion(sample_messages, options, context)

        received = openai.received[0]
        assert received["messages"] == [
            ChatMessage(role="user", content="What is the capital of France?")
        ]
        assert received["options"] is options
        assert received["context"] is context

    @pytest.mark.asyncio
    async def test_falls_back_to_next_provider(self, scripted, make_orchestrator, sample_messages):
        openai = scripted(OPENAI, outcomes=[ProviderError("HTTP 500", "openai", status_code=500)])
        gemini = scripted(GEMINI)
        orchestrator = make_orchestrator(openai, gemini)

        result = await orchestrator.generate_completion(sample_messages)

        assert result.provider == "gemini"
        assert orchestrator.health.get_state("openai").failure_count == 1
        assert orchestrator.last_successful_provider == GEMINI

    @pytest.mark.asyncio
    async def test_affinity_moves_last_success_to_front(self, scripted, make_orchestrator, sample_messages):
        openai = scripted(OPENAI, outcomes=[ProviderError("HTTP 500", "openai")])
        gemini = scripted(GEMINI)
        orchestrator = make_orchestrator(openai, gemini)

        await orchestrator.generate_completion(sample_messages)

        assert orchestrator.get_providers_to_try() == [GEMINI, OPENAI]

        result = await orchestrator.generate_completion(sample_messages)
        assert result.provider == "gemini"
        assert openai.attempted_keys == ["key-1"]

    @pytest.mark.asyncio
    async def test_affinity_provider_in_cooldown_is_skipped(
        self, scripted, make_orchestrator, sample_messages
    ):
        orchestrator = make_orchestrator(scripted(OPENAI), scripted(GEMINI), priority=[GEMINI, OPENAI])
        await orchestrator.generate_completion(sample_messages)
        assert orchestrator.last_successful_provider == GEMINI

        orchestrator.mark_provider_failure(GEMINI, force_cooldown=True)

        assert orchestrator.get_providers_to_try() == [OPENAI]

    @pytest.mark.asyncio
    async def test_rate_limit_moves_to_next_provider_without_rotating(
        self, scripted, make_orchestrator, sample_messages
    ):
        huggingface = scripted(
            HUGGINGFACE,
            outcomes=[RateLimitError("Quota exceeded", "huggingface", status_code=402)],
            api_keys=["hf-1", "hf-2", "hf-3"],
        )
        gemini = scripted(GEMINI)
        orchestrator = make_orchestrator(huggingface, gemini)

        result = await orchestrator.generate_completion(sample_messages)

        assert result.provider == "gemini"
        assert huggingface.attempted_keys == ["hf-1"]

    @pytest.mark.asyncio
    async def test_unavailable_provider_skipped(self, scripted, make_orchestrator, sample_messages):
        openai = scripted(OPENAI, available=False)
        gemini = scripted(GEMINI)
        orchestrator = make_orchestrator(openai, gemini)

        result = await orchestrator.generate_completion(sample_messages)

        assert result.provider == "gemini"
        assert openai.received == []
        state = orchestrator.health.get_state("openai")
        assert state.failure_count == 1
        assert "not available" in state.last_error

    @pytest.mark.asyncio
    async def test_slow_provider_times_out(self, scripted, make_orchestrator, sample_messages):
        slow = scripted(OPENAI, delay=5.0, timeout_ms=20)
        gemini = scripted(GEMINI)
        orchestrator = make_orchestrator(slow, gemini)

        result = await orchestrator.generate_completion(sample_messages)

        assert result.provider == "gemini"
        assert slow.attempted_keys == ["key-1"]
        assert "timeout" in orchestrator.health.get_state("openai").last_error

    @pytest.mark.asyncio
    async def test_repeated_failures_open_cooldown(self, scripted, make_orchestrator, sample_messages):
        openai = scripted(
            OPENAI,
            outcomes=[AuthenticationError("bad key", "openai") for _ in range(2)],
        )
        orchestrator = make_orchestrator(openai, max_failures_before_cooldown=2)

        for _ in range(2):
            with pytest.raises(AllProvidersFailedError):
                await orchestrator.generate_completion(sample_messages)

        assert orchestrator.health.is_cooling_down("openai") is True
        assert orchestrator.get_providers_to_try() == []

        # A cooling down provider is not even attempted
        with pytest.raises(AllProvidersFailedError) as exc_info:
            await orchestrator.generate_completion(sample_messages)
        assert openai.attempted_keys == ["key-1", "key-1"]
        assert exc_info.value.cooling_down_providers[0].provider_id == "openai"

    @pytest.mark.asyncio
    async def test_all_cooling_down_reports_recorded_error(self, scripted, make_orchestrator, sample_messages):
        openai = scripted(OPENAI, outcomes=[ProviderError("HTTP 500", "openai")])
        orchestrator = make_orchestrator(openai, max_failures_before_cooldown=1)

        with pytest.raises(AllProvidersFailedError):
            await orchestrator.generate_completion(sample_messages)

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await orchestrator.generate_completion(sample_messages)

        assert exc_info.value.last_error is None
        assert "HTTP 500" in exc_info.value.message
        assert "Unknown" not in exc_info.value.message

    @pytest.mark.asyncio
    async def test_all_cooling_down_reports_most_recent_error(
        self, scripted, make_orchestrator, sample_messages, clock
    ):
        orchestrator = make_orchestrator(scripted(OPENAI), scripted(GEMINI), cooldown_ms=60000)
        orchestrator.mark_provider_failure(GEMINI, RuntimeError("gemini quota"), force_cooldown=True)
        clock.advance(5)
        orchestrator.mark_provider_failure(OPENAI, RuntimeError("openai refused"), force_cooldown=True)

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await orchestrator.generate_completion(sample_messages)

        assert "Last error: openai refused." in exc_info.value.message

    @pytest.mark.asyncio
    async def test_success_resets_provider_health(self, scripted, make_orchestrator, sample_messages):
        openai = scripted(OPENAI)
        orchestrator = make_orchestrator(openai)
        orchestrator.mark_provider_failure(OPENAI, RuntimeError("earlier"))

        await orchestrator.generate_completion(sample_messages)

        state = orchestrator.health.get_state("openai")
        assert state.failure_count == 0
        assert state.last_error is None

    @pytest.mark.asyncio
    async def test_all_providers_failed(self, scripted, make_orchestrator, sample_messages, clock):
        last = ProviderError("HTTP 503", "gemini", status_code=503)
        orchestrator = make_orchestrator(
            scripted(OPENAI, outcomes=[AuthenticationError("bad key", "openai")]),
            scripted(GEMINI, outcomes=[last]),
            max_failures_before_cooldown=1,
            cooldown_ms=60000,
        )

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await orchestrator.generate_completion(sample_messages)

        error = exc_info.value
        assert error.kind is ErrorKind.ALL_FAILED
        assert error.last_error is last
        assert error.available_providers == ["openai", "gemini"]
        retry_at = datetime.fromtimestamp(clock.now + 60, tz=timezone.utc)
        assert [(c.provider_id, c.retry_at) for c in error.cooling_down_providers] == [
            ("openai", retry_at),
            ("gemini", retry_at),
        ]
        assert "All AI providers failed" in error.message
        assert "Cooling down" in error.message
        assert orchestrator.last_successful_provider is None

    @pytest.mark.asyncio
    async def test_all_failed_to_dict(self, scripted, make_orchestrator, sample_messages):
        orchestrator = make_orchestrator(
            scripted(OPENAI, outcomes=[ProviderError("HTTP 500", "openai")]),
        )

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await orchestrator.generate_completion(sample_messages)

        data = exc_info.value.to_dict()
        assert data["available_providers"] == ["openai"]
        assert data["cooling_down_providers"] == []

    @pytest.mark.asyncio
    async def test_no_providers_configured(self, make_orchestrator, sample_messages):
        orchestrator = make_orchestrator()

        with pytest.raises(AllProvidersFailedError) as exc_info:
            await orchestrator.generate_completion(sample_messages)

        assert exc_info.value.available_providers == []
        assert "No AI providers available" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_fallback_disabled_does_not_try_second_provider(
        self, scripted, make_orchestrator, sample_messages
    ):
        gemini = scripted(GEMINI)
        orchestrator = make_orchestrator(
            scripted(OPENAI, outcomes=[ProviderError("HTTP 500", "openai")]),
            gemini,
            fallback_enabled=False,
        )

        with pytest.raises(AllProvidersFailedError):
            await orchestrator.generate_completion(sample_messages)

        assert gemini.received == []

    @pytest.mark.asyncio
    async def test_empty_messages_rejected(self, scripted, make_orchestrator):
        orchestrator = make_orchestrator(scripted(OPENAI))

        with pytest.raises(ValueError):
            await orchestrator.generate_completion([])


class TestNormalizeMessages:
    """Tests for message validation."""

    def test_dicts_become_chat_messages(self):
        messages = normalize_messages([
            {"role": "system", "content": "Be kind."},
            ChatMessage(role="user", content="Hi"),
        ])
        assert [m.role for m in messages] == ["system", "user"]

    def test_invalid_role_rejected(self):
        with pytest.raises(ValueError):
            normalize_messages([{"role": "tool", "content": "x"}])

    def test_blank_content_rejected(self):
        with pytest.raises(ValueError):
            normalize_messages([{"role": "user", "content": "   "}])


class TestDiagnostics:
    """Tests for status reporting and connection tests."""

    @pytest.mark.asyncio
    async def test_provider_status(self, scripted, make_orchestrator):
        orchestrator = make_orchestrator(
            scripted(OPENAI),
            scripted(GEMINI, available=False),
            cooldown_ms=60000,
        )
        orchestrator.mark_provider_failure(GEMINI, RuntimeError("connection refused"), force_cooldown=True)

        status = await orchestrator.get_provider_status()

        assert status["openai"].available is True
        assert status["openai"].cooldown_active is False
        assert status["openai"].model == "openai-test-model"
        assert status["gemini"].available is False
        assert status["gemini"].cooldown_active is True
        assert status["gemini"].cooldown_expires_at is not None
        assert status["gemini"].failure_count == 1
        assert status["gemini"].last_error == "connection refused"

    @pytest.mark.asyncio
    async def test_test_all_providers(self, scripted, make_orchestrator):
        broken = scripted(ANTHROPIC)

        async def _explode():
            raise RuntimeError("DNS failure")

        broken.test_connection = _explode
        orchestrator = make_orchestrator(
            scripted(OPENAI),
            scripted(GEMINI, available=False),
            broken,
        )

        results = await orchestrator.test_all_providers()

        assert results["openai"].success is True
        assert results["openai"].latency_ms is not None
        assert results["gemini"].success is False
        assert results["gemini"].error == "Connection test failed"
        assert results["anthropic"].success is False
        assert results["anthropic"].error == "DNS failure"

    def test_debug_config(self, scripted, make_orchestrator):
        orchestrator = make_orchestrator(
            scripted(OPENAI),
            scripted(GEMINI),
            priority=[GEMINI, OPENAI],
            max_failures_before_cooldown=2,
            cooldown_ms=1000,
        )

        assert orchestrator.debug_config() == {
            "providers": ["openai", "gemini"],
            "priority": ["gemini", "openai"],
            "fallback_enabled": True,
            "max_failures_before_cooldown": 2,
            "cooldown_ms": 1000,
        }

    @pytest.mark.asyncio
    async def test_close_closes_providers(self, scripted, make_orchestrator):
        openai = scripted(OPENAI)
        orchestrator = make_orchestrator(openai)

        await orchestrator.close()

        assert openai.closed is True


class TestIndependentInstances:
    """Orchestrators do not share routing state."""

    @pytest.mark.asyncio
    async def test_state_is_per_instance(self, scripted, make_orchestrator, sample_messages):
        first = make_orchestrator(scripted(OPENAI), scripted(GEMINI), priority=[GEMINI, OPENAI])
        second = make_orchestrator(scripted(OPENAI), scripted(GEMINI))

        first.mark_provider_failure(GEMINI, force_cooldown=True)
        await first.generate_completion(sample_messages)

        assert first.last_successful_provider == OPENAI
        assert second.last_successful_provider is None
        assert second.get_providers_to_try() == [OPENAI, GEMINI]


class TestGlobalOrchestrator:
    """Tests for the process-wide orchestrator accessor."""

    def test_get_orchestrator_is_cached(self, clean_env):
        clean_env.setenv("GEMINI_API_KEY", "g-real")
        reset_orchestrator()
        try:
            orchestrator = get_orchestrator()
            assert orchestrator is get_orchestrator()
            assert orchestrator.list_providers() == ["gemini"]
        finally:
            reset_orchestrator()
