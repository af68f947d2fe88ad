"""Pytest configuration and fixtures for LLM router tests."""

import asyncio
import os
from typing import Any, Dict, List, Optional, Sequence

import pytest

from llm_router.config import RouterConfig
from llm_router.orchestrator import CompletionOrchestrator
from llm_router.providers.base import (
    BaseLLMProvider,
    CompletionResult,
    ProviderConfig,
    ProviderIdentity,
    TokenUsage,
)
from llm_router.schemas import ChatMessage, CompletionOptions, ConversationContext


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedProvider(BaseLLMProvider):
    """Provider that plays back scripted outcomes, one per key attempt.

    An outcome is an exception to raise, a string to return as content, or
    None for a default reply. Every attempt goes through key rotation.
    """

    def __init__(
        self,
        identity: ProviderIdentity,
        outcomes: Optional[List[Any]] = None,
        api_keys: Sequence[str] = ("key-1",),
        available: bool = True,
        delay: float = 0.0,
        timeout_ms: int = 30000,
    ):
        super().__init__(
            ProviderConfig(
                identity=identity,
                model=f"{identity.value}-test-model",
                api_keys=tuple(api_keys),
                timeout_ms=timeout_ms,
            )
        )
        self.outcomes = list(outcomes or [])
        self.available = available
        self.delay = delay
        self.attempted_keys: List[str] = []
        self.received: List[Dict[str, Any]] = []
        self.closed = False

    async def is_available(self) -> bool:
        return self.available

    async def generate_response(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[CompletionOptions] = None,
        context: Optional[ConversationContext] = None,
    ) -> CompletionResult:
        self.received.append({"messages": list(messages), "options": options, "context": context})

        async def _call(api_key: str, key_index: int) -> CompletionResult:
            self.attempted_keys.append(api_key)
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.outcomes.pop(0) if self.outcomes else None
            if isinstance(outcome, BaseException):
                raise outcome
            return CompletionResult(
                content=outcome or f"Hello from {self.provider_name}",
                model=self.model,
                provider=self.provider_name,
                usage=TokenUsage(prompt_tokens=5, completion_tokens=3, total_tokens=8),
                finish_reason="stop",
                api_key_index_used=key_index,
            )

        return await self._with_key_rotation(_call)

    async def test_connection(self) -> bool:
        return self.available

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def scripted():
    """The ScriptedProvider class, for building providers inside tests."""
    return ScriptedProvider


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_orchestrator(clock):
    """Build an orchestrator over scripted providers.

    Priority defaults to the order the providers are passed in.
    """

    def _make(*providers: ScriptedProvider, priority=None, **settings) -> CompletionOrchestrator:
        by_identity = {p.config.identity: p for p in providers}
        config = RouterConfig(
            providers={identity: p.config for identity, p in by_identity.items()},
            provider_priority=tuple(priority if priority is not None else by_identity),
            **settings,
        )
        return CompletionOrchestrator(config, providers=by_identity, clock=clock)

    return _make


@pytest.fixture
def sample_messages() -> List[Dict[str, str]]:
    """Sample message list for testing."""
    return [
        {"role": "user", "content": "What is the capital of France?"}
    ]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every router setting from the process environment."""
    prefixes = ("OPENAI_", "ANTHROPIC_", "GEMINI_", "HUGGINGFACE_", "OLLAMA_", "AI_")
    for name in list(os.environ):
        if name.startswith(prefixes):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch
