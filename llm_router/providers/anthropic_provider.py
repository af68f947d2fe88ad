"""Anthropic provider implementation using the abstraction layer."""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..schemas import ChatMessage, CompletionOptions, ConversationContext
from .base import (
    CONNECTION_TEST_TIMEOUT,
    BaseLLMProvider,
    CompletionResult,
    ProviderConfig,
    ProviderError,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class AnthropicProvider(BaseLLMProvider):
    """Anthropic Messages API provider."""

    DEFAULT_BASE_URL = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"

    def __init__(self, config: ProviderConfig):
        """Initialize Anthropic provider.

        Args:
            config: Provider configuration. API keys from ANTHROPIC_API_KEY_1..3.
        """
        super().__init__(config)
        self._base_url = config.base_url or self.DEFAULT_BASE_URL

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "x-api-key": api_key,
            "anthropic-version": self.API_VERSION,
            "Content-Type": "application/json",
        }

    @staticmethod
    def _split_system(messages: Sequence[ChatMessage]) -> Tuple[str, List[Dict[str, str]]]:
        """Anthropic takes system instructions as a separate field."""
        system_parts = [m.content for m in messages if m.role == "system"]
        conversation = [
            {"role": m.role, "content": m.content}
            for m in messages
            if m.role != "system"
        ]
        return "\n\n".join(system_parts), conversation

    async def generate_response(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[CompletionOptions] = None,
        context: Optional[ConversationContext] = None,
    ) -> CompletionResult:
        """Generate a response using the Messages API.

        Args:
            messages: Ordered conversation messages.
            options: Optional per-request overrides.
            context: Optional context carrying a system prompt.

        Returns:
            CompletionResult with content and usage info.

        Raises:
            ProviderError: If the request fails on every API key.
        """
        prepared = self._prepare_messages(messages, context)
        model, max_tokens, temperature = self._resolve_options(options)
        timeout = self._request_timeout(options)
        system, conversation = self._split_system(prepared)
        if not conversation:
            raise ProviderError(
                "Conversation has no user or assistant messages",
                self.provider_name,
                recoverable=False,
            )

        payload: Dict[str, Any] = {
            "model": model,
            "messages": conversation,
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if system:
            payload["system"] = system

        async def _call(api_key: str, key_index: int) -> CompletionResult:
            logger.info(f"[{self.provider_name}] Generating response with {len(prepared)} messages")
            data = await self._make_request(
                "POST",
                f"{self._base_url}/messages",
                headers=self._headers(api_key),
                payload=payload,
                timeout=timeout,
            )
            return self._parse_response(data, model, key_index)

        return await self._with_key_rotation(_call)

    def _parse_response(self, data: Dict[str, Any], model: str, key_index: int) -> CompletionResult:
        blocks = data.get("content") or []
        content = "".join(
            block.get("text", "") for block in blocks if block.get("type") == "text"
        )
        if not blocks:
            raise ProviderError("Empty response content", self.provider_name)

        usage = data.get("usage") or {}
        input_tokens = usage.get("input_tokens", 0)
        output_tokens = usage.get("output_tokens", 0)

        return CompletionResult(
            content=content,
            model=data.get("model", model),
            provider=self.provider_name,
            usage=TokenUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
            finish_reason=data.get("stop_reason"),
            api_key_index_used=key_index,
        )

    async def test_connection(self) -> bool:
        """Send a tiny message with the current key."""
        if not self.api_keys:
            return False
        try:
            await self._make_request(
                "POST",
                f"{self._base_url}/messages",
                headers=self._headers(self.api_keys[self.current_key_index]),
                payload={
                    "model": self.config.model,
                    "max_tokens": 10,
                    "messages": [{"role": "user", "content": "Hi"}],
                },
                timeout=CONNECTION_TEST_TIMEOUT,
            )
            return True
        except ProviderError as e:
            logger.warning(f"[{self.provider_name}] Connection test failed: {e}")
            return False
