"""OpenAI provider implementation using the abstraction layer."""

import logging
from typing import Any, Dict, Optional, Sequence

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


class OpenAIProvider(BaseLLMProvider):
    """OpenAI chat completions provider.

    Any backend speaking the OpenAI chat completions wire format can be used
    by pointing ``OPENAI_BASE_URL`` at it.
    """

    DEFAULT_BASE_URL = "https://api.openai.com/v1"

    def __init__(self, config: ProviderConfig):
        """Initialize OpenAI provider.

        Args:
            config: Provider configuration. API keys from OPENAI_API_KEY_1..3.
        """
        super().__init__(config)
        self._base_url = config.base_url or self.DEFAULT_BASE_URL

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    async def generate_response(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[CompletionOptions] = None,
        context: Optional[ConversationContext] = None,
    ) -> CompletionResult:
        """Generate a response using the chat completions API.

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

        payload = {
            "model": model,
            "messages": [{"role": m.role, "content": m.content} for m in prepared],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "presence_penalty": 0.1,
            "frequency_penalty": 0.1,
        }

        async def _call(api_key: str, key_index: int) -> CompletionResult:
            logger.info(f"[{self.provider_name}] Generating response with {len(prepared)} messages")
            data = await self._make_request(
                "POST",
                f"{self._base_url}/chat/completions",
                headers=self._headers(api_key),
                payload=payload,
                timeout=timeout,
            )
            return self._parse_response(data, model, key_index)

        return await self._with_key_rotation(_call)

    def _parse_response(self, data: Dict[str, Any], model: str, key_index: int) -> CompletionResult:
        try:
            choice = data["choices"][0]
            content = choice["message"].get("content") or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                f"Unexpected response format: {e}",
                self.provider_name,
            ) from e

        usage = data.get("usage") or {}
        prompt_tokens = usage.get("prompt_tokens", 0)
        completion_tokens = usage.get("completion_tokens", 0)

        return CompletionResult(
            content=content,
            model=data.get("model", model),
            provider=self.provider_name,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=usage.get("total_tokens", prompt_tokens + completion_tokens),
            ),
            finish_reason=choice.get("finish_reason"),
            api_key_index_used=key_index,
        )

    async def test_connection(self) -> bool:
        """List models with the current key to validate it."""
        if not self.api_keys:
            return False
        try:
            await self._make_request(
                "GET",
                f"{self._base_url}/models",
                headers=self._headers(self.api_keys[self.current_key_index]),
                timeout=CONNECTION_TEST_TIMEOUT,
            )
            return True
        except ProviderError as e:
            logger.warning(f"[{self.provider_name}] Connection test failed: {e}")
            return False
