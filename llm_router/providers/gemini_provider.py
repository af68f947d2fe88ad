"""Google Gemini provider implementation using the abstraction layer."""

import logging
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ..schemas import ChatMessage, CompletionOptions, ConversationContext
from .base import (
    CONNECTION_TEST_TIMEOUT,
    AuthenticationError,
    BaseLLMProvider,
    CompletionResult,
    ProviderConfig,
    ProviderError,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class GeminiProvider(BaseLLMProvider):
    """Gemini generateContent provider.

    The API key travels as a query parameter rather than a header.
    """

    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    SAFETY_CATEGORIES = [
        "HARM_CATEGORY_HARASSMENT",
        "HARM_CATEGORY_HATE_SPEECH",
        "HARM_CATEGORY_SEXUALLY_EXPLICIT",
        "HARM_CATEGORY_DANGEROUS_CONTENT",
    ]

    def __init__(self, config: ProviderConfig):
        """Initialize Gemini provider.

        Args:
            config: Provider configuration. API keys from GEMINI_API_KEY_1..3.
        """
        super().__init__(config)
        self._base_url = config.base_url or self.DEFAULT_BASE_URL

    def _build_payload(
        self,
        messages: Sequence[ChatMessage],
        max_tokens: int,
        temperature: float,
    ) -> Dict[str, Any]:
        system_parts = [{"text": m.content} for m in messages if m.role == "system"]
        contents: List[Dict[str, Any]] = [
            {
                "role": "model" if m.role == "assistant" else "user",
                "parts": [{"text": m.content}],
            }
            for m in messages
            if m.role != "system"
        ]

        payload: Dict[str, Any] = {
            "contents": contents,
            "generationConfig": {
                "temperature": temperature,
                "topP": 0.95,
                "topK": 64,
                "maxOutputTokens": max_tokens,
            },
            "safetySettings": [
                {"category": category, "threshold": "BLOCK_NONE"}
                for category in self.SAFETY_CATEGORIES
            ],
        }
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        return payload

    async def generate_response(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[CompletionOptions] = None,
        context: Optional[ConversationContext] = None,
    ) -> CompletionResult:
        """Generate a response using the generateContent API.

        Args:
            messages: Ordered conversation messages.
            options: Optional per-request overrides.
            context: Optional context carrying a system prompt.

        Returns:
            CompletionResult with content and usage info.

        Raises:
            ProviderError: If the request fails on every API key, or the
                response is blocked or empty.
        """
        prepared = self._prepare_messages(messages, context)
        model, max_tokens, temperature = self._resolve_options(options)
        timeout = self._request_timeout(options)
        payload = self._build_payload(prepared, max_tokens, temperature)
        if not payload["contents"]:
            raise ProviderError(
                "Conversation has no user or assistant messages",
                self.provider_name,
                recoverable=False,
            )

        async def _call(api_key: str, key_index: int) -> CompletionResult:
            logger.info(f"[{self.provider_name}] Generating response with {len(prepared)} messages")
            data = await self._make_request(
                "POST",
                f"{self._base_url}/models/{model}:generateContent",
                headers={"Content-Type": "application/json"},
                payload=payload,
                params={"key": api_key},
                timeout=timeout,
            )
            return self._parse_response(data, model, key_index)

        return await self._with_key_rotation(_call)

    def _parse_response(self, data: Dict[str, Any], model: str, key_index: int) -> CompletionResult:
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise ProviderError(
                f"Response blocked by safety filters: {block_reason}",
                self.provider_name,
                recoverable=False,
            )

        candidates = data.get("candidates") or []
        if not candidates:
            raise ProviderError("No response candidates", self.provider_name)

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts).strip()
        if not text:
            raise ProviderError("Empty response", self.provider_name)

        usage = data.get("usageMetadata") or {}
        finish_reason = candidate.get("finishReason")

        return CompletionResult(
            content=text,
            model=model,
            provider=self.provider_name,
            usage=TokenUsage(
                prompt_tokens=usage.get("promptTokenCount", 0),
                completion_tokens=usage.get("candidatesTokenCount", 0),
                total_tokens=usage.get("totalTokenCount", 0),
            ),
            finish_reason=finish_reason.lower() if finish_reason else None,
            api_key_index_used=key_index,
        )

    def _classify_http_error(self, response: httpx.Response) -> ProviderError:
        # Gemini reports bad keys as 400 with an API_KEY_INVALID reason
        if response.status_code == 400 and "API_KEY_INVALID" in response.text:
            return AuthenticationError(
                f"Invalid {self.provider_name} API key",
                self.provider_name,
                status_code=400,
            )
        return super()._classify_http_error(response)

    async def test_connection(self) -> bool:
        """Fetch the configured model's metadata with the current key."""
        if not self.api_keys:
            return False
        try:
            await self._make_request(
                "GET",
                f"{self._base_url}/models/{self.config.model}",
                params={"key": self.api_keys[self.current_key_index]},
                timeout=CONNECTION_TEST_TIMEOUT,
            )
            return True
        except ProviderError as e:
            logger.warning(f"[{self.provider_name}] Connection test failed: {e}")
            return False
