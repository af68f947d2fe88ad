"""Hugging Face provider implementation using the abstraction layer."""

import asyncio
import logging
import re
from typing import Any, Dict, Optional, Sequence

from huggingface_hub import AsyncInferenceClient, InferenceTimeoutError

from ..schemas import ChatMessage, CompletionOptions, ConversationContext
from .base import (
    CONNECTION_TEST_TIMEOUT,
    AuthenticationError,
    BaseLLMProvider,
    CompletionResult,
    ProviderConfig,
    ProviderError,
    ProviderTimeoutError,
    RateLimitError,
    TokenUsage,
)

logger = logging.getLogger(__name__)

_ROLE_PREFIX = re.compile(r"^\s*(assistant|user|system|human)\s*:\s*", re.IGNORECASE)


def _status_code_of(error: Exception) -> Optional[int]:
    """Pull an HTTP status out of the various error shapes huggingface_hub raises."""
    response = getattr(error, "response", None)
    for candidate in (
        getattr(response, "status_code", None),
        getattr(response, "status", None),
        getattr(error, "status", None),
    ):
        if isinstance(candidate, int):
            return candidate
    return None


class HuggingFaceProvider(BaseLLMProvider):
    """Hugging Face Inference API provider implementation.

    This provider uses the Hugging Face Inference API to generate responses
    from hosted text-generation models.
    """

    def __init__(self, config: ProviderConfig):
        """Initialize HuggingFace provider.

        Args:
            config: Provider configuration. API keys from HUGGINGFACE_API_KEY_1..3.
        """
        super().__init__(config)
        self._clients: Dict[int, Any] = {}  # key index -> client for the configured model

    def _new_inference_client(self, key_index: int, model: str) -> Any:
        return AsyncInferenceClient(
            model=model,
            token=self.api_keys[key_index],
            timeout=self.config.timeout,
        )

    def _get_inference_client(self, key_index: int) -> Any:
        """Get or create the cached client for a key and the configured model."""
        if key_index not in self._clients:
            self._clients[key_index] = self._new_inference_client(key_index, self.config.model)
        return self._clients[key_index]

    async def generate_response(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[CompletionOptions] = None,
        context: Optional[ConversationContext] = None,
    ) -> CompletionResult:
        """Generate a response using HuggingFace Inference API.

        Args:
            messages: Ordered conversation messages.
            options: Optional per-request overrides.
            context: Optional context carrying a system prompt.

        Returns:
            CompletionResult with content and estimated usage.

        Raises:
            ProviderError: If the request fails on every API key.
        """
        prepared = self._prepare_messages(messages, context)
        model, max_tokens, temperature = self._resolve_options(options)
        full_prompt = self._build_prompt(prepared)
        timeout = self._request_timeout(options)

        parameters: Dict[str, Any] = {
            "max_new_tokens": max_tokens,
            "do_sample": temperature > 0,
            "top_p": 0.95,
            "repetition_penalty": 1.1,
            "return_full_text": False,
        }
        # TGI rejects a zero temperature; greedy decoding covers that case
        if temperature > 0:
            parameters["temperature"] = temperature

        async def _call(api_key: str, key_index: int) -> CompletionResult:
            logger.info(f"[{self.provider_name}] Generating response with {model}")
            # Per-request model overrides get a client that is not cached
            override = model != self.config.model
            if override:
                client = self._new_inference_client(key_index, model)
            else:
                client = self._get_inference_client(key_index)
            try:
                output = await asyncio.wait_for(
                    client.text_generation(full_prompt, **parameters),
                    timeout=timeout,
                )
            except Exception as e:
                raise self._classify_error(e, model) from e
            finally:
                if override:
                    await client.close()

            content = self._clean_response(output if isinstance(output, str) else str(output))

            # Estimate token usage (HF doesn't provide this)
            # Rough estimation: 1 token ≈ 4 characters
            prompt_tokens = len(full_prompt) // 4
            completion_tokens = len(content) // 4

            return CompletionResult(
                content=content,
                model=model,
                provider=self.provider_name,
                usage=TokenUsage(
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=prompt_tokens + completion_tokens,
                ),
                finish_reason="stop",
                api_key_index_used=key_index,
            )

        return await self._with_key_rotation(_call)

    def _classify_error(self, error: Exception, model: str) -> ProviderError:
        """Map a huggingface_hub failure onto the error taxonomy."""
        if isinstance(error, (InferenceTimeoutError, asyncio.TimeoutError)):
            return ProviderTimeoutError(f"Request timeout: {error}", self.provider_name)

        status_code = _status_code_of(error)
        error_msg = str(error)
        lowered = error_msg.lower()

        if status_code in (401, 403) or "unauthorized" in lowered or "authentication" in lowered:
            return AuthenticationError(
                "Invalid HuggingFace API key",
                self.provider_name,
                status_code=status_code or 401,
            )
        if status_code in (402, 429) or "rate limit" in lowered or "quota" in lowered:
            return RateLimitError(
                f"Rate limited: {error_msg}",
                self.provider_name,
                status_code=status_code or 429,
            )
        if status_code == 404 or "not found" in lowered or "does not exist" in lowered:
            return ProviderError(
                f"Model {model} not found on HuggingFace",
                self.provider_name,
                recoverable=False,
                status_code=404,
            )
        if status_code == 503:
            return ProviderError(
                "Model is loading, please try again in a few moments",
                self.provider_name,
                status_code=503,
            )
        return ProviderError(
            f"HuggingFace API error: {error_msg}",
            self.provider_name,
            recoverable=True,
            status_code=status_code,
        )

    def _build_prompt(self, messages: Sequence[ChatMessage]) -> str:
        """Build a role-labelled prompt ending with the assistant turn.

        Args:
            messages: Prepared conversation, system prompt included.

        Returns:
            Full formatted prompt string.
        """
        parts = [f"{m.role.capitalize()}: {m.content}" for m in messages]
        parts.append("Assistant:")
        return "\n\n".join(parts)

    @staticmethod
    def _clean_response(text: str) -> str:
        cleaned = _ROLE_PREFIX.sub("", text.strip())
        return re.sub(r"\n\s*\n", "\n", cleaned).strip()

    async def test_connection(self) -> bool:
        """Run a tiny generation with the current key.

        A 503 means the model is still loading but the key and model are
        valid, so it counts as reachable.
        """
        if not self.api_keys:
            return False
        client = self._get_inference_client(self.current_key_index)
        try:
            await asyncio.wait_for(
                client.text_generation("Hello", max_new_tokens=10),
                timeout=CONNECTION_TEST_TIMEOUT,
            )
            return True
        except Exception as e:
            if _status_code_of(e) == 503:
                return True
            logger.warning(f"[{self.provider_name}] Connection test failed: {e}")
            return False

    async def close(self) -> None:
        """Close the inference clients."""
        for client in self._clients.values():
            close = getattr(client, "close", None)
            if close is not None:
                await close()
        self._clients = {}
        await super().close()
