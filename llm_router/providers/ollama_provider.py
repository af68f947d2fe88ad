"""Ollama provider implementation for a locally hosted runtime."""

import logging
from typing import List, Optional, Sequence

import httpx

from ..schemas import ChatMessage, CompletionOptions, ConversationContext
from .base import (
    CONNECTION_TEST_TIMEOUT,
    BaseLLMProvider,
    CompletionResult,
    ProviderConfig,
    ProviderError,
    ProviderUnavailableError,
    TokenUsage,
)

logger = logging.getLogger(__name__)


class OllamaProvider(BaseLLMProvider):
    """Local Ollama runtime provider.

    Ollama needs no API key, so key rotation does not apply. The provider is
    only registered when OLLAMA_ENABLED is set.
    """

    DEFAULT_BASE_URL = "http://localhost:11434"

    ROLE_LABELS = {
        "system": "System",
        "user": "Human",
        "assistant": "Assistant",
    }

    def __init__(self, config: ProviderConfig):
        super().__init__(config)
        self._base_url = config.base_url or self.DEFAULT_BASE_URL
        self._model_available = False

    async def is_available(self) -> bool:
        """Query the local runtime and confirm the model is pulled."""
        return await self.test_connection()

    async def list_models(self) -> List[str]:
        """Return the names of models pulled into the local runtime."""
        data = await self._make_request(
            "GET",
            f"{self._base_url}/api/tags",
            timeout=CONNECTION_TEST_TIMEOUT,
        )
        return [m.get("name", "") for m in data.get("models", [])]

    async def test_connection(self) -> bool:
        try:
            models = await self.list_models()
        except ProviderError as e:
            logger.warning(f"[{self.provider_name}] Connection test failed: {e}")
            self._model_available = False
            return False

        # Pulled models carry a tag suffix such as llama3:latest
        base_name = self.config.model.split(":")[0]
        self._model_available = any(name.split(":")[0] == base_name for name in models)
        if not self._model_available:
            logger.warning(
                f"[{self.provider_name}] Model {self.config.model} not found. "
                f"Available models: {models}"
            )
        return self._model_available

    def _convert_messages_to_prompt(self, messages: Sequence[ChatMessage]) -> str:
        parts = [f"{self.ROLE_LABELS[m.role]}: {m.content}" for m in messages]
        parts.append("Assistant:")
        return "\n\n".join(parts)

    async def generate_response(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[CompletionOptions] = None,
        context: Optional[ConversationContext] = None,
    ) -> CompletionResult:
        """Generate a response from the local runtime.

        Raises:
            ProviderUnavailableError: If the runtime is not running or the
                model is not pulled.
            ProviderError: For any other failure.
        """
        if not self._model_available and not await self.test_connection():
            raise ProviderUnavailableError(
                f"Model {self.config.model} not available",
                self.provider_name,
            )

        prepared = self._prepare_messages(messages, context)
        model, max_tokens, temperature = self._resolve_options(options)

        payload = {
            "model": model,
            "prompt": self._convert_messages_to_prompt(prepared),
            "stream": False,
            "options": {
                "temperature": temperature,
                "num_predict": max_tokens,
                "top_p": 0.9,
                "top_k": 40,
            },
        }

        logger.info(f"[{self.provider_name}] Generating response with {len(prepared)} messages")
        try:
            data = await self._make_request(
                "POST",
                f"{self._base_url}/api/generate",
                payload=payload,
                timeout=self._request_timeout(options),
            )
        except ProviderError as e:
            if isinstance(e.__cause__, httpx.ConnectError):
                self._model_available = False
                raise ProviderUnavailableError(
                    "Ollama server not running. Please start Ollama first.",
                    self.provider_name,
                ) from e
            raise

        prompt_tokens = data.get("prompt_eval_count", 0)
        completion_tokens = data.get("eval_count", 0)

        return CompletionResult(
            content=data.get("response", ""),
            model=data.get("model", model),
            provider=self.provider_name,
            usage=TokenUsage(
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=prompt_tokens + completion_tokens,
            ),
            finish_reason="stop" if data.get("done") else "length",
            api_key_index_used=0,
        )
