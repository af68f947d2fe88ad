"""Provider abstraction layer for LLM providers.

This module defines the base interface that all LLM providers must implement,
the shared result types, and the error taxonomy used to drive fallback.
Every provider rotates through its configured API keys on failure.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from ..schemas import ChatMessage, CompletionOptions, ConversationContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Bound for availability checks and connection tests, in seconds
CONNECTION_TEST_TIMEOUT = 5.0

# How long an availability check result is trusted, in seconds
AVAILABILITY_TTL = 60.0


class ProviderIdentity(str, Enum):
    """Closed set of supported provider backends.

    Declaration order is the tie-breaker when priority weights are equal.
    """
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    HUGGINGFACE = "huggingface"
    OLLAMA = "ollama"


class ErrorKind(Enum):
    """Kind of provider failure."""
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    UPSTREAM = "upstream"
    ALL_FAILED = "all_failed"


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for a provider."""

    identity: ProviderIdentity
    model: str
    api_keys: Tuple[str, ...] = ()
    max_tokens: int = 150
    temperature: float = 0.7
    timeout_ms: int = 30000
    priority: int = 1
    base_url: Optional[str] = None
    enabled: bool = True

    @property
    def timeout(self) -> float:
        """Request timeout in seconds."""
        return self.timeout_ms / 1000.0


@dataclass
class TokenUsage:
    """Token accounting for one completion."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class CompletionResult:
    """Unified response format from all providers."""

    content: str
    model: str
    provider: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    finish_reason: Optional[str] = None
    processing_time_ms: float = 0.0
    api_key_index_used: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "content": self.content,
            "usage": {
                "prompt_tokens": self.usage.prompt_tokens,
                "completion_tokens": self.usage.completion_tokens,
                "total_tokens": self.usage.total_tokens,
            },
            "model": self.model,
            "provider": self.provider,
            "finish_reason": self.finish_reason,
            "processing_time_ms": self.processing_time_ms,
            "api_key_index_used": self.api_key_index_used,
        }


class ProviderError(Exception):
    """Base exception for provider errors."""

    kind = ErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        provider: str,
        recoverable: bool = True,
        status_code: Optional[int] = None,
    ):
        """Initialize the error.

        Args:
            message: Error message.
            provider: Name of the provider that raised the error.
            recoverable: Whether retrying later could succeed.
            status_code: HTTP status returned by the backend, if any.
        """
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.recoverable = recoverable
        self.status_code = status_code
        # Number of API keys tried before this error surfaced
        self.attempts = 1


class RateLimitError(ProviderError):
    """Raised when a provider rate limits the request or its quota is spent."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: str,
        provider: str,
        retry_after: Optional[int] = None,
        status_code: Optional[int] = 429,
    ):
        """Initialize the rate limit error.

        Args:
            message: Error message.
            provider: Name of the provider.
            retry_after: Seconds to wait before retrying, if provided.
            status_code: 429 for rate limits, 402 for exhausted quota.
        """
        super().__init__(message, provider, recoverable=True, status_code=status_code)
        self.retry_after = retry_after


class AuthenticationError(ProviderError):
    """Raised when provider authentication fails."""

    kind = ErrorKind.AUTHENTICATION

    def __init__(self, message: str, provider: str, status_code: Optional[int] = 401):
        super().__init__(message, provider, recoverable=False, status_code=status_code)


class ProviderTimeoutError(ProviderError):
    """Raised when a request exceeds its time bound."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, provider: str):
        super().__init__(message, provider, recoverable=True)


class ProviderUnavailableError(ProviderError):
    """Raised when a provider has no usable credentials or cannot be reached."""

    kind = ErrorKind.UNAVAILABLE

    def __init__(self, message: str, provider: str):
        super().__init__(message, provider, recoverable=True, status_code=503)


def _parse_retry_after(response: httpx.Response) -> Optional[int]:
    retry_after = response.headers.get("Retry-After")
    if retry_after and retry_after.isdigit():
        return int(retry_after)
    return None


def _should_rotate_key(exception: BaseException) -> bool:
    """Rate limits saturate the whole provider; every other failure moves to the next key.

    Cancellation is not a failure and ends the attempt loop.
    """
    if not isinstance(exception, Exception):
        return False
    return not isinstance(exception, RateLimitError)


class BaseLLMProvider(ABC):
    """Base abstract class for all LLM providers.

    All providers must inherit from this class and implement the required methods.
    This enables the registry pattern and makes providers interchangeable.
    """

    # Vendor error codes that mean the account is out of quota
    QUOTA_ERROR_CODES = frozenset({"insufficient_quota", "billing_hard_limit_reached"})

    def __init__(self, config: ProviderConfig):
        """Initialize the provider with configuration.

        Args:
            config: Provider configuration including API keys and defaults.
        """
        self.config = config
        self._current_key_index = 0
        self._client: Optional[httpx.AsyncClient] = None
        # (result, monotonic time) of the last availability check
        self._availability: Optional[Tuple[bool, float]] = None

    @property
    def provider_name(self) -> str:
        """Return the unique name of this provider."""
        return self.config.identity.value

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def api_keys(self) -> Tuple[str, ...]:
        return self.config.api_keys

    @property
    def current_key_index(self) -> int:
        """Index of the API key the next request starts with."""
        return self._current_key_index

    @abstractmethod
    async def generate_response(
        self,
        messages: Sequence[ChatMessage],
        options: Optional[CompletionOptions] = None,
        context: Optional[ConversationContext] = None,
    ) -> CompletionResult:
        """Generate a response from the LLM.

        Args:
            messages: Ordered conversation messages.
            options: Per-request overrides for model, tokens, temperature and timeout.
            context: Optional conversation context carrying a system prompt.

        Returns:
            CompletionResult with content and token usage.

        Raises:
            ProviderError: If the request fails on every API key.
        """

    @abstractmethod
    async def test_connection(self) -> bool:
        """Issue a minimal real request to validate reachability and credentials."""

    async def is_available(self) -> bool:
        """Check whether the provider can take a request right now.

        Needs a configured key and a passing connection test. The test result
        is reused for AVAILABILITY_TTL seconds.
        """
        if not self.api_keys:
            return False

        now = time.monotonic()
        if self._availability is not None and now - self._availability[1] < AVAILABILITY_TTL:
            return self._availability[0]

        available = await self.test_connection()
        self._availability = (available, now)
        if not available:
            logger.warning(f"[{self.provider_name}] Availability check failed")
        return available

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url or "",
                timeout=self.config.timeout,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Key rotation
    # ------------------------------------------------------------------

    def rotate_api_key(self) -> bool:
        """Advance to the next API key, wrapping around.

        Returns:
            True if there was another key to rotate to.
        """
        if len(self.api_keys) > 1:
            self._current_key_index = (self._current_key_index + 1) % len(self.api_keys)
            logger.debug(
                f"[{self.provider_name}] Rotating to API key index: {self._current_key_index}"
            )
            return True
        return False

    def _rotate_before_retry(self, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.debug(
            f"[{self.provider_name}] API key {self._current_key_index} failed "
            f"(attempt {retry_state.attempt_number}/{len(self.api_keys)}): {error}"
        )
        self.rotate_api_key()

    async def _with_key_rotation(
        self,
        operation: Callable[[str, int], Awaitable[T]],
    ) -> T:
        """Run an operation, rotating API keys on failure.

        Makes at most one attempt per configured key, starting from the
        current key index. The index is kept between calls.

        Args:
            operation: Coroutine function taking ``(api_key, key_index)``.

        Returns:
            The operation's result.

        Raises:
            ProviderUnavailableError: If no API keys are configured.
            ProviderError: The last failure once all keys are spent, or a
                RateLimitError as soon as one is seen.
        """
        if not self.api_keys:
            raise ProviderUnavailableError("No API key available", self.provider_name)

        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(len(self.api_keys)),
            retry=retry_if_exception(_should_rotate_key),
            before_sleep=self._rotate_before_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    index = self._current_key_index
                    return await operation(self.api_keys[index], index)
        except ProviderError as e:
            e.attempts = attempts
            raise
        raise ProviderError("All API keys exhausted", self.provider_name)

    # ------------------------------------------------------------------
    # Request helpers
    # ------------------------------------------------------------------

    def _prepare_messages(
        self,
        messages: Sequence[ChatMessage],
        context: Optional[ConversationContext] = None,
    ) -> List[ChatMessage]:
        """Prepend the context's system prompt, if any."""
        prepared = list(messages)
        if context is not None and context.system_prompt:
            prepared.insert(0, ChatMessage(role="system", content=context.system_prompt))
        return prepared

    def _resolve_options(self, options: Optional[CompletionOptions]) -> Tuple[str, int, float]:
        """Return the model, max tokens and temperature for a request."""
        options = options or CompletionOptions()
        model = options.model or self.config.model
        max_tokens = options.max_tokens if options.max_tokens is not None else self.config.max_tokens
        temperature = (
            options.temperature if options.temperature is not None else self.config.temperature
        )
        return model, max_tokens, temperature

    def _request_timeout(self, options: Optional[CompletionOptions]) -> float:
        if options is not None and options.timeout_ms is not None:
            return options.timeout_ms / 1000.0
        return self.config.timeout

    async def _make_request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Make an HTTP request and translate failures into provider errors.

        Returns:
            Parsed JSON response.

        Raises:
            ProviderError: On HTTP error status, timeout or network failure.
        """
        client = self._get_client()
        try:
            response = await client.request(
                method,
                url,
                headers=headers,
                json=payload,
                params=params,
                timeout=timeout if timeout is not None else self.config.timeout,
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise self._classify_http_error(e.response) from e
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(f"Request timeout: {e}", self.provider_name) from e
        except httpx.RequestError as e:
            raise ProviderError(
                f"Network error: {e}",
                self.provider_name,
                recoverable=True,
            ) from e

    def _classify_http_error(self, response: httpx.Response) -> ProviderError:
        """Map an HTTP error response onto the error taxonomy."""
        status_code = response.status_code
        error_code = self._extract_error_code(response)

        if status_code in (401, 403):
            return AuthenticationError(
                f"Invalid {self.provider_name} API key",
                self.provider_name,
                status_code=status_code,
            )
        if status_code == 402 or error_code in self.QUOTA_ERROR_CODES:
            return RateLimitError(
                "Quota exceeded",
                self.provider_name,
                status_code=402,
            )
        if status_code == 429:
            retry_after = _parse_retry_after(response)
            if retry_after is not None:
                return RateLimitError(
                    f"Rate limited. Retry after {retry_after}s",
                    self.provider_name,
                    retry_after=retry_after,
                )
            return RateLimitError("Rate limited", self.provider_name)

        return ProviderError(
            f"HTTP {status_code}: {response.text}",
            self.provider_name,
            recoverable=status_code >= 500,
            status_code=status_code,
        )

    @staticmethod
    def _extract_error_code(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict) and isinstance(body.get("error"), dict):
            code = body["error"].get("code") or body["error"].get("type")
            return str(code) if code else None
        return None
