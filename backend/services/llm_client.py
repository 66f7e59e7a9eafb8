"""LLM Client for Groq API integration."""
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Union
from groq import AsyncGroq
from groq import RateLimitError, AuthenticationError, APIError, APITimeoutError, APIConnectionError
import logging

from config import (
    GROQ_API_KEY,
    SUPPORTED_MODELS,
    DEFAULT_MODEL,
    TEMPERATURE,
    MAX_TEMPERATURE,
    MAX_TOKENS,
    MIN_MAX_TOKENS,
    TOP_P,
)
from models.conversation import Turn, USER_ROLE, ASSISTANT_ROLE
from services.errors import ConfigurationError, ProviderError, ValidationError

logger = logging.getLogger(__name__)

ProviderMessage = Dict[str, str]


@dataclass
class GenerationOptions:
    """Generation parameters for one provider call."""
    model: str = DEFAULT_MODEL
    temperature: float = TEMPERATURE
    max_tokens: int = MAX_TOKENS
    top_p: float = TOP_P
    stop: Optional[Union[str, List[str]]] = None

    @classmethod
    def build(
        cls,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        top_p: Optional[float] = None,
        stop: Optional[Union[str, List[str]]] = None
    ) -> "GenerationOptions":
        """Fill unset parameters from configuration and validate the result."""
        options = cls(
            model=model or DEFAULT_MODEL,
            temperature=TEMPERATURE if temperature is None else temperature,
            max_tokens=MAX_TOKENS if max_tokens is None else max_tokens,
            top_p=TOP_P if top_p is None else top_p,
            stop=stop or None,
        )
        options.validate()
        return options

    def validate(self) -> None:
        if self.model not in SUPPORTED_MODELS:
            raise ValidationError(
                f"Unsupported model: {self.model}",
                details={"model": self.model, "supported": sorted(SUPPORTED_MODELS)}
            )
        if not 0 <= self.temperature <= MAX_TEMPERATURE:
            raise ValidationError(
                f"Temperature must be between 0 and {MAX_TEMPERATURE}",
                details={"temperature": self.temperature}
            )

    @property
    def effective_max_tokens(self) -> int:
        return max(self.max_tokens, MIN_MAX_TOKENS)


@dataclass
class StreamFragment:
    """One incremental piece of a streamed completion; every field may be absent."""
    content: Optional[str] = None
    finish_reason: Optional[str] = None

    @property
    def text(self) -> str:
        return self.content or ""

    @classmethod
    def from_chunk(cls, chunk: Any) -> "StreamFragment":
        """Convert a Groq stream chunk, tolerating missing choices or delta."""
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return cls()
        choice = choices[0]
        delta = getattr(choice, "delta", None)
        content = getattr(delta, "content", None) if delta is not None else None
        return cls(
            content=content if isinstance(content, str) else None,
            finish_reason=getattr(choice, "finish_reason", None),
        )


@dataclass
class LLMResponse:
    """Response from blocking LLM generation."""
    text: str
    tokens_input: int
    tokens_output: int
    latency_ms: int
    model_used: str


class LLMClient:
    """Client for interfacing with Groq API for chat completions."""

    def __init__(self, api_key: Optional[str] = None):
        """
        Initialize LLM client with Groq API key.

        Args:
            api_key: Groq API key (defaults to GROQ_API_KEY from environment)

        Raises:
            ConfigurationError: If no API key is available
        """
        self.api_key = api_key or GROQ_API_KEY
        if not self.api_key:
            raise ConfigurationError("GROQ_API_KEY must be provided or set in environment")

        self.client = AsyncGroq(api_key=self.api_key)
        logger.info("LLMClient initialized successfully")

    @staticmethod
    def build_messages(
        turns: Sequence[Turn],
        system_prompt: Optional[str] = None
    ) -> List[ProviderMessage]:
        """
        Map stored turns to the provider's role-tagged message list.

        Args:
            turns: Conversation turns, oldest first
            system_prompt: Optional instruction prepended as a system message

        Returns:
            List of {"role", "content"} dicts in the same order as ``turns``
        """
        messages: List[ProviderMessage] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})

        for turn in turns:
            role = USER_ROLE if turn.role == USER_ROLE else ASSISTANT_ROLE
            messages.append({"role": role, "content": turn.content})

        return messages

    def _request_params(self, messages: List[ProviderMessage], options: GenerationOptions, stream: bool) -> Dict[str, Any]:
        return {
            "model": options.model,
            "messages": messages,
            "temperature": options.temperature,
            "max_tokens": options.effective_max_tokens,
            "top_p": options.top_p,
            "stop": options.stop,
            "stream": stream,
        }

    async def complete(self, messages: List[ProviderMessage], options: GenerationOptions) -> LLMResponse:
        """
        Generate one completed message (blocking mode).

        Args:
            messages: Provider message list (see build_messages)
            options: Generation parameters

        Returns:
            LLMResponse with text, token counts, and latency

        Raises:
            ProviderError: Structured error with code, message, and details
        """
        start_time = time.time()

        try:
            logger.debug(f"Generating response with model: {options.model}")

            response = await self.client.chat.completions.create(
                **self._request_params(messages, options, stream=False)
            )
        except Exception as e:
            raise self._provider_error(e, options.model, start_time) from e

        latency_ms = int((time.time() - start_time) * 1000)
        if not response.choices:
            raise ProviderError(
                "Provider returned no choices",
                code="EMPTY_RESPONSE",
                details={"model": options.model, "latency_ms": latency_ms}
            )

        text = response.choices[0].message.content or ""
        usage = getattr(response, "usage", None)
        tokens_input = getattr(usage, "prompt_tokens", 0) or 0
        tokens_output = getattr(usage, "completion_tokens", 0) or 0

        logger.info(
            f"Generated response: model={options.model}, "
            f"input_tokens={tokens_input}, output_tokens={tokens_output}, "
            f"latency={latency_ms}ms"
        )

        return LLMResponse(
            text=text,
            tokens_input=tokens_input,
            tokens_output=tokens_output,
            latency_ms=latency_ms,
            model_used=options.model
        )

    async def stream(self, messages: List[ProviderMessage], options: GenerationOptions) -> AsyncIterator[StreamFragment]:
        """
        Stream a completion as StreamFragment records.

        The request is sent when iteration starts. Failures, whether on the
        initial request or mid-stream, surface as ProviderError. The provider
        response is closed whenever iteration ends, including when the
        consumer stops early and closes this generator.
        """
        start_time = time.time()
        logger.debug(f"Streaming response with model: {options.model}")

        try:
            response = await self.client.chat.completions.create(
                **self._request_params(messages, options, stream=True)
            )
            try:
                async for chunk in response:
                    yield StreamFragment.from_chunk(chunk)
            finally:
                await response.close()
        except Exception as e:
            raise self._provider_error(e, options.model, start_time) from e

        logger.info(
            f"Stream finished: model={options.model}, "
            f"latency={int((time.time() - start_time) * 1000)}ms"
        )

    def _provider_error(self, e: Exception, model: str, start_time: float) -> ProviderError:
        """Translate an SDK exception into a structured ProviderError and log it."""
        latency_ms = int((time.time() - start_time) * 1000)
        details = {
            "model": model,
            "latency_ms": latency_ms,
            "original_error": str(e)
        }

        if isinstance(e, ProviderError):
            return e
        elif isinstance(e, RateLimitError):
            details["retry_after"] = 60  # Suggest retry after 60 seconds
            error = ProviderError(
                "Rate limit exceeded. Please try again in a few moments.",
                code="RATE_LIMIT_ERROR",
                details=details
            )
        elif isinstance(e, AuthenticationError):
            error = ProviderError(
                "Authentication failed. Please check your API key.",
                code="AUTHENTICATION_ERROR",
                details=details
            )
        elif isinstance(e, APITimeoutError):
            error = ProviderError(
                "Request timed out. Please try again.",
                code="TIMEOUT_ERROR",
                details=details
            )
        elif isinstance(e, APIConnectionError):
            error = ProviderError(
                "Could not reach the Groq API. Please try again.",
                code="CONNECTION_ERROR",
                details=details
            )
        elif isinstance(e, APIError):
            error = ProviderError(
                f"Groq API error: {str(e)}",
                code="API_ERROR",
                details=details
            )
        else:
            details["error_type"] = type(e).__name__
            error = ProviderError(
                f"Unexpected error during generation: {str(e)}",
                code="UNKNOWN_ERROR",
                details=details
            )

        logger.error(
            f"{error.error.code}: model={model}, latency={latency_ms}ms, error={e}",
            exc_info=True,
            extra={"error_code": error.error.code, "error_details": error.error.details}
        )
        return error
