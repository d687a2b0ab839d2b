"""Single-turn LLM completion primitive.

The extraction engine owns the multi-turn conversation; a client only sends one
request and returns the text plus usage. ``AnthropicLLMClient`` adapts the
``anthropic`` SDK and converts its errors into ``ScraperError`` with an explicit
``retryable`` flag.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import anthropic

from ..config_models import AIConfiguration
from ..core.exceptions import ConfigurationError, ErrorCode, ExtractionError, ScraperError

logger = logging.getLogger(__name__)

Message = dict[str, str]


@dataclass
class LLMResponse:
    """One completion from the model."""

    text: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: Optional[str] = None
    max_tokens: Optional[int] = None


class LLMClient(Protocol):
    """Request/response primitive the extraction engine builds on."""

    async def complete(self, system_prompt: str, messages: list[Message]) -> LLMResponse:
        """Send one request with the full conversation history."""
        ...


def map_anthropic_error(exc: Exception) -> ScraperError:
    """Translate an SDK exception into the scraper error taxonomy."""
    if isinstance(exc, anthropic.RateLimitError):
        return ExtractionError(
            "Anthropic API rate limit exceeded",
            code=ErrorCode.AI_RATE_LIMIT,
            details={"error": str(exc)},
            retryable=True,
        )
    if isinstance(exc, anthropic.APIStatusError):
        status = exc.status_code
        if status >= 500:
            return ExtractionError(
                f"Anthropic API server error ({status})",
                code=ErrorCode.AI_API_ERROR,
                details={"status": status, "error": str(exc)},
                retryable=True,
            )
        return ExtractionError(
            f"Anthropic API request failed ({status})",
            code=ErrorCode.AI_API_ERROR,
            details={"status": status, "error": str(exc)},
            retryable=False,
        )
    if isinstance(exc, anthropic.APITimeoutError):
        return ExtractionError(
            "Anthropic API request timed out",
            code=ErrorCode.TIMEOUT,
            details={"error": str(exc)},
            retryable=True,
        )
    if isinstance(exc, anthropic.APIConnectionError):
        return ExtractionError(
            "Could not reach the Anthropic API",
            code=ErrorCode.NETWORK_ERROR,
            details={"error": str(exc)},
            retryable=True,
        )
    return ExtractionError(
        f"Failed to extract events: {exc}",
        code=ErrorCode.AI_API_ERROR,
        details={"error": str(exc)},
        retryable=False,
    )


class AnthropicLLMClient:
    """LLMClient backed by ``anthropic.AsyncAnthropic``.

    Retries are left to the caller's retry combinator, so the SDK's own retry
    loop is disabled.
    """

    def __init__(self, config: AIConfiguration, client: Optional[Any] = None) -> None:
        self.config = config
        if client is None:
            if not config.api_key:
                raise ConfigurationError("Anthropic API key is required")
            client = anthropic.AsyncAnthropic(
                api_key=config.api_key,
                timeout=config.request_timeout,
                max_retries=0,
            )
        self._client = client

    async def complete(self, system_prompt: str, messages: list[Message]) -> LLMResponse:
        try:
            response = await self._client.messages.create(
                model=self.config.model,
                max_tokens=self.config.max_tokens,
                temperature=self.config.temperature,
                system=system_prompt,
                messages=messages,
            )
        except anthropic.AnthropicError as e:
            error = map_anthropic_error(e)
            logger.warning("LLM request failed: %s (retryable=%s)", error.message, error.retryable)
            raise error from e

        text = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", None) == "text"
        )
        usage = getattr(response, "usage", None)
        result = LLMResponse(
            text=text,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
            stop_reason=getattr(response, "stop_reason", None),
            max_tokens=self.config.max_tokens,
        )
        logger.debug(
            "LLM response: %d chars, %d in / %d out tokens, stop_reason=%s",
            len(text),
            result.input_tokens,
            result.output_tokens,
            result.stop_reason,
        )
        return result

    async def close(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()
