"""
Claude API Client

Async Anthropic wrapper with retry and model fallback. Used only for the
optional reply hints; nothing on the booking path depends on it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from anthropic import AsyncAnthropic, APIError, RateLimitError, APIConnectionError

from followup.config import settings

logger = logging.getLogger(__name__)


class ClaudeClientError(Exception):
    """Raised when Claude API call fails."""
    pass


@dataclass
class ClaudeResponse:
    """Response from Claude API."""
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: float


class ClaudeClient:
    """
    Async Claude API client wrapper.

    Features:
    - Retries with exponential backoff on rate limits and connection errors
    - Model fallback on failure
    """

    _instance: Optional["ClaudeClient"] = None

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        fallback_model: Optional[str] = None,
    ):
        """Initialize Claude client.

        Args:
            api_key: Anthropic API key (defaults to settings)
            model: Primary model (defaults to settings.reply_hint_model)
            fallback_model: Model tried once if the primary fails
        """
        self.api_key = api_key or settings.anthropic_api_key
        if not self.api_key:
            raise ValueError("Anthropic API key is required")

        self._client = AsyncAnthropic(
            api_key=self.api_key,
            timeout=settings.capability_timeout_seconds,
        )
        self._default_model = model or settings.reply_hint_model
        self._fallback_model = fallback_model or settings.reply_hint_fallback_model

        logger.info(f"ClaudeClient initialized with model={self._default_model}")

    @classmethod
    def get_instance(cls) -> "ClaudeClient":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)."""
        cls._instance = None

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        model: Optional[str] = None,
        max_tokens: int = 64,
        use_fallback_on_error: bool = True,
    ) -> ClaudeResponse:
        """
        Generate a response from Claude.

        Args:
            prompt: User message
            system_prompt: System prompt (optional)
            model: Model to use (defaults to the hint model)
            max_tokens: Maximum tokens in response
            use_fallback_on_error: Try fallback model on failure

        Returns:
            ClaudeResponse with generated content

        Raises:
            ClaudeClientError: If API call fails after retries
        """
        model = model or self._default_model
        start_time = time.time()

        try:
            response = await self._call_with_retry(
                messages=[{"role": "user", "content": prompt}],
                system=system_prompt,
                model=model,
                max_tokens=max_tokens,
            )

            if not response.content:
                raise ClaudeClientError(f"Empty response from {model}")

            return ClaudeResponse(
                content=response.content[0].text,
                model=model,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                latency_ms=(time.time() - start_time) * 1000,
            )

        except (APIError, ClaudeClientError) as e:
            if use_fallback_on_error and model != self._fallback_model:
                logger.warning(f"Primary model failed, trying fallback: {e}")
                return await self.generate(
                    prompt=prompt,
                    system_prompt=system_prompt,
                    model=self._fallback_model,
                    max_tokens=max_tokens,
                    use_fallback_on_error=False,
                )
            raise ClaudeClientError(f"Claude API call failed: {e}") from e

    async def _call_with_retry(
        self,
        messages: list[dict],
        system: Optional[str],
        model: str,
        max_tokens: int,
        max_retries: int = 3,
    ) -> Any:
        """Call API with exponential backoff retry."""
        last_error = None

        for attempt in range(max_retries):
            try:
                kwargs: dict[str, Any] = {
                    "model": model,
                    "max_tokens": max_tokens,
                    "temperature": 0.0,
                    "messages": messages,
                }
                if system:
                    kwargs["system"] = system

                return await self._client.messages.create(**kwargs)

            except (RateLimitError, APIConnectionError) as e:
                last_error = e
                wait_time = 2 ** attempt
                logger.warning(f"Claude call failed ({type(e).__name__}), retrying in {wait_time}s")
                await asyncio.sleep(wait_time)

            except APIError as e:
                logger.error(f"API error: {e}")
                raise

        raise ClaudeClientError(f"Max retries exceeded: {last_error}")

    async def close(self) -> None:
        """Close the client."""
        await self._client.close()


def get_claude_client() -> ClaudeClient:
    """Get Claude client singleton instance."""
    return ClaudeClient.get_instance()
