"""
Completion provider interface.

The controller only needs complete(system, user, timeout_ms) -> text and a
timeout that is distinguishable from every other failure.
"""
import logging
from typing import Optional, Protocol

import groq

from letterbox.core.config import settings
from letterbox.core.errors import ConfigError

logger = logging.getLogger(__name__)

SUMMARY_TEMPERATURE = 0.3
SUMMARY_MAX_TOKENS = 500


class ProviderError(Exception):
    """Completion call failed."""


class ProviderTimeoutError(ProviderError):
    """Completion call exceeded its timeout."""


class CompletionProvider(Protocol):
    def complete(self, system_prompt: str, user_prompt: str, timeout_ms: int) -> str:
        """Return the completion text or raise ProviderError / ProviderTimeoutError."""
        ...


class GroqCompletionProvider:
    """Groq chat completions."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key or settings.GROQ_API_KEY
        self.model = model or settings.GROQ_MODEL
        if not self.api_key:
            raise ConfigError("GROQ_API_KEY is not configured")
        self.client = groq.Groq(api_key=self.api_key, max_retries=0)

    def complete(self, system_prompt: str, user_prompt: str, timeout_ms: int) -> str:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=SUMMARY_TEMPERATURE,
                max_tokens=SUMMARY_MAX_TOKENS,
                timeout=timeout_ms / 1000.0,
            )
        except groq.APITimeoutError as e:
            raise ProviderTimeoutError(f"Groq request timed out after {timeout_ms}ms") from e
        except groq.APIError as e:
            logger.error(f"[ai] Groq error: {e}")
            raise ProviderError(str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise ProviderError("Empty completion")
        return content.strip()


_default_provider: Optional[CompletionProvider] = None


def get_provider() -> CompletionProvider:
    """
    Process-wide provider, built on first use.

    Raises:
        ConfigError: GROQ_API_KEY missing
    """
    global _default_provider
    if _default_provider is None:
        _default_provider = GroqCompletionProvider()
    return _default_provider


def set_provider(provider: Optional[CompletionProvider]) -> None:
    """Replace the default provider (app startup, tests)."""
    global _default_provider
    _default_provider = provider
