"""
Optional reply hints.

When a reply cannot be resolved by the grammar, Claude may be asked which
option the patient most likely meant. The answer only phrases the
re-prompt ("Did you mean option 2?"); it never selects or books a slot.
"""

import asyncio
import logging
import re
from typing import Optional, Sequence

from followup.config import settings
from followup.core.scheduling.messages import MessageComposer
from followup.core.scheduling.types import CandidateSlot
from followup.infra.claude import ClaudeClient, ClaudeClientError, get_claude_client

logger = logging.getLogger(__name__)

HINT_SYSTEM_PROMPT = (
    "A patient was offered numbered appointment times and replied. "
    "Answer with the single option number they most likely meant, "
    "or NONE if you cannot tell. Answer with the number or NONE only."
)


class ReplyHintProvider:
    """Suggests an option number for an unresolved reply."""

    def __init__(
        self,
        client: Optional[ClaudeClient] = None,
        composer: Optional[MessageComposer] = None,
        enabled: Optional[bool] = None,
        timeout: Optional[float] = None,
    ):
        self._client = client
        self.timeout = timeout or settings.capability_timeout_seconds
        self.composer = composer or MessageComposer()
        if enabled is None:
            enabled = settings.reply_hints_enabled and bool(settings.anthropic_api_key)
        self.enabled = enabled

    def _get_client(self) -> ClaudeClient:
        if self._client is None:
            self._client = get_claude_client()
        return self._client

    async def suggest(self, body: str, slots: Sequence[CandidateSlot]) -> Optional[int]:
        """Best-guess ordinal for ``body``, or None.

        Never raises; a failed or unusable answer is "no hint".
        """
        if not self.enabled or not slots:
            return None

        prompt = (
            f"Options:\n{self.composer.format_slots(slots)}\n\n"
            f"Patient reply: {body.strip()[:500]}"
        )
        try:
            response = await asyncio.wait_for(
                self._get_client().generate(
                    prompt=prompt,
                    system_prompt=HINT_SYSTEM_PROMPT,
                    max_tokens=8,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Reply hint timed out after {self.timeout}s")
            return None
        except (ClaudeClientError, ValueError) as e:
            logger.warning(f"Reply hint unavailable: {e}")
            return None

        match = re.search(r"\d+", response.content)
        if not match:
            return None

        ordinal = int(match.group())
        if ordinal not in {slot.ordinal for slot in slots}:
            logger.debug(f"Discarding hint {ordinal}: not a proposed option")
            return None
        return ordinal


# Singleton
_provider: Optional[ReplyHintProvider] = None


def get_reply_hint_provider() -> ReplyHintProvider:
    """Get singleton ReplyHintProvider."""
    global _provider
    if _provider is None:
        _provider = ReplyHintProvider()
    return _provider
