"""
Messaging Service

Sends patient-facing text over the conversational channel (SMS or
WhatsApp through the provider's HTTP API).

Provider error codes are mapped onto the coordinator's taxonomy:
- channel_window_closed -> ChannelWindowClosed (not retryable)
- unreachable / invalid_recipient / opted_out -> PatientUnreachable
- anything else, including transport errors -> MessagingFailure (retryable)
"""

import logging
from typing import Optional

import httpx

from followup.config import get_settings
from followup.core.errors import ChannelWindowClosed, MessagingFailure, PatientUnreachable
from followup.core.identity import PatientIdentity

logger = logging.getLogger(__name__)

UNREACHABLE_CODES = frozenset({"unreachable", "invalid_recipient", "opted_out", "blocked"})
WINDOW_CLOSED_CODES = frozenset({"channel_window_closed", "outside_session_window"})


def _mask(identity: PatientIdentity) -> str:
    """Last four digits only; handles are PHI."""
    digits = identity.digits
    return f"***{digits[-4:]}" if len(digits) >= 4 else "***"


class MessagingClient:
    """
    HTTP client for the messaging provider.

    Endpoint:
    - POST /api/messages {"to", "body"} -> {"message_id"}
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 30.0,
    ):
        """Initialize client.

        Args:
            base_url: Messaging API base URL (defaults to settings)
            api_key: Bearer token (defaults to settings)
            timeout: Request timeout in seconds
        """
        settings = get_settings()
        self.base_url = base_url or settings.messaging_api_url
        self.api_key = api_key if api_key is not None else settings.messaging_api_key
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send_message(self, identity: PatientIdentity, text: str) -> str:
        """Send a message to a patient.

        Args:
            identity: Normalized patient handle
            text: Message body

        Returns:
            Provider message ID

        Raises:
            ChannelWindowClosed: Provider refuses to deliver outside the window
            PatientUnreachable: Handle cannot receive messages
            MessagingFailure: Transport or provider error (retryable)
        """
        client = await self._get_client()

        try:
            response = await client.post(
                "/api/messages",
                json={"to": str(identity), "body": text},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Message to {_mask(identity)} failed: {e}")
            raise MessagingFailure(str(e)) from e

        if response.status_code in (200, 201, 202):
            data = response.json()
            message_id = str(data.get("message_id", data.get("id", "")))
            logger.info(f"Message sent to {_mask(identity)} ({message_id})")
            return message_id

        code = ""
        try:
            code = str(response.json().get("code", "")).lower()
        except ValueError:
            pass

        if code in WINDOW_CLOSED_CODES:
            raise ChannelWindowClosed(f"window closed for {_mask(identity)}")
        if code in UNREACHABLE_CODES:
            raise PatientUnreachable(f"{code} for {_mask(identity)}")
        raise MessagingFailure(f"provider returned {response.status_code} {code}".strip())


# Singleton
_client: Optional[MessagingClient] = None


def get_messaging_client() -> MessagingClient:
    """Get singleton MessagingClient."""
    global _client
    if _client is None:
        _client = MessagingClient()
    return _client
