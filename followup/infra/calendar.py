"""
HTTP client for the provider calendar.

Exposes the two calendar capabilities the coordinator consumes:
- list busy intervals in a range
- create an event

Unlike a best-effort lookup, failures are raised, not swallowed: the
coordinator owns the retry-then-escalate policy.
"""

import logging
from typing import Optional

import httpx

from followup.config import get_settings
from followup.core.errors import CalendarUnavailable, RaceLost, ValidationError
from followup.core.scheduling.types import TimeInterval

logger = logging.getLogger(__name__)


class CalendarClient:
    """
    HTTP client for the calendar provider API.

    Endpoints:
    - GET /api/calendars/{id}/busy?start=&end= - Busy intervals
    - POST /api/calendars/{id}/events - Create event (409 on overlap)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        calendar_id: Optional[str] = None,
        timeout: float = 30.0,
    ):
        """Initialize client.

        Args:
            base_url: Calendar API base URL (defaults to settings)
            api_key: Bearer token (defaults to settings)
            calendar_id: Provider calendar (defaults to settings)
            timeout: Request timeout in seconds
        """
        settings = get_settings()
        self.base_url = base_url or settings.calendar_api_url
        self.api_key = api_key if api_key is not None else settings.calendar_api_key
        self.calendar_id = calendar_id or settings.calendar_id
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

    async def list_busy_intervals(
        self,
        window: TimeInterval,
        calendar_id: Optional[str] = None,
    ) -> list[TimeInterval]:
        """List busy blocks overlapping a window.

        Args:
            window: Range to query
            calendar_id: Calendar to query (defaults to the configured one)

        Returns:
            Busy intervals (unsorted, may overlap)

        Raises:
            CalendarUnavailable: On transport, auth, quota or server errors
        """
        client = await self._get_client()
        calendar_id = calendar_id or self.calendar_id

        try:
            response = await client.get(
                f"/api/calendars/{calendar_id}/busy",
                params={"start": window.start.isoformat(), "end": window.end.isoformat()},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Busy lookup failed: {e}")
            raise CalendarUnavailable(str(e)) from e

        if response.status_code != 200:
            raise CalendarUnavailable(f"busy lookup returned {response.status_code}")

        data = response.json()
        items = data if isinstance(data, list) else data.get("busy", data.get("items", []))

        busy = []
        for item in items:
            try:
                busy.append(TimeInterval.from_dict(item))
            except (KeyError, ValidationError) as e:
                logger.warning(f"Skipping malformed busy interval {item!r}: {e}")
        return busy

    async def create_event(
        self,
        interval: TimeInterval,
        summary_text: str,
        idempotency_key: Optional[str] = None,
        calendar_id: Optional[str] = None,
    ) -> str:
        """Create a calendar event.

        Args:
            interval: Event time
            summary_text: Event title/summary
            idempotency_key: Lets the provider collapse retried creates
            calendar_id: Calendar to write (defaults to the configured one)

        Returns:
            Calendar event ID

        Raises:
            RaceLost: Provider rejected the event as overlapping
            CalendarUnavailable: On transport, auth, quota or server errors
        """
        client = await self._get_client()
        calendar_id = calendar_id or self.calendar_id

        payload = {
            "start": interval.start.isoformat(),
            "end": interval.end.isoformat(),
            "summary": summary_text,
        }
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}

        try:
            response = await client.post(
                f"/api/calendars/{calendar_id}/events",
                json=payload,
                headers=headers,
            )
        except httpx.HTTPError as e:
            logger.warning(f"Event creation failed: {e}")
            raise CalendarUnavailable(str(e)) from e

        if response.status_code == 409:
            raise RaceLost(f"Calendar rejected overlapping event at {interval.start.isoformat()}")
        if response.status_code not in (200, 201):
            raise CalendarUnavailable(f"event creation returned {response.status_code}")

        data = response.json()
        event_id = data.get("event_id", data.get("id"))
        if not event_id:
            raise CalendarUnavailable("event creation response had no event id")
        return str(event_id)


# Singleton
_client: Optional[CalendarClient] = None


def get_calendar_client() -> CalendarClient:
    """Get singleton CalendarClient."""
    global _client
    if _client is None:
        _client = CalendarClient()
    return _client
