"""HTTP callback observer forwarding channel events to an external endpoint."""

import asyncio
import logging

import httpx

from wizard.api.models import ChannelMessage
from wizard.services.progress import Subscription


class ReportService:
    """Posts every channel message to a callback URL (e.g. the dashboard)."""

    def __init__(self, callback_url: str, timeout: float = 5.0):
        """Initialize report service.

        Args:
            callback_url: Full URL receiving POSTed events
            timeout: Per-request timeout in seconds
        """
        self.logger = logging.getLogger("wizard.reporter")
        self.callback_url = callback_url
        self.timeout = timeout

    async def report(self, message: ChannelMessage) -> bool:
        """Send one event.

        Returns:
            True if the endpoint accepted the event

        Note:
            Failures are logged but not raised to avoid blocking installs
        """
        payload = message.model_dump(mode="json")
        self.logger.debug(f"Reporting {message.event} to {self.callback_url}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.callback_url, json=payload)
                response.raise_for_status()
                return True
        except httpx.HTTPError as e:
            self.logger.warning(f"Failed to report {message.event}: {e}. Continuing...")
        except Exception as e:
            self.logger.error(f"Unexpected error reporting {message.event}: {e}", exc_info=True)
        return False

    async def run(self, subscription: Subscription) -> None:
        """Forward messages from a subscription until cancelled."""
        self.logger.info(f"Forwarding wizard events to {self.callback_url}")
        try:
            while True:
                message = await subscription.get()
                await self.report(message)
        except asyncio.CancelledError:
            self.logger.info("Event forwarding stopped")
            raise
