"""Session-scoped publish/subscribe channel for progress and task events."""

import asyncio
import logging
from typing import Any, Optional

from pydantic import BaseModel

from wizard.api.models import ChannelMessage
from wizard.config import load_settings


class Subscription:
    """One observer's mailbox.

    Messages are queued in publish order. The queue is bounded; when it is
    full new messages are dropped for this observer only.
    """

    def __init__(self, session_id: Optional[str], all_sessions: bool, maxsize: int):
        self.session_id = session_id
        self.all_sessions = all_sessions
        self.queue: asyncio.Queue[ChannelMessage] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def matches(self, message: ChannelMessage) -> bool:
        if self.all_sessions or message.session_id is None:
            return True
        return message.session_id == self.session_id

    async def get(self) -> ChannelMessage:
        return await self.queue.get()

    def get_nowait(self) -> ChannelMessage:
        return self.queue.get_nowait()

    def offer(self, message: ChannelMessage) -> bool:
        """Queue a message without blocking. Returns False if it was dropped."""
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        return True

    def drain(self) -> list[ChannelMessage]:
        """Return everything queued so far without waiting."""
        messages = []
        while not self.queue.empty():
            messages.append(self.queue.get_nowait())
        return messages


class ProgressChannel:
    """Singleton event fan-out.

    publish() never blocks and never raises on delivery problems: there is
    no delivery guarantee and no replay buffer. A message tagged with a
    session id reaches only that session's observers (and all-session
    observers such as the callback reporter); untagged messages reach
    everyone.
    """

    _instance: Optional["ProgressChannel"] = None

    def __new__(cls, *args, **kwargs):
        """Implement singleton pattern."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self, queue_size: Optional[int] = None):
        if self._initialized:
            return

        self.logger = logging.getLogger("wizard.progress")
        self.queue_size = queue_size or load_settings().event_queue_size
        self._subscriptions: list[Subscription] = []
        self._initialized = True

    def subscribe(self, session_id: Optional[str] = None, all_sessions: bool = False) -> Subscription:
        subscription = Subscription(session_id, all_sessions, self.queue_size)
        self._subscriptions.append(subscription)
        self.logger.debug(f"Observer subscribed (session={session_id}, all={all_sessions})")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            self.logger.debug(f"Observer unsubscribed (session={subscription.session_id})")

    @property
    def observer_count(self) -> int:
        return len(self._subscriptions)

    def publish(
        self,
        event: str,
        data: BaseModel | dict[str, Any],
        session_id: Optional[str] = None,
    ) -> int:
        """Broadcast an event to matching observers.

        Returns:
            Number of observers the message was queued for
        """
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json", by_alias=True, exclude_none=True)
        message = ChannelMessage(event=event, data=data, session_id=session_id)

        delivered = 0
        for subscription in list(self._subscriptions):
            if not subscription.matches(message):
                continue
            if subscription.offer(message):
                delivered += 1
            else:
                self.logger.warning(
                    f"Observer queue full, dropped {event} (session={subscription.session_id})"
                )
        return delivered
