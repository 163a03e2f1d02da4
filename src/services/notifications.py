"""
Notification channel: the per-user notification feed.
"""

import json
import logging
from collections import deque
from typing import Callable, Deque, List, Optional

from pydantic import ValidationError

from src.config.settings import FROM_SETTINGS, settings
from src.core.errors import DecodeError
from src.core.frames import Frame
from src.core.message import NOTIFICATION_DESTINATION, Notification, NotificationPayload
from src.services.stomp import IProtocolClient, Subscription

logger = logging.getLogger(__name__)

NotificationListener = Callable[[Notification], None]


def parse_notification(frame: Frame) -> Notification:
    """Parses a MESSAGE frame body and stamps it with the receipt time. Raises DecodeError."""
    try:
        payload = NotificationPayload.model_validate(json.loads(frame.body))
    except (json.JSONDecodeError, ValidationError) as e:
        raise DecodeError(f"Invalid notification: {e}") from e
    return payload.received()


class NotificationChannel:
    """
    Newest-first notification feed with an unread counter.
    The broker scopes the destination to the connection's authenticated user.
    """

    def __init__(self, client: IProtocolClient, history_limit: Optional[int] = FROM_SETTINGS) -> None:
        self.client = client
        limit = settings.notification_history_limit if history_limit is FROM_SETTINGS else history_limit
        self._feed: Deque[Notification] = deque(maxlen=limit)
        self._listeners: List[NotificationListener] = []
        self._subscription: Optional[Subscription] = None
        self.unread_count = 0

    @property
    def notifications(self) -> List[Notification]:
        """Feed, newest first."""
        return list(self._feed)

    @property
    def is_connected(self) -> bool:
        return self.client.is_connected

    def mount(self) -> None:
        """Subscribes to the current user's notification topic."""
        if self._subscription is not None and self._subscription.active:
            return
        self._subscription = self.client.subscribe(NOTIFICATION_DESTINATION, self._on_frame)

    def unmount(self) -> None:
        """Unsubscribes. Idempotent."""
        if self._subscription is None:
            return
        self._subscription.unsubscribe()
        self._subscription = None

    def add_listener(self, listener: NotificationListener) -> Callable[[], None]:
        """Calls `listener` for each new notification. Returns a function removing it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def mark_as_read(self) -> None:
        """Resets the unread counter, keeps the feed."""
        self.unread_count = 0

    def clear(self) -> None:
        """Empties the feed and resets the counter."""
        self._feed.clear()
        self.unread_count = 0

    def _on_frame(self, frame: Frame) -> None:
        try:
            notification = parse_notification(frame)
        except DecodeError as e:
            logger.warning("Dropping notification frame: %s", e)
            return

        # Counted even if the feed is currently being displayed
        self._feed.appendleft(notification)
        self.unread_count += 1
        logger.info("Notification received: %s", notification.message)

        for listener in list(self._listeners):
            listener(notification)
