"""
Define chat and notification payloads to ensure consistency with the broker.
"""

import time

from pydantic import BaseModel, ConfigDict, Field

CHAT_TOPIC_PREFIX = "/topic/chat"
CHAT_SEND_PREFIX = "/app/chat.sendMessage"
NOTIFICATION_DESTINATION = "/user/topic/notification"


def room_destination(room_id: str) -> str:
    """Destination the broker broadcasts a room's messages on."""
    return f"{CHAT_TOPIC_PREFIX}/{room_id}"


def app_destination(room_id: str) -> str:
    """Destination a client publishes a room's messages to."""
    return f"{CHAT_SEND_PREFIX}/{room_id}"


class ChatMessage(BaseModel):
    """Chat message as exchanged with the broker (camelCase on the wire)."""

    model_config = ConfigDict(populate_by_name=True)

    sender_id: int = Field(alias="senderId")
    sender_name: str = Field(alias="senderName")
    content: str


def _now_ms() -> int:
    return int(time.time() * 1000)


class Notification(BaseModel):
    """
    User notification.
    The timestamp is set on receipt, whatever the broker sends.
    """

    message: str
    link: str
    timestamp: int = Field(default_factory=_now_ms)


class NotificationPayload(BaseModel):
    """Notification body as sent by the broker."""

    message: str
    link: str

    def received(self) -> Notification:
        """Stamps the payload with the local receipt time."""
        return Notification(message=self.message, link=self.link)
