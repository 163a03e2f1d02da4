"""
Chat channel: one booking room's message stream and send path.
"""

import json
import logging
from collections import deque
from enum import Enum
from typing import Callable, Deque, List, Optional

from pydantic import BaseModel, ValidationError

from src.config.settings import FROM_SETTINGS, settings
from src.core.auth_models import decode_credential
from src.core.errors import DecodeError, NotConnectedError
from src.core.frames import Frame
from src.core.message import ChatMessage, app_destination, room_destination
from src.services.stomp import IProtocolClient, Subscription

logger = logging.getLogger(__name__)

MessageListener = Callable[[ChatMessage], None]


class SendError(Enum):
    """Reasons a message was not sent."""

    NOT_CONNECTED = "NOT_CONNECTED"
    EMPTY_CONTENT = "EMPTY_CONTENT"
    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"


class SendResult(BaseModel):
    """Outcome of ChatChannel.send(). A failed send is never retried or queued."""

    sent: bool
    error: Optional[SendError] = None
    detail: Optional[str] = None


def parse_chat_message(frame: Frame) -> ChatMessage:
    """Parses a MESSAGE frame body. Raises DecodeError."""
    try:
        return ChatMessage.model_validate(json.loads(frame.body))
    except (json.JSONDecodeError, ValidationError) as e:
        raise DecodeError(f"Invalid chat message: {e}") from e


class ChatChannel:
    """
    Subscribes to a room and keeps its messages in arrival order.

    Sent messages are not appended locally: they show up once the broker
    echoes them back on the room topic.
    """

    def __init__(
        self,
        client: IProtocolClient,
        room_id: str,
        credential_provider: Callable[[], Optional[str]],
        history_limit: Optional[int] = FROM_SETTINGS,
    ) -> None:
        self.client = client
        self.room_id = room_id
        self._credential_provider = credential_provider
        limit = settings.chat_history_limit if history_limit is FROM_SETTINGS else history_limit
        self._messages: Deque[ChatMessage] = deque(maxlen=limit)
        self._listeners: List[MessageListener] = []
        self._unmount_listeners: List[Callable[[], None]] = []
        self._subscription: Optional[Subscription] = None
        self.error: Optional[str] = None

    @property
    def messages(self) -> List[ChatMessage]:
        """Received messages, oldest first."""
        return list(self._messages)

    @property
    def is_connected(self) -> bool:
        return self.client.is_connected

    @property
    def is_mounted(self) -> bool:
        return self._subscription is not None and self._subscription.active

    def mount(self) -> None:
        """Subscribes to the room topic."""
        if self.is_mounted:
            return
        self._subscription = self.client.subscribe(room_destination(self.room_id), self._on_frame)
        logger.info("Joined room %s", self.room_id)

    def unmount(self) -> None:
        """Unsubscribes. Other channels on the same connection are unaffected."""
        if self._subscription is None:
            return
        self._subscription.unsubscribe()
        self._subscription = None
        logger.info("Left room %s", self.room_id)

        for listener in list(self._unmount_listeners):
            listener()

    def add_listener(self, listener: MessageListener) -> Callable[[], None]:
        """Calls `listener` for each new message. Returns a function removing it."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def add_unmount_listener(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Calls `listener` once the channel is unmounted. Returns a function removing it."""
        self._unmount_listeners.append(listener)

        def remove() -> None:
            if listener in self._unmount_listeners:
                self._unmount_listeners.remove(listener)

        return remove

    def send(self, content: str) -> SendResult:
        """
        Publishes a message to the room.
        Never raises: failures are returned and kept in `error`.
        """
        if not content.strip():
            return self._failed(SendError.EMPTY_CONTENT, "Message is empty.")
        if not self.client.is_connected:
            return self._failed(SendError.NOT_CONNECTED, "Cannot send message: not connected.")

        credential = self._credential_provider()
        if not credential:
            return self._failed(SendError.INVALID_CREDENTIAL, "No credential available.")
        try:
            claims = decode_credential(credential)
        except DecodeError as e:
            return self._failed(SendError.INVALID_CREDENTIAL, f"Failed to send message: {e}")

        message = ChatMessage(
            sender_id=claims.sender_id,
            sender_name=claims.display_name(settings.default_sender_name),
            content=content,
        )
        try:
            self.client.publish(app_destination(self.room_id), message.model_dump_json(by_alias=True))
        except NotConnectedError as e:
            return self._failed(SendError.NOT_CONNECTED, str(e))

        self.error = None
        return SendResult(sent=True)

    def _failed(self, error: SendError, detail: str) -> SendResult:
        logger.warning("Message not sent to room %s: %s", self.room_id, detail)
        self.error = detail
        return SendResult(sent=False, error=error, detail=detail)

    def _on_frame(self, frame: Frame) -> None:
        try:
            message = parse_chat_message(frame)
        except DecodeError as e:
            logger.warning("Dropping frame on room %s: %s", self.room_id, e)
            return

        self._messages.append(message)
        for listener in list(self._listeners):
            listener(message)
