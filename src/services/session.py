"""
Session controller, owns the authenticated state of the node and
everything hanging off it: the protocol client and its channels.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from src.config.settings import settings
from src.core.auth_models import Claims, decode_credential
from src.core.errors import ConnectError, DecodeError, NotConnectedError
from src.core.states import ConnectionState, LifecycleEvent, SessionState
from src.services.chat import ChatChannel
from src.services.notifications import NotificationChannel
from src.services.stomp import IProtocolClient, StompClient
from src.services.storage import StorageService

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], IProtocolClient]


def default_client_factory(credential: str) -> IProtocolClient:
    """Builds a STOMP client towards the configured broker."""
    return StompClient(settings.broker_url, credential)


class ISessionService(ABC):
    """
    Abstract Interface for the session management service.
    Defines the contract for login, logout and channel ownership.
    """

    @property
    @abstractmethod
    def state(self) -> SessionState:
        """Returns the current authentication state"""
        pass

    @property
    @abstractmethod
    def client(self) -> Optional[IProtocolClient]:
        """Returns the live protocol client (if logged in)"""
        pass

    @property
    @abstractmethod
    def claims(self) -> Optional[Claims]:
        """Returns the decoded identity of the logged in user"""
        pass

    @property
    @abstractmethod
    def notifications(self) -> Optional[NotificationChannel]:
        """Returns the notification channel of the session (if logged in)"""
        pass

    @abstractmethod
    def is_authenticated(self) -> bool:
        """Checks if a user is logged in"""
        pass

    @abstractmethod
    async def login(self, credential: str) -> None:
        """
        Authenticates with a bearer credential.
        Creates the connection and the notification channel.
        """
        pass

    @abstractmethod
    async def logout(self) -> None:
        """
        Closes the connection and discards the credential
        together with every channel state.
        """
        pass

    @abstractmethod
    def join_room(self, room_id: str) -> ChatChannel:
        """Returns the chat channel of a room, mounting it if needed"""
        pass

    @abstractmethod
    def leave_room(self, room_id: str) -> bool:
        """Unmounts a room's chat channel"""
        pass

    @abstractmethod
    def rooms(self) -> List[str]:
        """Rooms with a mounted chat channel"""
        pass


class LocalSessionService(ISessionService):
    """
    Single-user session of the node.
    At most one protocol client is alive at any time.
    """

    def __init__(
        self,
        storage: Optional[StorageService] = None,
        client_factory: ClientFactory = default_client_factory,
    ) -> None:
        self._storage = storage
        self._client_factory = client_factory

        self._state = SessionState.ANONYMOUS
        self._credential: Optional[str] = None
        self._claims: Optional[Claims] = None
        self._client: Optional[IProtocolClient] = None
        self._notifications: Optional[NotificationChannel] = None
        self._rooms: Dict[str, ChatChannel] = {}
        self._invalidation: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def client(self) -> Optional[IProtocolClient]:
        return self._client

    @property
    def claims(self) -> Optional[Claims]:
        return self._claims

    @property
    def notifications(self) -> Optional[NotificationChannel]:
        return self._notifications

    @property
    def credential(self) -> Optional[str]:
        return self._credential

    def is_authenticated(self) -> bool:
        return self._state is SessionState.AUTHENTICATED

    async def login(self, credential: str) -> None:
        """
        Logs in. Calling it again with the same credential is a no-op;
        a different credential replaces the connection.
        Raises DecodeError for a malformed token, ConnectError if the broker rejects it.
        A login replaced by a newer one while still handshaking returns quietly.
        """
        claims = decode_credential(credential)

        if self.is_authenticated() and self._client is not None:
            if credential == self._credential:
                logger.debug("Already logged in, keeping the current connection")
                return
            logger.info("Credential changed, recreating the connection")
            await self.logout()

        logger.info("Logging in user %s", claims.user_id)
        if self._storage:
            self._storage.save_credential(credential)

        self._credential = credential
        self._claims = claims
        self._state = SessionState.AUTHENTICATED

        client = self._client_factory(credential)
        client.add_listener(LifecycleEvent.STATE, self._watch_client(client))
        self._client = client

        self._notifications = NotificationChannel(client)
        self._notifications.mount()

        try:
            await client.connect()
        except ConnectError as e:
            if client is self._client:
                logger.warning("Login rejected by the broker: %s", e)
                await self.logout()
                raise
            # A newer login replaced this connection while it was handshaking
            if e.rejected:
                raise
            logger.info("Login for user %s superseded by a newer one", claims.user_id)

    async def logout(self) -> None:
        """Idempotent."""
        if self._state is SessionState.ANONYMOUS and self._client is None:
            return
        await self._teardown()
        if self._storage:
            self._storage.clear_credential()
        logger.info("Logged out")

    async def restore(self) -> None:
        """Logs in with the configured or stored credential, if there is one."""
        credential = settings.credential or (self._storage.load_credential() if self._storage else None)
        if not credential:
            return

        logger.info("Restoring session from saved credential")
        try:
            await self.login(credential)
        except (DecodeError, ConnectError) as e:
            logger.warning("Session restore failed: %s", e)

    async def shutdown(self) -> None:
        """Closes the connection but keeps the stored credential for the next start."""
        logger.info("Shutting down session...")
        await self._teardown()

    def join_room(self, room_id: str) -> ChatChannel:
        if not self.is_authenticated() or self._client is None:
            raise NotConnectedError("Not logged in")

        channel = self._rooms.get(room_id)
        if channel is None:
            channel = ChatChannel(self._client, room_id, lambda: self._credential)
            channel.mount()
            self._rooms[room_id] = channel
        return channel

    def leave_room(self, room_id: str) -> bool:
        channel = self._rooms.pop(room_id, None)
        if channel is None:
            return False
        channel.unmount()
        return True

    def get_room(self, room_id: str) -> Optional[ChatChannel]:
        """Returns the room's chat channel without joining it."""
        return self._rooms.get(room_id)

    def rooms(self) -> List[str]:
        return list(self._rooms)

    async def _teardown(self) -> None:
        for channel in self._rooms.values():
            channel.unmount()
        self._rooms = {}

        if self._notifications is not None:
            self._notifications.unmount()
            self._notifications.clear()
            self._notifications = None

        client, self._client = self._client, None
        if client is not None:
            await client.close()

        self._credential = None
        self._claims = None
        self._state = SessionState.ANONYMOUS

    def _watch_client(self, client: IProtocolClient) -> Callable[[ConnectionState, ConnectionState], None]:
        def on_state(_old: ConnectionState, new: ConnectionState) -> None:
            # A rejected credential invalidates the whole session
            if new is ConnectionState.ERROR and client is self._client:
                self._invalidation = asyncio.create_task(self._invalidate(client))

        return on_state

    async def _invalidate(self, client: IProtocolClient) -> None:
        if client is self._client:
            logger.warning("Credential rejected by the broker, logging out")
            await self.logout()


session_service = LocalSessionService(
    storage=StorageService(settings.db_name) if settings.db_name else None,
)
