"""
STOMP protocol client.
Frames application messages over a TransportSession, drives the connection
state machine and demultiplexes inbound MESSAGE frames to subscriptions.
"""

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from src.config.settings import settings
from src.core.errors import ConnectError, NotConnectedError
from src.core.frames import EOL, Frame, FrameDecoder
from src.core.states import ConnectionState, LifecycleEvent
from src.services.transport import ITransportListener, TransportFactory, TransportSession

logger = logging.getLogger(__name__)

Handler = Callable[[Frame], None]
LifecycleCallback = Callable[..., None]


class Subscription:
    """
    Handle on one destination.
    Channels borrow it; the client owns the underlying broker subscription.
    """

    def __init__(
        self,
        subscription_id: str,
        destination: str,
        handler: Handler,
        release: Callable[["Subscription"], None],
    ) -> None:
        self.id = subscription_id
        self.destination = destination
        self._handler = handler
        self._release = release
        self._active = True

    @property
    def active(self) -> bool:
        """False once unsubscribed, replaced or torn down with its connection."""
        return self._active

    def dispatch(self, frame: Frame) -> None:
        """Calls the handler, unless the handle is no longer active."""
        if self._active:
            self._handler(frame)

    def unsubscribe(self) -> None:
        """Stops delivery. Calling it again has no effect."""
        if not self._active:
            return
        self._active = False
        self._release(self)

    def detach(self) -> None:
        """Deactivates the handle without touching the broker subscription."""
        self._active = False


class IProtocolClient(ABC):
    """
    Abstract interface of the protocol client.
    Channels depend on this contract only.
    """

    @property
    @abstractmethod
    def state(self) -> ConnectionState:
        """Current connection state."""
        pass

    @property
    def is_connected(self) -> bool:
        """True while publishes are accepted."""
        return self.state is ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        """Consecutive failed attempts since the last successful transport open."""
        return 0

    @abstractmethod
    async def connect(self) -> ConnectionState:
        """
        Opens the connection and waits for the handshake.
        Raises ConnectError if the broker rejects the credential.
        """
        pass

    @abstractmethod
    def subscribe(self, destination: str, handler: Handler) -> Subscription:
        """Registers the only handler of a destination."""
        pass

    @abstractmethod
    def publish(self, destination: str, body: str, content_type: str = "application/json") -> None:
        """Sends a payload. Raises NotConnectedError unless connected."""
        pass

    @abstractmethod
    def add_listener(self, event: LifecycleEvent, callback: LifecycleCallback) -> Callable[[], None]:
        """Registers a lifecycle callback and returns a function removing it."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Tears the connection down for good."""
        pass


def _consume_exception(future: "asyncio.Future[None]") -> None:
    # The handshake outcome may be set after connect() stopped waiting
    if not future.cancelled():
        future.exception()


class StompClient(IProtocolClient, ITransportListener):
    """
    STOMP 1.2 client bound to one credential.

    States: DISCONNECTED -> CONNECTING -> CONNECTED -> (ERROR | DISCONNECTED),
    CONNECTED -> CONNECTING on transport drop. Subscriptions registered before the
    handshake, or before a reconnect, are (re)applied as soon as CONNECTED is received.
    A broker ERROR frame is terminal: the transport session stops retrying.
    """

    def __init__(
        self,
        url: str,
        credential: str,
        transports: Optional[List[TransportFactory]] = None,
        reconnect_delay: Optional[float] = None,
        connect_timeout: Optional[float] = None,
        heartbeat: Optional[Tuple[int, int]] = None,
    ) -> None:
        self._url = url
        self._credential = credential
        self._transports = transports
        self._reconnect_delay = reconnect_delay
        self._connect_timeout = settings.connect_timeout if connect_timeout is None else connect_timeout
        self._heartbeat = heartbeat or (settings.heartbeat_outgoing, settings.heartbeat_incoming)

        self._state = ConnectionState.DISCONNECTED
        self._session: Optional[TransportSession] = None
        self._decoder = FrameDecoder()
        self._handshake: Optional[asyncio.Future[None]] = None
        self._closed = False

        self._ids = itertools.count()
        # destination -> active handle, subscription id -> destination
        self._subscriptions: Dict[str, Subscription] = {}
        self._destinations: Dict[str, str] = {}

        self._listeners: Dict[LifecycleEvent, List[LifecycleCallback]] = {e: [] for e in LifecycleEvent}
        self._heartbeat_tasks: List[asyncio.Task[None]] = []
        self._last_received = 0.0
        self.server_version: Optional[str] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def credential(self) -> str:
        """Bearer credential of this connection, fixed for its lifetime."""
        return self._credential

    @property
    def reconnect_attempts(self) -> int:
        """Consecutive failed attempts since the last successful transport open."""
        return self._session.reconnect_attempts if self._session else 0

    @property
    def destinations(self) -> List[str]:
        """Currently registered destinations."""
        return list(self._subscriptions)

    # === Lifecycle ===

    def add_listener(self, event: LifecycleEvent, callback: LifecycleCallback) -> Callable[[], None]:
        """
        Registers a lifecycle callback.
        CONNECT callbacks get no argument, ERROR and DISCONNECT get the error
        (or None), STATE gets (old, new).
        """
        self._listeners[event].append(callback)

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        return remove

    def _emit(self, event: LifecycleEvent, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            # pylint: disable=broad-exception-caught
            except Exception as e:
                logger.exception("%s callback failed: %s", event.value, e)

    def _set_state(self, new: ConnectionState, error: Optional[Exception] = None) -> None:
        old = self._state
        if old is new:
            return
        self._state = new
        logger.info("Connection state %s -> %s", old.value, new.value)

        self._emit(LifecycleEvent.STATE, old, new)
        if new is ConnectionState.CONNECTED:
            self._emit(LifecycleEvent.CONNECT)
        elif new is ConnectionState.ERROR:
            self._emit(LifecycleEvent.ERROR, error)
        if old is ConnectionState.CONNECTED:
            self._emit(LifecycleEvent.DISCONNECT, error)

    async def connect(self) -> ConnectionState:
        """
        Starts the transport session and waits for the handshake.

        Returns the resulting state: CONNECTED, or CONNECTING when the broker is
        unreachable or slow (the session keeps retrying in the background).
        Raises ConnectError when the broker rejects the credential.
        """
        if self._closed:
            raise NotConnectedError("Client has been closed")
        if self._session is not None:
            return self._state

        self._handshake = asyncio.get_running_loop().create_future()
        self._handshake.add_done_callback(_consume_exception)
        self._set_state(ConnectionState.CONNECTING)

        self._session = TransportSession(self, self._transports, self._reconnect_delay)
        try:
            await self._session.open(self._url, lambda: self._credential)
        except ConnectError as e:
            if not self._closed:
                logger.warning("Broker unreachable, retrying in background: %s", e)
            return self._state

        try:
            await asyncio.wait_for(asyncio.shield(self._handshake), self._connect_timeout)
        except asyncio.TimeoutError:
            logger.warning("Handshake still pending after %.1fs", self._connect_timeout)

        return self._state

    async def close(self) -> None:
        """Sends DISCONNECT when possible and closes the session. Idempotent."""
        if self._closed:
            return
        self._closed = True

        if self._state is ConnectionState.CONNECTED:
            self._write(Frame("DISCONNECT"))
        self._stop_heartbeat()

        for subscription in self._subscriptions.values():
            subscription.detach()
        self._subscriptions.clear()
        self._destinations.clear()

        if self._session is not None:
            await self._session.close()

        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(ConnectError("Client closed before the handshake"))

        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Protocol client closed")

    # === Subscribe / publish ===

    def subscribe(self, destination: str, handler: Handler) -> Subscription:
        """
        Registers `handler` as the only handler of `destination`.

        Subscribing again to the same destination replaces the handler; the
        previous handle becomes inactive. While not yet connected the subscription
        is queued and applied on CONNECTED.
        """
        if self._closed or self._state is ConnectionState.ERROR:
            raise NotConnectedError(f"Cannot subscribe to {destination}: connection is {self._state.value}")

        previous = self._subscriptions.get(destination)
        if previous is not None:
            previous.detach()
            subscription = Subscription(previous.id, destination, handler, self._release)
            self._subscriptions[destination] = subscription
            logger.debug("Replaced handler on %s", destination)
            return subscription

        subscription_id = f"sub-{next(self._ids)}"
        subscription = Subscription(subscription_id, destination, handler, self._release)
        self._subscriptions[destination] = subscription
        self._destinations[subscription_id] = destination

        if self._state is ConnectionState.CONNECTED:
            self._send_subscribe(subscription)
        else:
            logger.debug("Queued subscription to %s until connected", destination)
        return subscription

    def publish(self, destination: str, body: str, content_type: str = "application/json") -> None:
        """Queues a SEND frame. No acknowledgment is awaited."""
        if self._state is not ConnectionState.CONNECTED or self._session is None:
            raise NotConnectedError(f"Cannot publish to {destination}: connection is {self._state.value}")

        frame = Frame("SEND", {"destination": destination, "content-type": content_type}, body)
        self._session.write(frame.encode())
        logger.debug("Published to %s", destination)

    def _release(self, subscription: Subscription) -> None:
        if self._subscriptions.get(subscription.destination) is not subscription:
            return
        del self._subscriptions[subscription.destination]
        self._destinations.pop(subscription.id, None)

        if self._state is ConnectionState.CONNECTED:
            self._write(Frame("UNSUBSCRIBE", {"id": subscription.id}))
        logger.debug("Unsubscribed from %s", subscription.destination)

    def _send_subscribe(self, subscription: Subscription) -> None:
        self._write(
            Frame(
                "SUBSCRIBE",
                {"id": subscription.id, "destination": subscription.destination, "ack": "auto"},
            )
        )

    def _write(self, frame: Frame) -> bool:
        if self._session is None:
            return False
        try:
            self._session.write(frame.encode())
            return True
        except NotConnectedError:
            logger.debug("Dropped %s frame, transport not open", frame.command)
            return False

    # === Transport events ===

    def on_open(self) -> None:
        self._decoder.reset()
        self._last_received = time.monotonic()

        outgoing, incoming = self._heartbeat
        connect_frame = Frame(
            "CONNECT",
            {
                "accept-version": "1.2,1.1,1.0",
                "host": urlsplit(self._url).hostname or "/",
                "heart-beat": f"{outgoing},{incoming}",
                "Authorization": f"Bearer {self._credential}",
            },
        )
        self._write(connect_frame)

    def on_message(self, text: str) -> None:
        self._last_received = time.monotonic()
        for frame in self._decoder.feed(text):
            if self._state is ConnectionState.ERROR or self._closed:
                break
            self._handle_frame(frame)

    def on_drop(self, error: Exception) -> None:
        self._stop_heartbeat()
        self._decoder.reset()

        if self._state is ConnectionState.CONNECTED:
            self._set_state(ConnectionState.CONNECTING, error)
        elif self._state is ConnectionState.CONNECTING:
            self._emit(LifecycleEvent.ERROR, error)

    def _handle_frame(self, frame: Frame) -> None:
        if frame.command == "MESSAGE":
            self._dispatch(frame)
        elif frame.command == "CONNECTED":
            self._on_connected(frame)
        elif frame.command == "ERROR":
            self._on_broker_error(frame)
        elif frame.command == "RECEIPT":
            logger.debug("Receipt %s", frame.headers.get("receipt-id"))
        else:
            logger.warning("Ignoring unexpected %s frame", frame.command)

    def _on_connected(self, frame: Frame) -> None:
        if self._state is ConnectionState.CONNECTED:
            return
        self.server_version = frame.headers.get("version")

        # Replayed before the state flips so that CONNECT callbacks see them applied
        for subscription in self._subscriptions.values():
            self._send_subscribe(subscription)

        self._set_state(ConnectionState.CONNECTED)
        self._start_heartbeat(frame.headers.get("heart-beat", "0,0"))

        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_result(None)

    def _on_broker_error(self, frame: Frame) -> None:
        message = frame.headers.get("message", "")
        logger.error("Broker error: %s %s", message, frame.body.strip())

        error = ConnectError(f"Broker rejected the connection: {message}", rejected=True)
        self._stop_heartbeat()
        if self._session is not None:
            self._session.stop()
        self._set_state(ConnectionState.ERROR, error)

        if self._handshake is not None and not self._handshake.done():
            self._handshake.set_exception(error)

    def _dispatch(self, frame: Frame) -> None:
        subscription_id = frame.headers.get("subscription")
        if subscription_id is not None:
            destination = self._destinations.get(subscription_id)
        else:
            destination = frame.headers.get("destination")

        subscription = self._subscriptions.get(destination) if destination else None
        if subscription is None:
            logger.debug("No subscription for frame on %s", frame.headers.get("destination"))
            return

        try:
            subscription.dispatch(frame)
        # pylint: disable=broad-exception-caught
        except Exception as e:
            logger.exception("Handler for %s failed: %s", destination, e)

    # === Heart-beating ===

    def _start_heartbeat(self, server_heartbeat: str) -> None:
        try:
            server_out, server_in = (int(v) for v in server_heartbeat.split(","))
        except ValueError:
            server_out, server_in = 0, 0

        outgoing, incoming = self._heartbeat
        send_every = max(outgoing, server_in) if outgoing and server_in else 0
        expect_every = max(incoming, server_out) if incoming and server_out else 0

        if send_every:
            self._heartbeat_tasks.append(asyncio.create_task(self._send_heartbeats(send_every / 1000)))
        if expect_every:
            self._heartbeat_tasks.append(asyncio.create_task(self._watch_heartbeats(expect_every / 1000)))

    def _stop_heartbeat(self) -> None:
        for task in self._heartbeat_tasks:
            task.cancel()
        self._heartbeat_tasks = []

    async def _send_heartbeats(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self._session is not None and self._session.is_open:
                self._session.write(EOL)

    async def _watch_heartbeats(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            silence = time.monotonic() - self._last_received
            if silence > 2 * interval:
                logger.warning("No data from broker for %.1fs, restarting transport", silence)
                if self._session is not None:
                    await asyncio.shield(self._session.restart())
                return
