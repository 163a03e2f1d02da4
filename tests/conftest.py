"""
Shared fakes for the realtime tests.
FakeBroker speaks just enough STOMP to drive the client over in-memory transports.
"""

# pylint: disable=redefined-outer-name

import asyncio
import itertools
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import jwt
import pytest

from src.core.errors import ConnectError, TransportDropError
from src.core.frames import Frame, FrameDecoder
from src.services.stomp import StompClient
from src.services.transport import ITransport

TEST_SECRET = "test-secret-key-that-is-long-enough-for-hs256"
BROKER_URL = "http://broker.test/ws"

_CLOSED = object()


def make_token(user_id: Optional[int] = 7, first_name: Optional[str] = "Bruno", **claims: Any) -> str:
    """Signed JWT carrying the marketplace claims."""
    payload: Dict[str, Any] = dict(claims)
    if user_id is not None:
        payload["userId"] = user_id
    if first_name is not None:
        payload["firstName"] = first_name
    return jwt.encode(payload, TEST_SECRET, algorithm="HS256")


class FakeTransport(ITransport):
    """In-memory transport. Outbound frames go to the broker (if any), inbound ones are queued."""

    def __init__(self, broker: Optional["FakeBroker"] = None, headers: Optional[Dict[str, str]] = None):
        self.broker = broker
        self.headers = headers or {}
        self.inbound: asyncio.Queue[Any] = asyncio.Queue()
        self.decoder = FrameDecoder()
        self.subscriptions: Dict[str, str] = {}
        self.sent: List[str] = []
        self.closed = False

    async def send(self, text: str) -> None:
        if self.closed:
            raise TransportDropError("fake transport closed")
        self.sent.append(text)
        if self.broker is not None:
            for frame in self.decoder.feed(text):
                self.broker.handle(self, frame)

    async def messages(self) -> AsyncGenerator[str, None]:
        while True:
            item = await self.inbound.get()
            if item is _CLOSED:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.inbound.put_nowait(_CLOSED)

    def deliver(self, text: str) -> None:
        """Queues an inbound payload."""
        self.inbound.put_nowait(text)

    def drop(self) -> None:
        """Simulates the network losing the connection."""
        self.closed = True
        self.inbound.put_nowait(TransportDropError("simulated network drop"))


class FakeBroker:
    """
    Answers CONNECT, tracks SUBSCRIBE/UNSUBSCRIBE per transport and echoes
    chat sends to the room topic, like the marketplace broker.
    """

    def __init__(self) -> None:
        self.transports: List[FakeTransport] = []
        self.frames: List[Frame] = []
        self.reject_with: Optional[str] = None
        self.unreachable = False
        self.silent = False
        self.heartbeat = "0,0"
        self._message_ids = itertools.count()

    async def factory(self, url: str, headers: Dict[str, str]) -> FakeTransport:
        """TransportFactory handed to the session."""
        if self.unreachable:
            raise ConnectError(f"{url} unreachable")
        transport = FakeTransport(self, dict(headers))
        self.transports.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.transports[-1]

    def frames_of(self, command: str) -> List[Frame]:
        return [frame for frame in self.frames if frame.command == command]

    def handle(self, transport: FakeTransport, frame: Frame) -> None:
        self.frames.append(frame)

        if frame.command == "CONNECT":
            if self.silent:
                return
            if self.reject_with is not None:
                transport.deliver(Frame("ERROR", {"message": self.reject_with}, "Access denied").encode())
            else:
                transport.deliver(Frame("CONNECTED", {"version": "1.2", "heart-beat": self.heartbeat}).encode())
        elif frame.command == "SUBSCRIBE":
            transport.subscriptions[frame.headers["id"]] = frame.headers["destination"]
        elif frame.command == "UNSUBSCRIBE":
            transport.subscriptions.pop(frame.headers["id"], None)
        elif frame.command == "SEND":
            destination = frame.headers["destination"]
            if destination.startswith("/app/chat.sendMessage/"):
                room_id = destination.rsplit("/", 1)[1]
                self.emit(f"/topic/chat/{room_id}", frame.body)

    def emit(self, destination: str, body: str) -> int:
        """Sends a MESSAGE to every open transport subscribed to `destination`."""
        delivered = 0
        for transport in self.transports:
            if transport.closed:
                continue
            for subscription_id, subscribed in transport.subscriptions.items():
                if subscribed == destination:
                    headers = {
                        "destination": destination,
                        "subscription": subscription_id,
                        "message-id": str(next(self._message_ids)),
                    }
                    transport.deliver(Frame("MESSAGE", headers, body).encode())
                    delivered += 1
        return delivered


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Polls a condition on the running loop."""
    return _wait_until


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def token() -> str:
    return make_token()


@pytest.fixture
def token_factory() -> Callable[..., str]:
    """Builds tokens with custom claims."""
    return make_token


@pytest.fixture
def make_client(broker: FakeBroker) -> Callable[..., StompClient]:
    """Builds StompClients wired to the fake broker, with fast reconnects and no heart-beat."""

    def factory(credential: Optional[str] = None, **kwargs: Any) -> StompClient:
        kwargs.setdefault("heartbeat", (0, 0))
        kwargs.setdefault("reconnect_delay", 0.01)
        kwargs.setdefault("connect_timeout", 1.0)
        return StompClient(BROKER_URL, credential or make_token(), transports=[broker.factory], **kwargs)

    return factory
