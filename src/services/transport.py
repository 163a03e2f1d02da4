"""
Transport session towards the broker.
Owns one physical SockJS transport at a time (native WebSocket, or HTTP
streaming as a fallback) and reconnects it after unexpected closures.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from src.config.settings import settings
from src.core.errors import ConnectError, DecodeError, NotConnectedError, TransportDropError
from src.core.sockjs import (
    SockJSFrameType,
    decode_sockjs_frame,
    encode_sockjs_messages,
    session_url,
    to_websocket_url,
)

logger = logging.getLogger(__name__)

CredentialProvider = Callable[[], Optional[str]]


class ITransport(ABC):
    """
    One physical connection to the broker.
    Carries text payloads (STOMP frames), SockJS framing is handled inside.
    """

    @abstractmethod
    async def send(self, text: str) -> None:
        """Writes one payload. Raises TransportDropError if the connection is gone."""
        pass

    @abstractmethod
    def messages(self) -> AsyncGenerator[str, None]:
        """
        Yields inbound payloads in arrival order.
        Ends when the transport is closed locally, raises TransportDropError
        when the broker or the network closes it.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Closes the connection. Safe to call more than once."""
        pass


TransportFactory = Callable[[str, Dict[str, str]], Awaitable[ITransport]]


class ITransportListener(ABC):
    """Receives the transport session events. Called on the event loop, never concurrently."""

    @abstractmethod
    def on_open(self) -> None:
        """A physical transport has just been opened."""
        pass

    @abstractmethod
    def on_message(self, text: str) -> None:
        """A payload arrived on the open transport."""
        pass

    @abstractmethod
    def on_drop(self, error: Exception) -> None:
        """The transport was lost (or could not be opened); a reconnect is scheduled."""
        pass


def _unpack(raw: str) -> List[str]:
    """Extracts the payloads of a SockJS frame."""
    try:
        frame = decode_sockjs_frame(raw)
    except DecodeError as e:
        logger.warning("Dropping SockJS frame: %s", e)
        return []

    if frame.kind is SockJSFrameType.CLOSE:
        raise TransportDropError(f"Closed by broker: {frame.close_code} {frame.close_reason}")
    return frame.messages


def _as_text(data: str | bytes) -> str:
    return data.decode("utf-8") if isinstance(data, bytes) else data


class WebSocketTransport(ITransport):
    """SockJS over a native WebSocket."""

    def __init__(self, connection: ClientConnection) -> None:
        self._connection = connection

    @classmethod
    async def open(cls, url: str, headers: Dict[str, str]) -> "WebSocketTransport":
        """Connects and waits for the SockJS open frame."""
        endpoint = to_websocket_url(session_url(url)) + "/websocket"
        try:
            connection = await connect(
                endpoint, additional_headers=headers, open_timeout=settings.connect_timeout
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise ConnectError(f"WebSocket connect to {endpoint} failed: {e}") from e

        try:
            raw = await asyncio.wait_for(connection.recv(), settings.connect_timeout)
            first = decode_sockjs_frame(_as_text(raw))
        except (asyncio.TimeoutError, ConnectionClosed, DecodeError) as e:
            await connection.close()
            raise ConnectError(f"No SockJS open frame from {endpoint}: {e}") from e

        if first.kind is not SockJSFrameType.OPEN:
            await connection.close()
            raise ConnectError(f"Unexpected SockJS frame from {endpoint}: {first.kind.name}")

        logger.debug("WebSocket transport open on %s", endpoint)
        return cls(connection)

    async def send(self, text: str) -> None:
        try:
            await self._connection.send(encode_sockjs_messages(text))
        except ConnectionClosed as e:
            raise TransportDropError(f"WebSocket closed: {e}") from e

    async def messages(self) -> AsyncGenerator[str, None]:
        try:
            async for data in self._connection:
                for payload in _unpack(_as_text(data)):
                    yield payload
        except ConnectionClosed as e:
            raise TransportDropError(f"WebSocket closed: {e}") from e

    async def close(self) -> None:
        await self._connection.close()


class XhrStreamingTransport(ITransport):
    """
    SockJS HTTP fallback.
    Inbound frames come on a streamed POST, outbound ones are POSTed to xhr_send.
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response, endpoint: str) -> None:
        self._client = client
        self._response = response
        self._endpoint = endpoint
        self._lines = response.aiter_lines()

    @classmethod
    async def open(
        cls,
        url: str,
        headers: Dict[str, str],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "XhrStreamingTransport":
        """
        Starts the stream and waits for the SockJS open frame.
        `transport` overrides the httpx network layer.
        """
        endpoint = session_url(url)
        client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(settings.connect_timeout, read=None),
            transport=transport,
        )
        try:
            request = client.build_request("POST", f"{endpoint}/xhr_streaming")
            response = await client.send(request, stream=True)
        except httpx.HTTPError as e:
            await client.aclose()
            raise ConnectError(f"XHR streaming to {endpoint} failed: {e}") from e

        transport = cls(client, response, endpoint)
        try:
            response.raise_for_status()
            await asyncio.wait_for(transport._await_open(), settings.connect_timeout)
        except (httpx.HTTPError, asyncio.TimeoutError, DecodeError, TransportDropError) as e:
            await transport.close()
            raise ConnectError(f"XHR streaming to {endpoint} did not open: {e}") from e

        logger.debug("XHR streaming transport open on %s", endpoint)
        return transport

    async def _await_open(self) -> None:
        while True:
            line = await anext(self._lines, None)
            if line is None:
                raise TransportDropError("Stream ended before the open frame")
            if not line.strip():
                continue
            frame = decode_sockjs_frame(line)
            if frame.kind is SockJSFrameType.OPEN:
                return
            if frame.kind is SockJSFrameType.CLOSE:
                raise TransportDropError(f"Closed by broker: {frame.close_code} {frame.close_reason}")
            # 'h' prelude, keep reading

    async def send(self, text: str) -> None:
        try:
            response = await self._client.post(
                f"{self._endpoint}/xhr_send",
                content=encode_sockjs_messages(text),
                headers={"Content-Type": "text/plain;charset=UTF-8"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportDropError(f"xhr_send failed: {e}") from e

    async def messages(self) -> AsyncGenerator[str, None]:
        try:
            async for line in self._lines:
                if not line.strip():
                    continue
                for payload in _unpack(line):
                    yield payload
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise TransportDropError(f"XHR stream interrupted: {e}") from e

    async def close(self) -> None:
        await self._response.aclose()
        await self._client.aclose()


TRANSPORTS: Dict[str, TransportFactory] = {
    "websocket": WebSocketTransport.open,
    "xhr_streaming": XhrStreamingTransport.open,
}


def resolve_transports(names: str) -> List[TransportFactory]:
    """Maps a comma separated list of transport names to their factories, in order."""
    factories = []
    for name in (n.strip() for n in names.split(",")):
        if not name:
            continue
        if name not in TRANSPORTS:
            raise ValueError(f"Unknown transport: {name}")
        factories.append(TRANSPORTS[name])
    return factories


class TransportSession:
    """
    Keeps one transport open towards the broker.

    After an unexpected closure the session waits `reconnect_delay` seconds and
    opens a new transport, forever, until stop() or close() is called.
    """

    def __init__(
        self,
        listener: ITransportListener,
        transports: Optional[List[TransportFactory]] = None,
        reconnect_delay: Optional[float] = None,
    ) -> None:
        self._listener = listener
        self._factories = transports if transports is not None else resolve_transports(settings.transports)
        self._reconnect_delay = settings.reconnect_delay if reconnect_delay is None else reconnect_delay

        self._url = ""
        self._credential_provider: Optional[CredentialProvider] = None

        self._transport: Optional[ITransport] = None
        self._outbox: Optional[asyncio.Queue[str]] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._first_attempt: Optional[asyncio.Future[None]] = None

        self._stopped = False
        self._closed = False
        self.reconnect_attempts = 0

    @property
    def is_open(self) -> bool:
        """True while a physical transport is open and usable."""
        return self._transport is not None and not self._stopped

    async def open(self, url: str, credential_provider: CredentialProvider) -> None:
        """
        Starts the session.
        Returns once the first transport is open. Raises ConnectError if the first
        attempt fails, in which case the session keeps retrying in the background.
        """
        if self._stopped:
            raise ConnectError("Transport session is closed")
        if self._task is not None:
            raise RuntimeError("Transport session already opened")

        self._url = url
        self._credential_provider = credential_provider
        self._first_attempt = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run())

        await asyncio.shield(self._first_attempt)

    def write(self, text: str) -> None:
        """Queues a payload on the open transport without waiting for it to be sent."""
        if self._outbox is None or not self.is_open:
            raise NotConnectedError("No open transport")
        self._outbox.put_nowait(text)

    def stop(self) -> None:
        """
        Stops reconnecting.
        The current transport is closed once the frame being handled returns.
        """
        if not self._stopped:
            logger.info("Transport session stopped, no further reconnects")
            self._stopped = True

    async def restart(self) -> None:
        """Closes the current transport, the session then reconnects as after a drop."""
        if self._transport is not None:
            logger.info("Restarting transport")
            await self._transport.close()

    async def close(self) -> None:
        """Flushes pending writes, closes the transport and ends the reconnect loop."""
        if self._closed:
            return
        self._closed = True
        self._stopped = True

        if self._outbox is not None and self._transport is not None:
            try:
                await asyncio.wait_for(self._outbox.join(), timeout=1.0)
            except asyncio.TimeoutError:
                logger.debug("Pending writes dropped on close")

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Transport session closed")

    async def _run(self) -> None:
        try:
            while not self._stopped:
                try:
                    transport = await self._connect()
                except ConnectError as e:
                    logger.warning("Connect attempt failed: %s", e)
                    self._settle_first_attempt(e)
                    self._notify(self._listener.on_drop, e)
                else:
                    self.reconnect_attempts = 0
                    self._settle_first_attempt(None)
                    error = await self._pump(transport)
                    if not self._stopped:
                        logger.warning("Transport lost: %s", error)
                        self._notify(self._listener.on_drop, error)

                if self._stopped:
                    break

                self.reconnect_attempts += 1
                logger.info(
                    "Reconnecting in %.1fs (attempt %d)", self._reconnect_delay, self.reconnect_attempts
                )
                await asyncio.sleep(self._reconnect_delay)
        finally:
            self._settle_first_attempt(ConnectError("Transport session closed"))
            logger.debug("Transport session loop terminated")

    async def _connect(self) -> ITransport:
        headers: Dict[str, str] = {}
        # Asked on every attempt so that a rotated credential is picked up
        credential = self._credential_provider() if self._credential_provider else None
        if credential:
            headers["Authorization"] = f"Bearer {credential}"

        errors = []
        for factory in self._factories:
            try:
                return await factory(self._url, headers)
            except ConnectError as e:
                logger.debug("Transport unavailable: %s", e)
                errors.append(str(e))

        raise ConnectError("All transports failed: " + ("; ".join(errors) or "none configured"))

    async def _pump(self, transport: ITransport) -> Exception:
        outbox: asyncio.Queue[str] = asyncio.Queue()
        self._transport, self._outbox = transport, outbox
        writer = asyncio.create_task(self._write_loop(transport, outbox))

        error: Exception = TransportDropError("Transport closed")
        messages = transport.messages()
        try:
            self._notify(self._listener.on_open)
            async for text in messages:
                if self._stopped:
                    break
                self._notify(self._listener.on_message, text)
                if self._stopped:
                    break
        except TransportDropError as e:
            error = e
        finally:
            self._transport = None
            self._outbox = None

            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

            await messages.aclose()
            try:
                await transport.close()
            # pylint: disable=broad-exception-caught
            except Exception as e:
                logger.debug("Error while closing transport: %s", e)

        return error

    async def _write_loop(self, transport: ITransport, outbox: asyncio.Queue[str]) -> None:
        while True:
            text = await outbox.get()
            try:
                await transport.send(text)
            except TransportDropError as e:
                logger.warning("Write failed, restarting transport: %s", e)
                await transport.close()
                return
            finally:
                outbox.task_done()

    def _settle_first_attempt(self, error: Optional[Exception]) -> None:
        if self._first_attempt is None or self._first_attempt.done():
            return
        if error is None:
            self._first_attempt.set_result(None)
        else:
            self._first_attempt.set_exception(error)

    @staticmethod
    def _notify(callback: Callable[..., None], *args: object) -> None:
        try:
            callback(*args)
        # pylint: disable=broad-exception-caught
        except Exception as e:
            logger.exception("Transport listener failed: %s", e)
