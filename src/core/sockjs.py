"""
SockJS framing and endpoint layout.

The broker exposes a SockJS endpoint. Every transport session lives under
`{base}/{server_id}/{session_id}/{transport}` and exchanges these frames:

    o                   session opened
    h                   heartbeat
    a["m1","m2"]        array of messages
    m"m1"               single message
    c[3000,"Go away!"]  session closed
"""

import json
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from src.core.errors import DecodeError


class SockJSFrameType(Enum):
    """SockJS frame kinds, keyed by their leading character."""

    OPEN = "o"
    HEARTBEAT = "h"
    MESSAGES = "a"
    MESSAGE = "m"
    CLOSE = "c"


@dataclass
class SockJSFrame:
    """A decoded SockJS frame."""

    kind: SockJSFrameType
    messages: List[str] = field(default_factory=list)
    close_code: Optional[int] = None
    close_reason: str = ""


def decode_sockjs_frame(raw: str) -> SockJSFrame:
    """
    Decodes a SockJS frame.
    Raises DecodeError for unknown frame types or invalid JSON content.
    """
    raw = raw.strip()
    if not raw:
        raise DecodeError("Empty SockJS frame")

    try:
        kind = SockJSFrameType(raw[0])
    except ValueError as e:
        raise DecodeError(f"Unknown SockJS frame type: {raw[0]!r}") from e

    # The streaming prelude is a run of 'h', anything after the type is ignored
    if kind in (SockJSFrameType.OPEN, SockJSFrameType.HEARTBEAT):
        return SockJSFrame(kind=kind)

    try:
        content = json.loads(raw[1:])
    except json.JSONDecodeError as e:
        raise DecodeError(f"Invalid SockJS payload: {e}") from e

    if kind is SockJSFrameType.MESSAGES:
        if not isinstance(content, list) or not all(isinstance(m, str) for m in content):
            raise DecodeError("SockJS message array must contain strings")
        return SockJSFrame(kind=kind, messages=content)

    if kind is SockJSFrameType.MESSAGE:
        if not isinstance(content, str):
            raise DecodeError("SockJS message must be a string")
        return SockJSFrame(kind=kind, messages=[content])

    if not isinstance(content, list) or len(content) != 2:
        raise DecodeError("SockJS close frame must be [code, reason]")
    try:
        code = int(content[0])
    except (TypeError, ValueError) as e:
        raise DecodeError(f"Invalid SockJS close code: {content[0]!r}") from e
    return SockJSFrame(kind=kind, close_code=code, close_reason=str(content[1]))


def encode_sockjs_messages(*payloads: str) -> str:
    """Outbound messages are sent as a JSON array of strings."""
    return json.dumps(list(payloads))


def session_url(base_url: str) -> str:
    """Builds a fresh `{base}/{server_id}/{session_id}` session path."""
    server_id = f"{secrets.randbelow(1000):03d}"
    session_id = secrets.token_hex(8)
    return f"{base_url.rstrip('/')}/{server_id}/{session_id}"


def to_websocket_url(http_url: str) -> str:
    """Maps an http(s) endpoint onto its ws(s) counterpart."""
    if http_url.startswith("https://"):
        return "wss://" + http_url[len("https://") :]
    if http_url.startswith("http://"):
        return "ws://" + http_url[len("http://") :]
    return http_url
