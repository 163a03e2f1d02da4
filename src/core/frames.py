"""
STOMP 1.2 text framing.

A frame is `COMMAND\\nheader:value\\n...\\n\\nbody\\0`. Bare end-of-lines
between frames are heart-beats.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

from src.core.errors import DecodeError

logger = logging.getLogger(__name__)

NULL = "\0"
EOL = "\n"

# CONNECT and CONNECTED headers are never escaped (STOMP 1.2, "Value Encoding")
_UNESCAPED_COMMANDS = {"CONNECT", "CONNECTED"}

_ESCAPES = {"\\": "\\\\", "\n": "\\n", "\r": "\\r", ":": "\\c"}
_UNESCAPES = {"\\": "\\", "n": "\n", "r": "\r", "c": ":"}


def escape_header(value: str) -> str:
    """Escapes a header name or value."""
    return "".join(_ESCAPES.get(ch, ch) for ch in value)


def unescape_header(value: str) -> str:
    """Reverses escape_header. Undefined escape sequences are a decode error."""
    out = []
    chars = iter(value)
    for ch in chars:
        if ch != "\\":
            out.append(ch)
            continue
        nxt = next(chars, "")
        if nxt not in _UNESCAPES:
            raise DecodeError(f"Invalid header escape sequence: \\{nxt}")
        out.append(_UNESCAPES[nxt])
    return "".join(out)


@dataclass
class Frame:
    """One STOMP frame."""

    command: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    def encode(self) -> str:
        """Serializes the frame, adding content-length when there is a body."""
        escape = self.command not in _UNESCAPED_COMMANDS
        lines = [self.command]
        headers = dict(self.headers)
        if self.body and "content-length" not in headers:
            headers["content-length"] = str(len(self.body.encode("utf-8")))

        for name, value in headers.items():
            if escape:
                lines.append(f"{escape_header(name)}:{escape_header(value)}")
            else:
                lines.append(f"{name}:{value}")

        return EOL.join(lines) + EOL + EOL + self.body + NULL


def parse_frame(raw: str) -> Frame:
    """Parses a single frame without its terminating NULL."""
    head, sep, body = raw.partition("\n\n")
    if not sep:
        head, sep, body = raw.partition("\r\n\r\n")
    if not sep:
        raise DecodeError("Frame has no header terminator")

    lines = [line.rstrip("\r") for line in head.split("\n")]
    command = lines[0]
    if not command:
        raise DecodeError("Frame has no command")

    escape = command not in _UNESCAPED_COMMANDS
    headers: Dict[str, str] = {}
    for line in lines[1:]:
        name, colon, value = line.partition(":")
        if not colon:
            raise DecodeError(f"Malformed header line: {line!r}")
        if escape:
            name, value = unescape_header(name), unescape_header(value)
        # Repeated headers: only the first one counts
        headers.setdefault(name, value)

    return Frame(command=command, headers=headers, body=body)


class FrameDecoder:
    """
    Incremental decoder.
    Transports may split a frame across chunks or pack several in one.
    """

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, chunk: str) -> List[Frame]:
        """
        Consumes a chunk and returns every complete frame in it.
        Malformed frames are dropped and logged.
        """
        frames: List[Frame] = []
        self._buffer += chunk

        while True:
            buffered = self._buffer.lstrip("\r\n")
            end = buffered.find(NULL)
            if end == -1:
                self._buffer = buffered
                break

            raw, self._buffer = buffered[:end], buffered[end + 1 :]
            try:
                frames.append(parse_frame(raw))
            except DecodeError as e:
                logger.warning("Dropping malformed frame: %s", e)

        return frames

    def reset(self) -> None:
        """Discards any partial frame (used when the transport changes)."""
        self._buffer = ""
