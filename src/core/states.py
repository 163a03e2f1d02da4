"""
Connection and session state machines.
"""

from enum import Enum


class ConnectionState(Enum):
    """
    States of the protocol client.

    Attributes:
        DISCONNECTED: No transport, initial state and state after close().
        CONNECTING: Transport opening or handshake in flight (also while reconnecting).
        CONNECTED: Handshake accepted, subscriptions and publishes are live.
        ERROR: Handshake rejected by the broker, no automatic retry.
    """

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


class SessionState(Enum):
    """Authentication state of the node."""

    ANONYMOUS = "ANONYMOUS"
    AUTHENTICATED = "AUTHENTICATED"


class LifecycleEvent(Enum):
    """
    Events emitted by the protocol client on state transitions.

    Attributes:
        CONNECT: Entered CONNECTED.
        ERROR: Handshake rejected or connect attempt failed.
        DISCONNECT: Left CONNECTED (transport drop or close).
        STATE: Any transition, called with (old, new).
    """

    CONNECT = "CONNECT"
    ERROR = "ERROR"
    DISCONNECT = "DISCONNECT"
    STATE = "STATE"
