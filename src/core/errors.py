"""Error taxonomy of the realtime layer."""


class RealtimeError(Exception):
    """Base class for every realtime layer error."""


class ConnectError(RealtimeError):
    """
    The connection could not be established.
    `rejected` is True when the broker refused the credential,
    False when the broker was simply unreachable.
    """

    def __init__(self, message: str, rejected: bool = False):
        super().__init__(message)
        self.rejected = rejected


class TransportDropError(RealtimeError):
    """An established transport was lost."""


class NotConnectedError(RealtimeError):
    """Operation attempted while the connection is not usable."""


class DecodeError(RealtimeError):
    """Inbound frame or payload could not be decoded."""
