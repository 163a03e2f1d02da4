"""Global node settings"""

from typing import Any

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Centralized configuration.
    Reads configs from env variables.
    """

    app_name: str = "Party Realtime Node"
    server_port: int = 8000

    # SockJS endpoint exposed by the broker
    broker_url: str = "http://localhost:8080/ws"
    transports: str = "websocket,xhr_streaming"

    reconnect_delay: float = 5.0
    connect_timeout: float = 10.0

    # STOMP heart-beat, in milliseconds
    heartbeat_outgoing: int = 4000
    heartbeat_incoming: int = 4000

    # None keeps the whole history in memory
    chat_history_limit: int | None = None
    notification_history_limit: int | None = None

    default_sender_name: str = "User"

    db_name: str | None = None

    credential: str | None = None

    model_config = {"env_file": ".env"}


settings = Settings()

# Default for per-instance overrides: use the value configured above
FROM_SETTINGS: Any = object()
