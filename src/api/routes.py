"""
API Routes definition.
Exposes the session, chat rooms and notification feed to the local UI,
plus a WebSocket streaming a room in real time.
"""

import asyncio
import contextlib
import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel

from src.api.dependencies import get_current_user
from src.core.auth_models import Claims, LoginRequest
from src.core.errors import ConnectError, DecodeError, NotConnectedError
from src.core.message import ChatMessage, Notification
from src.services.chat import ChatChannel, SendError, SendResult
from src.services.session import session_service

logger = logging.getLogger(__name__)

router = APIRouter()


class SendMessageRequest(BaseModel):
    """Payload for sending a message."""

    content: str


class NotificationFeed(BaseModel):
    """Notification feed with its unread counter."""

    unread_count: int
    items: List[Notification]


_SEND_STATUS = {
    SendError.NOT_CONNECTED: status.HTTP_503_SERVICE_UNAVAILABLE,
    SendError.EMPTY_CONTENT: status.HTTP_422_UNPROCESSABLE_CONTENT,
    SendError.INVALID_CREDENTIAL: status.HTTP_401_UNAUTHORIZED,
}


def _join(room_id: str) -> ChatChannel:
    try:
        return session_service.join_room(room_id)
    except NotConnectedError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


# === PUBLIC ROUTES ===


@router.post("/login", response_model=Claims)
async def login(credentials: LoginRequest) -> Claims:
    """
    Login endpoint.
    1. Decodes the bearer credential
    2. Opens the broker connection and the notification feed
    """
    try:
        await session_service.login(credentials.token)
    except DecodeError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid credential: {e}")
    except ConnectError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Credential rejected: {e}")

    if not session_service.claims:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session was invalidated.")
    return session_service.claims


@router.post("/logout")
async def logout() -> Dict[str, str]:
    """Closes the connection and forgets the credential."""
    await session_service.logout()
    return {"status": "logged_out"}


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Returns the node and connection status"""
    client = session_service.client

    return {
        "status": "online",
        "authenticated": session_service.is_authenticated(),
        "connection": client.state.value if client else None,
        "reconnect_attempts": client.reconnect_attempts if client else 0,
    }


# === Protected routes ===


@router.get("/me", response_model=Claims)
async def get_me(current_user: Claims = Depends(get_current_user)) -> Claims:
    """Returns the current user identity"""
    return current_user


@router.get("/rooms", response_model=List[str])
async def get_rooms(current_user: Claims = Depends(get_current_user)) -> List[str]:
    """Rooms the node is currently listening to."""
    return session_service.rooms()


@router.get("/rooms/{room_id}/messages", response_model=List[ChatMessage])
async def get_messages(room_id: str, current_user: Claims = Depends(get_current_user)) -> List[ChatMessage]:
    """
    Retrieves the messages received in a room since it was joined.
    Joins the room on first access.
    """
    return _join(room_id).messages


@router.post("/rooms/{room_id}/messages", response_model=SendResult, status_code=status.HTTP_202_ACCEPTED)
async def send_message(
    room_id: str, payload: SendMessageRequest, current_user: Claims = Depends(get_current_user)
) -> SendResult:
    """
    Publishes a message to a room.
    Accepted means handed to the broker: it appears in the room once echoed back.
    """
    result = _join(room_id).send(payload.content)
    if not result.sent:
        status_code = status.HTTP_400_BAD_REQUEST
        if result.error is not None:
            status_code = _SEND_STATUS[result.error]
        raise HTTPException(status_code=status_code, detail=result.detail)
    return result


@router.delete("/rooms/{room_id}")
async def leave_room(room_id: str, current_user: Claims = Depends(get_current_user)) -> Dict[str, str]:
    """Stops listening to a room."""
    if not session_service.leave_room(room_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Room {room_id} not joined.")
    return {"status": "left", "room_id": room_id}


@router.get("/notifications", response_model=NotificationFeed)
async def get_notifications(current_user: Claims = Depends(get_current_user)) -> NotificationFeed:
    """Returns the notification feed, newest first."""
    channel = session_service.notifications
    if channel is None:
        return NotificationFeed(unread_count=0, items=[])
    return NotificationFeed(unread_count=channel.unread_count, items=channel.notifications)


@router.post("/notifications/read")
async def mark_notifications_read(current_user: Claims = Depends(get_current_user)) -> Dict[str, int]:
    """Resets the unread counter (the feed is kept)."""
    if session_service.notifications is not None:
        session_service.notifications.mark_as_read()
    return {"unread_count": 0}


@router.delete("/notifications")
async def clear_notifications(current_user: Claims = Depends(get_current_user)) -> Dict[str, str]:
    """Empties the notification feed."""
    if session_service.notifications is not None:
        session_service.notifications.clear()
    return {"status": "cleared"}


# === WebSocket Route ===


@router.websocket("/ws/{room_id}")
async def websocket_endpoint(websocket: WebSocket, room_id: str) -> None:
    """
    Real-time chat endpoint.
    Streams every message of the room to the UI and sends the text it receives.
    """
    try:
        channel = session_service.join_room(room_id)
    except NotConnectedError:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    # None marks the room as no longer mounted (left or logged out)
    queue: asyncio.Queue[Optional[ChatMessage]] = asyncio.Queue()
    remove_listener = channel.add_listener(queue.put_nowait)
    remove_unmount_listener = channel.add_unmount_listener(lambda: queue.put_nowait(None))

    async def forward() -> None:
        while True:
            message = await queue.get()
            try:
                if message is None:
                    logger.info("Room %s unmounted, closing UI socket", room_id)
                    await websocket.close(code=status.WS_1001_GOING_AWAY)
                    return
                await websocket.send_json(message.model_dump(by_alias=True))
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug("UI socket of room %s gone while forwarding: %s", room_id, e)
                return

    forwarder = asyncio.create_task(forward())
    try:
        while True:
            content = await websocket.receive_text()
            result = channel.send(content)
            if not result.sent:
                await websocket.send_json(result.model_dump(mode="json"))
    except WebSocketDisconnect:
        logger.info("UI disconnected from room %s", room_id)
    finally:
        remove_listener()
        remove_unmount_listener()
        forwarder.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await forwarder
