"""Connection gateway: the WebSocket endpoint plus presence over HTTP.

This module provides:
    - WebSocket /ws/chat: real-time sessions, rooms, messages, typing, receipts
    - GET /users/online: current presence snapshot

Protocol Flow:
    1. Client connects -> server sends {type: "connected", connectionId}
    2. Client sends {type: "join_chat", userId?}; the identity is the
       X-User-Id header the gateway set on the upgrade request
       -> everyone receives {type: "user_joined", username, userId, activeUsers}
    3. Client sends {type: "join_room", roomKey: "chat:<chatId>"}
       -> client receives {type: "room_joined", roomKey}
    4. Client sends {type: "send_message", room, text | fileUrl, ...}
       -> room (sender included) receives {type: "receive_message", ...}
    5. Client sends {type: "typing", room, isTyping}
       -> room (sender excluded) receives {type: "user_typing", ...}
    6. Client sends {type: "mark_delivered" | "mark_read", chatId, ...}
       -> client receives an ack, room receives messages_delivered/messages_read
    7. On disconnect -> everyone receives {type: "user_left", ...}

Failures are reported to the originating connection only as
{type: "error", code, error}; nothing is broadcast for a failed event.
"""
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from parley.auth.dependencies import IDENTITY_HEADER
from parley.auth.service import get_auth_oracle
from parley.config import get_config
from parley.errors import AccessDenied, ChatError, UnregisteredConnection, ValidationError

from .manager import manager
from .pipeline import string_field
from .schemas import SessionEntry

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/users/online", response_model=List[SessionEntry])
async def online_users() -> List[SessionEntry]:
    """Current session snapshot (one entry per live, joined connection)."""
    return manager.active_users()


async def _handle_join_chat(connection_id: str, data: dict, websocket: WebSocket) -> None:
    credential = websocket.headers.get(IDENTITY_HEADER)
    if not credential:
        # Refused without touching the registry; the socket stays unauthenticated.
        raise UnregisteredConnection("No identity provided")

    claimed = string_field(data, "userId")
    if claimed is not None and claimed != credential.strip():
        raise AccessDenied("userId does not match the authenticated user")

    user = await get_auth_oracle().verify(credential)
    if user is None:
        raise UnregisteredConnection("Unknown user")

    await manager.join_chat(connection_id, user.id, user.username)


async def _handle_join_room(connection_id: str, data: dict, websocket: WebSocket) -> None:
    await manager.join_room(connection_id, string_field(data, "roomKey", "room"))


async def _handle_leave_room(connection_id: str, data: dict, websocket: WebSocket) -> None:
    await manager.leave_room(connection_id, string_field(data, "roomKey", "room"))


async def _handle_send_message(connection_id: str, data: dict, websocket: WebSocket) -> None:
    message = await manager.send_message(connection_id, data)
    logger.info(
        "[WS] Message %s from %s broadcast to chat %s",
        message.id, message.sender_id, message.chat_id,
    )


async def _handle_typing(connection_id: str, data: dict, websocket: WebSocket) -> None:
    is_typing = data.get("isTyping", False)
    if not isinstance(is_typing, bool):
        raise ValidationError("isTyping must be a boolean")
    # Unregistered connections are dropped silently.
    await manager.set_typing(connection_id, string_field(data, "room"), is_typing)


def _require_chat_id(connection_id: str, data: dict) -> tuple:
    entry = manager.session(connection_id)
    if entry is None:
        raise UnregisteredConnection("User not registered")
    chat_id = string_field(data, "chatId")
    if not chat_id:
        raise ValidationError("chatId is required")
    return entry.userId, chat_id


async def _handle_mark_delivered(connection_id: str, data: dict, websocket: WebSocket) -> None:
    user_id, chat_id = _require_chat_id(connection_id, data)
    count = await manager.mark_delivered(user_id, chat_id)
    await manager.rooms.send_to(connection_id, "delivered_ack", {"chatId": chat_id, "markedCount": count})


async def _handle_mark_read(connection_id: str, data: dict, websocket: WebSocket) -> None:
    user_id, chat_id = _require_chat_id(connection_id, data)
    message_ids = data.get("messageIds")
    if message_ids is not None and (
        not isinstance(message_ids, list) or not all(isinstance(m, str) for m in message_ids)
    ):
        raise ValidationError("messageIds must be a list of strings")
    count = await manager.mark_read(user_id, chat_id, message_ids)
    await manager.rooms.send_to(connection_id, "read_ack", {"chatId": chat_id, "updatedCount": count})


async def _handle_logout(connection_id: str, data: dict, websocket: WebSocket) -> None:
    await manager.logout(connection_id)


_HANDLERS = {
    "join_chat": _handle_join_chat,
    "join_room": _handle_join_room,
    "leave_room": _handle_leave_room,
    "send_message": _handle_send_message,
    "typing": _handle_typing,
    "mark_delivered": _handle_mark_delivered,
    "mark_read": _handle_mark_read,
    "logout": _handle_logout,
}


async def _receive_event(websocket: WebSocket) -> Optional[dict]:
    """Next inbound event, or None for a frame that is not a JSON object.

    Raises:
        WebSocketDisconnect: The client went away.
    """
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    text = message.get("text")
    if text is None:
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket) -> None:
    """WebSocket endpoint for one client connection.

    The server assigns the connection id. The user identity is the
    ``X-User-Id`` header the authenticating gateway puts on the upgrade
    request; ``join_chat`` verifies it through the auth oracle before the
    connection is registered. A bad event is answered with an error frame
    and the connection stays open.
    """
    max_connections = get_config().rooms.max_connections
    if max_connections > 0 and manager.rooms.connection_count >= max_connections:
        logger.warning(
            f"[WS] Connection limit reached ({max_connections}). Rejecting new connection."
        )
        await websocket.close(code=1008)  # 1008 = Policy Violation
        return

    connection_id = await manager.connect(websocket)
    logger.info(f"[WS] Connection accepted: {connection_id}")

    try:
        while True:
            data = await _receive_event(websocket)
            if data is None:
                await websocket.send_json(
                    ValidationError("Events must be JSON objects").to_event()
                )
                continue

            event = data.get("type")
            logger.debug("[WS] %s received: type=%s", connection_id, event or "?")

            handler = _HANDLERS.get(event) if isinstance(event, str) else None
            if handler is None:
                await websocket.send_json(
                    ValidationError(f"Unknown event type: {event}").to_event()
                )
                continue

            try:
                await handler(connection_id, data, websocket)
            except ChatError as e:
                logger.info(f"[WS] {event} from {connection_id} rejected: {e.code} ({e.message})")
                await manager.rooms.send_to(
                    connection_id, "error", {"code": e.code, "error": e.message}
                )
            except Exception as e:
                logger.exception(f"[WS] {event} from {connection_id} failed: {e}")
                await manager.rooms.send_to(
                    connection_id, "error", {"code": "internal_error", "error": "Internal error"}
                )

    except WebSocketDisconnect:
        logger.info(f"[WS] Connection closed: {connection_id}")
    finally:
        await manager.disconnect(connection_id)
