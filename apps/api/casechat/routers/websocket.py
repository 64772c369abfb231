"""
WebSocket router for real-time conversation events.

Provides /ws/conversations, which:
1. Authenticates users via ?token=..., bearer header, or session cookie
2. Subscribes the socket to its user room (unread counts)
3. Lets the client join conversation rooms it is a participant of
4. Relays typing indicators and persists read acknowledgements

Frames in both directions are JSON objects: {"event": ..., "data": {...}}.
"""

import json
import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from casechat.core.deps import authenticate_token, extract_token, get_db
from casechat.core.errors import AccessDenied, AppError, InvalidArgument, Unauthenticated
from casechat.core.websocket import conversation_room, manager
from casechat.services import conversation_events, conversation_service, message_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["WebSocket"])

# Close code for failed authentication
WS_UNAUTHENTICATED = 4001


def _in_session(db: Session, fn, *args):
    """Run a service call and end its transaction so the socket holds no connection."""
    try:
        return fn(db, *args)
    finally:
        db.rollback()


async def _send(websocket: WebSocket, event: str, data: dict) -> None:
    await websocket.send_text(json.dumps({"event": event, "data": data}, default=str))


def _authenticate(db: Session, token: str | None) -> UUID:
    return authenticate_token(db, token).id


def _conversation_id(data: dict) -> UUID:
    try:
        return UUID(str(data["conversation_id"]))
    except (KeyError, TypeError, ValueError):
        raise InvalidArgument("conversation_id is required")


def _message_id(data: dict) -> int:
    try:
        return int(data["message_id"])
    except (KeyError, TypeError, ValueError):
        raise InvalidArgument("message_id is required")


# =============================================================================
# Client events
# =============================================================================

async def _join_conversation(websocket: WebSocket, db: Session, user_id: UUID, data: dict):
    conversation_id = _conversation_id(data)
    allowed = await run_in_threadpool(
        _in_session, db, conversation_service.is_participant, conversation_id, user_id
    )
    if not allowed:
        raise AccessDenied("You are not a participant in this conversation")
    await manager.join(websocket, conversation_room(conversation_id))
    await _send(websocket, "joined_conversation", {"conversation_id": str(conversation_id)})


async def _leave_conversation(websocket: WebSocket, db: Session, user_id: UUID, data: dict):
    conversation_id = _conversation_id(data)
    await manager.leave(websocket, conversation_room(conversation_id))
    await _send(websocket, "left_conversation", {"conversation_id": str(conversation_id)})


async def _typing(websocket: WebSocket, db: Session, user_id: UUID, data: dict):
    conversation_id = _conversation_id(data)
    room = conversation_room(conversation_id)
    if not manager.is_member(websocket, room):
        raise AccessDenied("Join the conversation before sending typing events")
    manager.publish(
        room,
        conversation_events.USER_TYPING,
        {
            "conversation_id": conversation_id,
            "user_id": user_id,
            "is_typing": bool(data.get("is_typing", True)),
        },
        exclude=websocket,
    )


async def _message_read(websocket: WebSocket, db: Session, user_id: UUID, data: dict):
    conversation_id = _conversation_id(data)
    message_id = _message_id(data)
    # Persists the receipt and publishes it to the room
    await run_in_threadpool(
        _in_session, db, message_service.mark_message_read, message_id, conversation_id, user_id
    )


async def _ping(websocket: WebSocket, db: Session, user_id: UUID, data: dict):
    await _send(websocket, "pong", {})


_EVENT_HANDLERS = {
    "join_conversation": _join_conversation,
    "leave_conversation": _leave_conversation,
    "typing": _typing,
    "message_read": _message_read,
    "ping": _ping,
}


async def _handle_frame(websocket: WebSocket, db: Session, user_id: UUID, raw: str) -> None:
    # Plain-text heartbeat from older clients
    if raw == "ping":
        await _send(websocket, "pong", {})
        return

    try:
        frame = json.loads(raw)
    except ValueError:
        frame = None
    if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
        await _send(
            websocket, "error", InvalidArgument("Frames must be JSON with an 'event'").to_dict()
        )
        return

    event = frame["event"]
    data = frame.get("data")
    if not isinstance(data, dict):
        data = {}

    handler = _EVENT_HANDLERS.get(event)
    if handler is None:
        await _send(
            websocket, "error", {"event": event, **InvalidArgument("Unknown event").to_dict()}
        )
        return

    try:
        await handler(websocket, db, user_id, data)
    except AppError as exc:
        await _send(websocket, "error", {"event": event, **exc.to_dict()})


@router.websocket("/conversations")
async def websocket_conversations(
    websocket: WebSocket,
    token: str | None = Query(None),
    db: Session = Depends(get_db),
):
    """
    WebSocket endpoint for conversation events.

    Server events: new_message, message_deleted, message_read_receipt,
    user_typing, unread_count, joined_conversation, left_conversation,
    error, pong.
    """
    session_token = extract_token(websocket.cookies, websocket.headers, token)
    try:
        user_id = await run_in_threadpool(_in_session, db, _authenticate, session_token)
    except Unauthenticated:
        await websocket.close(code=WS_UNAUTHENTICATED, reason="Authentication required")
        return

    await manager.connect(websocket, user_id)
    logger.debug("Websocket connected for user %s", user_id)

    try:
        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                break
            await _handle_frame(websocket, db, user_id, raw)
    finally:
        await manager.disconnect(websocket)
        logger.debug("Websocket disconnected for user %s", user_id)
