"""
WebSocket connection manager for real-time conversation events.

Sockets subscribe to rooms:
- conversation_{id}: new messages, typing indicators, read receipts
- user_{id}: per-user notifications such as unread count changes

Delivery is best effort and at most once. Events published while nobody is
subscribed are dropped; clients catch up through the REST message listing.
With REDIS_URL set, events are mirrored on a Redis channel so that sockets
connected to other instances receive them too.
"""

from typing import Dict, Set
from uuid import UUID, uuid4
import asyncio
import json
import logging

from fastapi import WebSocket
from fastapi.encoders import jsonable_encoder

from casechat.core.redis_client import get_async_redis_client

logger = logging.getLogger(__name__)

WS_EVENTS_CHANNEL = "casechat:ws-events"
INSTANCE_ID = uuid4().hex


def conversation_room(conversation_id: UUID | str) -> str:
    return f"conversation_{conversation_id}"


def user_room(user_id: UUID | str) -> str:
    return f"user_{user_id}"


def _log_delivery_failure(fut) -> None:
    if fut.cancelled():
        return
    exc = fut.exception()
    if exc is not None:
        logger.warning("Websocket event delivery failed: %s", exc, exc_info=exc)


class ConnectionManager:
    """Tracks which sockets are subscribed to which rooms."""

    def __init__(self):
        # room -> sockets subscribed to it
        self._rooms: Dict[str, Set[WebSocket]] = {}
        # socket -> rooms it joined (for cleanup on disconnect)
        self._socket_rooms: Dict[WebSocket, Set[str]] = {}
        self._lock = asyncio.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        # delivery tasks scheduled by publish; asyncio only keeps weak refs
        self._pending: Set[asyncio.Task] = set()

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Remember the event loop that owns the sockets."""
        self._loop = loop or asyncio.get_running_loop()

    async def connect(self, websocket: WebSocket, user_id: UUID):
        """Accept a socket and register it in its user room."""
        await websocket.accept()
        self.bind_loop()
        await self.join(websocket, user_room(user_id))

    async def disconnect(self, websocket: WebSocket):
        """Remove a socket from every room it joined."""
        async with self._lock:
            rooms = self._socket_rooms.pop(websocket, set())
            for room in rooms:
                self._discard(room, websocket)

    async def join(self, websocket: WebSocket, room: str):
        async with self._lock:
            self._rooms.setdefault(room, set()).add(websocket)
            self._socket_rooms.setdefault(websocket, set()).add(room)

    async def leave(self, websocket: WebSocket, room: str):
        async with self._lock:
            self._discard(room, websocket)
            joined = self._socket_rooms.get(websocket)
            if joined is not None:
                joined.discard(room)

    def _discard(self, room: str, websocket: WebSocket) -> None:
        members = self._rooms.get(room)
        if members is None:
            return
        members.discard(websocket)
        if not members:
            del self._rooms[room]

    async def send_to_room(
        self,
        room: str,
        message: dict,
        exclude: WebSocket | None = None,
    ) -> int:
        """Send a message to every socket in a room. Returns sockets reached."""
        async with self._lock:
            sockets = self._rooms.get(room, set()).copy()
        sockets.discard(exclude)

        if not sockets:
            return 0

        data = json.dumps(message)
        closed = []
        delivered = 0

        for ws in sockets:
            try:
                await ws.send_text(data)
                delivered += 1
            except Exception:
                # Connection closed or errored
                closed.append(ws)

        if closed:
            async with self._lock:
                for ws in closed:
                    for joined in self._socket_rooms.pop(ws, set()):
                        self._discard(joined, ws)

        return delivered

    def publish(
        self,
        room: str,
        event: str,
        data: dict,
        exclude: WebSocket | None = None,
    ) -> None:
        """
        Fire-and-forget publish, safe to call from request threads.

        Schedules delivery on the manager's loop and returns immediately.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            return

        message = {"event": event, "data": jsonable_encoder(data)}
        coro = self._deliver(room, message, exclude)

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is loop:
            task = loop.create_task(coro)
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            task.add_done_callback(_log_delivery_failure)
        else:
            future = asyncio.run_coroutine_threadsafe(coro, loop)
            future.add_done_callback(_log_delivery_failure)

    async def _deliver(self, room: str, message: dict, exclude: WebSocket | None) -> None:
        await self.send_to_room(room, message, exclude=exclude)
        await _publish_ws_event(
            {"source_id": INSTANCE_ID, "room": room, "message": message}
        )

    def is_member(self, websocket: WebSocket, room: str) -> bool:
        return room in self._socket_rooms.get(websocket, ())

    def has_subscribers(self, room: str) -> bool:
        return bool(self._rooms.get(room))

    def get_room_size(self, room: str) -> int:
        return len(self._rooms.get(room, set()))

    def get_total_connections(self) -> int:
        """Get total number of open sockets."""
        return len(self._socket_rooms)


# Singleton instance
manager = ConnectionManager()


# =============================================================================
# Redis backplane
# =============================================================================

_listener_task: asyncio.Task | None = None


def should_deliver_ws_event(event: dict, instance_id: str) -> bool:
    """Events published by this instance were already delivered locally."""
    return event.get("source_id") != instance_id


async def _publish_ws_event(event: dict) -> None:
    client = get_async_redis_client()
    if client is None:
        return
    try:
        await client.publish(WS_EVENTS_CHANNEL, json.dumps(event))
    except Exception:
        logger.warning("Failed to publish websocket event to Redis", exc_info=True)


async def _listen_for_ws_events(client) -> None:
    pubsub = client.pubsub()
    await pubsub.subscribe(WS_EVENTS_CHANNEL)
    try:
        async for raw in pubsub.listen():
            if raw.get("type") != "message":
                continue
            try:
                event = json.loads(raw["data"])
            except (TypeError, ValueError):
                logger.warning("Dropping malformed websocket event from Redis")
                continue
            if not should_deliver_ws_event(event, INSTANCE_ID):
                continue
            room = event.get("room")
            message = event.get("message")
            if room and isinstance(message, dict):
                await manager.send_to_room(room, message)
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Websocket event listener stopped")
    finally:
        await pubsub.unsubscribe(WS_EVENTS_CHANNEL)
        await pubsub.aclose()


async def start_websocket_event_listener() -> None:
    """Start relaying events from other instances (no-op without Redis)."""
    global _listener_task
    client = get_async_redis_client()
    if client is None:
        return
    if _listener_task is not None and not _listener_task.done():
        return
    _listener_task = asyncio.create_task(_listen_for_ws_events(client))
    logger.info("Websocket event listener started (instance=%s)", INSTANCE_ID)


async def stop_websocket_event_listener() -> None:
    global _listener_task
    task = _listener_task
    _listener_task = None
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
