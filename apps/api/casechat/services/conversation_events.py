"""Conversation events facade.

Services call these after their transaction commits. Each call returns
immediately; delivery to sockets happens on the websocket manager's loop.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from casechat.core.redis_client import get_redis_url
from casechat.core.websocket import conversation_room, manager, user_room
from casechat.schemas.conversation import MessageRead

NEW_MESSAGE = "new_message"
MESSAGE_DELETED = "message_deleted"
MESSAGE_READ_RECEIPT = "message_read_receipt"
USER_TYPING = "user_typing"
UNREAD_COUNT = "unread_count"


def publish_new_message(message: MessageRead) -> None:
    # is_read_by_me is relative to the sender; receivers compute their own
    payload = message.model_dump(exclude={"is_read_by_me"})
    manager.publish(
        conversation_room(message.conversation_id),
        NEW_MESSAGE,
        {"conversation_id": message.conversation_id, "message": payload},
    )


def publish_message_deleted(conversation_id: UUID, message_id: int) -> None:
    manager.publish(
        conversation_room(conversation_id),
        MESSAGE_DELETED,
        {"conversation_id": conversation_id, "message_id": message_id},
    )


def publish_read_receipt(
    conversation_id: UUID,
    message_id: int,
    user_id: UUID,
    read_at: datetime,
) -> None:
    manager.publish(
        conversation_room(conversation_id),
        MESSAGE_READ_RECEIPT,
        {
            "conversation_id": conversation_id,
            "message_id": message_id,
            "user_id": user_id,
            "read_at": read_at,
        },
    )


def wants_user_events(user_id: UUID) -> bool:
    """False when nobody could receive per-user events for this user."""
    if get_redis_url() is not None:
        return True  # may be connected to another instance
    return manager.has_subscribers(user_room(user_id))


def publish_unread_count(user_id: UUID, count: int) -> None:
    manager.publish(user_room(user_id), UNREAD_COUNT, {"unread_count": count})
