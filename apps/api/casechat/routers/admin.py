"""
Admin Router - management-only views across all conversations.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from casechat.core.deps import get_db, require_roles
from casechat.db.enums import ConversationStatus, Role
from casechat.schemas.auth import UserSession
from casechat.schemas.conversation import ConversationPage, ConversationStatistics
from casechat.services import conversation_service

router = APIRouter(prefix="/admin/conversations", tags=["admin"])

require_management = require_roles([Role.MANAGEMENT])


@router.get("", response_model=ConversationPage)
def list_all_conversations(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    status: ConversationStatus | None = Query(None),
    session: UserSession = Depends(require_management),
    db: Session = Depends(get_db),
):
    return conversation_service.list_all_conversations(
        db, session.user_id, page=page, page_size=page_size, status=status
    )


@router.get("/statistics", response_model=ConversationStatistics)
def conversation_statistics(
    session: UserSession = Depends(require_management),
    db: Session = Depends(get_db),
):
    """Counts by status, messages sent today, active users."""
    return conversation_service.get_statistics(db)
