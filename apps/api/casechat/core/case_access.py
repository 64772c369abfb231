"""Case access control - the check every conversation operation starts from.

A user can access a case when they:
- hold the management role (sees every case)
- created the case
- are assigned to it (case_members)
"""

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from casechat.core.errors import AccessDenied, NotFound
from casechat.db.enums import Role
from casechat.db.models import Case, CaseMember


def _role_value(user_role: Role | str) -> str:
    return user_role.value if hasattr(user_role, "value") else user_role


def user_has_case_access(
    db: Session,
    case: Case,
    user_id: UUID,
    user_role: Role | str,
) -> bool:
    """Non-raising access check."""
    if _role_value(user_role) == Role.MANAGEMENT.value:
        return True
    if case.created_by_user_id == user_id:
        return True
    member = db.scalar(
        select(CaseMember.user_id).where(
            CaseMember.case_id == case.id,
            CaseMember.user_id == user_id,
        )
    )
    return member is not None


def get_case_for_user(
    db: Session,
    case_id: UUID,
    user_id: UUID,
    user_role: Role | str,
) -> Case:
    """
    Load a case and verify the caller may see it.

    Raises:
        NotFound: case does not exist
        AccessDenied: caller has no access to the case
    """
    case = db.get(Case, case_id)
    if case is None:
        raise NotFound("Case not found")
    if not user_has_case_access(db, case, user_id, user_role):
        raise AccessDenied("You don't have access to this case")
    return case
