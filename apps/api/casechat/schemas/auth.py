"""Authentication-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel

from casechat.db.enums import Role


class UserSession(BaseModel):
    """
    Identity of the caller for an authenticated request.

    Returned by the get_current_session dependency; services take user_id
    and role from here for every access check.
    """
    user_id: UUID
    role: Role
    email: str
    display_name: str

    @property
    def is_management(self) -> bool:
        return self.role == Role.MANAGEMENT
