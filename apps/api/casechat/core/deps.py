"""FastAPI dependencies for authentication, authorization, and database access."""

from datetime import datetime, timedelta, timezone
from typing import Generator, Mapping
from uuid import UUID

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from casechat.core.errors import AccessDenied, Forbidden, Unauthenticated
from casechat.core.security import decode_session_token
from casechat.db.session import SessionLocal
from casechat.db.utils import as_utc

# Cookie and header names
COOKIE_NAME = "casechat_session"
CSRF_HEADER = "X-Requested-With"
CSRF_HEADER_VALUE = "XMLHttpRequest"
BEARER_PREFIX = "bearer "

# Presence timestamps are written at most this often per user
ACTIVITY_TOUCH_INTERVAL = timedelta(seconds=60)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def extract_token(
    cookies: Mapping[str, str],
    headers: Mapping[str, str],
    query_token: str | None = None,
) -> str | None:
    """Find a session token: explicit query token, then bearer header, then cookie."""
    if query_token:
        return query_token
    auth_header = headers.get("authorization") or ""
    if auth_header.lower().startswith(BEARER_PREFIX):
        return auth_header[len(BEARER_PREFIX):].strip() or None
    return cookies.get(COOKIE_NAME)


def authenticate_token(db: Session, token: str | None):
    """
    Resolve a session token to an active User.

    Validates:
    - JWT is valid and not expired
    - User exists and is active
    - Token version matches (for revocation support)

    Raises:
        Unauthenticated: Authentication failed
    """
    from casechat.db.models import User

    if not token:
        raise Unauthenticated("Not authenticated")

    try:
        payload = decode_session_token(token)
    except Exception:
        raise Unauthenticated("Invalid session")

    user = db.get(User, _parse_subject(payload.get("sub")))
    if not user:
        raise Unauthenticated("User not found")
    if not user.is_active:
        raise Unauthenticated("Account disabled")
    if user.token_version != payload.get("token_version"):
        raise Unauthenticated("Session revoked")
    return user


def _parse_subject(sub) -> UUID:
    try:
        return UUID(str(sub))
    except (TypeError, ValueError):
        raise Unauthenticated("Invalid session")


def touch_user_activity(db: Session, user) -> None:
    """Advance the presence timestamp used for is_online."""
    now = datetime.now(timezone.utc)
    last = as_utc(user.last_active_at)
    if last is not None and now - last < ACTIVITY_TOUCH_INTERVAL:
        return
    user.last_active_at = now
    db.commit()


def get_current_user(request: Request, db: Session = Depends(get_db)):
    """Get the authenticated user from the session cookie or bearer header."""
    token = extract_token(request.cookies, request.headers)
    user = authenticate_token(db, token)
    touch_user_activity(db, user)
    return user


def get_current_session(request: Request, db: Session = Depends(get_db)):
    """
    Get session context: user_id, role, email, display_name.

    This is the PRIMARY auth dependency for most endpoints.

    Raises:
        Unauthenticated: Not authenticated
        AccessDenied: Unknown role
    """
    from casechat.db.enums import Role
    from casechat.schemas.auth import UserSession

    user = get_current_user(request, db)

    # Validate role is a known enum value - return 403 not 500
    if not Role.has_value(user.role):
        raise AccessDenied(f"Unknown role '{user.role}'. Contact administrator.")

    return UserSession(
        user_id=user.id,
        role=Role(user.role),
        email=user.email,
        display_name=user.display_name,
    )


def require_roles(allowed_roles: list):
    """
    Dependency factory for role-based authorization.

    Usage:
        @router.get("/admin", dependencies=[Depends(require_roles([Role.MANAGEMENT]))])
    """
    def dependency(request: Request, db: Session = Depends(get_db)):
        session = get_current_session(request, db)
        if session.role not in allowed_roles:
            raise Forbidden(f"Role '{session.role.value}' not authorized for this action")
        return session
    return dependency


def require_csrf_header(request: Request) -> None:
    """
    Verify CSRF header on cookie-authenticated mutations.

    Bearer-token clients are not exposed to CSRF and are exempt.

    Raises:
        Forbidden: Missing or invalid CSRF header
    """
    auth_header = request.headers.get("authorization") or ""
    if auth_header.lower().startswith(BEARER_PREFIX):
        return
    if request.headers.get(CSRF_HEADER) != CSRF_HEADER_VALUE:
        raise Forbidden(
            f"Missing CSRF header. Include '{CSRF_HEADER}: {CSRF_HEADER_VALUE}'"
        )
