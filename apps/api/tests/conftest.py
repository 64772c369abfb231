"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database, rebuilt for every test
- Users, a case and JWT token minting for authenticated tests
- HTTPX AsyncClient factory with cookie auth and CSRF header
"""
import os
import tempfile
import uuid
from dataclasses import dataclass
from typing import Generator

# Must be set before casechat modules read settings
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["ENV"] = "test"
os.environ["TESTING"] = "1"
os.environ["REDIS_URL"] = "memory://"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["LOCAL_STORAGE_PATH"] = tempfile.mkdtemp(prefix="casechat-test-")
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["TWILIO_AUTH_TOKEN"] = ""
os.environ["TWILIO_VALIDATE_SIGNATURE"] = "false"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from casechat.core.deps import COOKIE_NAME, get_db
from casechat.core.security import create_session_token
from casechat.core.websocket import manager
from casechat.db.base import Base
from casechat.db.enums import Role
from casechat.db.models import Case, CaseMember, User
from casechat.db.session import SessionLocal, engine
from casechat.main import app

CSRF_HEADERS = {"X-Requested-With": "XMLHttpRequest"}


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def _schema() -> Generator[None, None, None]:
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def _reset_socket_manager() -> Generator[None, None, None]:
    """Each test starts with no sockets and no bound event loop."""
    manager._rooms.clear()
    manager._socket_rooms.clear()
    manager._loop = None
    manager._pending.clear()
    yield
    manager._rooms.clear()
    manager._socket_rooms.clear()
    manager._loop = None
    manager._pending.clear()


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    session = SessionLocal()
    yield session
    session.close()


# =============================================================================
# Users and cases
# =============================================================================

def create_user(db: Session, role: Role, name: str) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{name.lower().replace(' ', '.')}-{uuid.uuid4().hex[:6]}@test.com",
        display_name=name,
        role=role.value,
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def consultant(db: Session) -> User:
    """Sub-consultant who created the test case."""
    return create_user(db, Role.SUB_CONSULTANT, "Alice Consultant")


@pytest.fixture
def teammate(db: Session) -> User:
    """Internal team member assigned to the test case."""
    return create_user(db, Role.INTERNAL_TEAM, "Bob Teammate")


@pytest.fixture
def outsider(db: Session) -> User:
    """Internal team member with no link to the test case."""
    return create_user(db, Role.INTERNAL_TEAM, "Carol Outsider")


@pytest.fixture
def manager_user(db: Session) -> User:
    return create_user(db, Role.MANAGEMENT, "Dana Manager")


@pytest.fixture
def case(db: Session, consultant: User, teammate: User) -> Case:
    case = Case(id=uuid.uuid4(), title="Referral 1001", created_by_user_id=consultant.id)
    db.add(case)
    db.flush()
    db.add(CaseMember(case_id=case.id, user_id=teammate.id))
    db.commit()
    return case


# =============================================================================
# Auth Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    __test__ = False

    user: User
    token: str
    cookie_name: str = COOKIE_NAME


def auth_for(user: User) -> TestAuth:
    token = create_session_token(
        user_id=user.id,
        role=user.role,
        token_version=user.token_version,
    )
    return TestAuth(user=user, token=token)


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture
def client_for(db: Session):
    """
    Factory for AsyncClients authenticated as a given user (or anonymous).

    Usage:
        async with client_for(user) as c:
            await c.get("/conversations/recent")
    """
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    def _make(user: User | None = None) -> AsyncClient:
        cookies = {}
        if user is not None:
            auth = auth_for(user)
            cookies[auth.cookie_name] = auth.token
        return AsyncClient(
            transport=ASGITransport(app=app),
            base_url="http://test",
            cookies=cookies,
            headers=CSRF_HEADERS,
        )

    yield _make
    app.dependency_overrides.clear()


@pytest.fixture
def session_token():
    """Mint a session JWT for a user: session_token(user) -> str."""
    def _mint(user: User) -> str:
        return auth_for(user).token
    return _mint
