# tests/conftest.py — Shared test fixtures
import os

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["EMAIL_PROVIDER"] = "console"
os.environ["STORAGE_BACKEND"] = "local"

from models import Base, User, UserRole, Notification
from auth import AuthService
from database import get_db_session
from mailer import MailDeliveryError, get_mailer
from storage import LocalFileStorage, StorageError, get_storage
from main import app

TEST_PASSWORD = "TestPassword123!"
# bcrypt is deliberately slow; hash once per run
TEST_PASSWORD_HASH = AuthService.hash_password(TEST_PASSWORD)


class RecordingMailer:
    """Captures outgoing mail; addresses in ``fail_for`` raise like a bounced send."""

    def __init__(self):
        self.sent = []
        self.fail_for = set()

    async def send(self, to, subject, body, html=None):
        if to in self.fail_for:
            raise MailDeliveryError(f"Mailbox unavailable: {to}")
        self.sent.append({"to": to, "subject": subject, "body": body})
        return {"provider": "recording", "to": to}

    def sent_to(self, email):
        return [m for m in self.sent if m["to"] == email]


class BrokenStorage:
    def public_path(self, folder, filename):
        return f"/uploads/{folder}/{filename}"

    async def store(self, data, folder, filename, content_type=None):
        raise StorageError("disk full")

    async def delete(self, path):
        raise StorageError("disk full")


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)

    # SQLite leaves foreign keys unchecked unless asked, unlike PostgreSQL
    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine):
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def storage(tmp_path):
    return LocalFileStorage(root=str(tmp_path / "uploads"))


@pytest_asyncio.fixture(scope="function")
async def client(db_engine, mailer, storage):
    """HTTP test client with overridden DB, mail and storage dependencies"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_mailer] = lambda: mailer
    app.dependency_overrides[get_storage] = lambda: storage
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def broken_storage(client):
    app.dependency_overrides[get_storage] = lambda: BrokenStorage()
    return BrokenStorage()


async def make_user(db_session, name: str, email: str, role: UserRole = UserRole.USER) -> User:
    user = User(
        name=name,
        email=email,
        password_hash=TEST_PASSWORD_HASH,
        role=role,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    """Regular user who owns most of the changes under test"""
    return await make_user(db_session, "Test User", "testuser@itsm-test.com")


@pytest_asyncio.fixture
async def other_user(db_session):
    return await make_user(db_session, "Other User", "other@itsm-test.com")


@pytest_asyncio.fixture
async def editor_user(db_session):
    return await make_user(db_session, "Editor User", "editor@itsm-test.com", UserRole.EDITOR)


@pytest_asyncio.fixture
async def staff_user(db_session):
    return await make_user(db_session, "Staff User", "staff@itsm-test.com", UserRole.STAFF)


@pytest_asyncio.fixture
async def admin_user(db_session):
    return await make_user(db_session, "Admin User", "admin@itsm-test.com", UserRole.ADMIN)


@pytest_asyncio.fixture
async def second_admin(db_session):
    return await make_user(db_session, "Second Admin", "admin2@itsm-test.com", UserRole.ADMIN)


@pytest_asyncio.fixture
async def enterprise_admin(db_session):
    return await make_user(db_session, "Enterprise Admin", "enterprise@itsm-test.com", UserRole.ENTERPRISE_ADMIN)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token_data = {
        "sub": user.id,
        "email": user.email,
        "role": user.role.value if isinstance(user.role, UserRole) else user.role,
    }
    token = AuthService.create_access_token(token_data)
    return {"Authorization": f"Bearer {token}"}


async def notifications_for(db_session, user_id: str, title: str = None):
    """Fresh read of a user's notifications (the API writes through its own session)"""
    query = (
        select(Notification)
        .where(Notification.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    if title:
        query = query.where(Notification.title == title)
    result = await db_session.execute(query.order_by(Notification.created_at))
    return list(result.scalars().all())
