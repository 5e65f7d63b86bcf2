# tests/conftest.py - Shared test fixtures
import os
import uuid
from datetime import timedelta

import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test_trial_sync.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["CTMS_API_VERSION"] = "v24.3"

from models import Base, User, Profile, CtmsConfiguration, CtmsSession, utcnow
from auth import AuthService
from database import get_db_session
from main import app

CTMS_URL = "https://ctms.test"
API_ROOT = f"{CTMS_URL}/api/v24.3"
CTMS_USERNAME = "ctms.user@sponsor.test"
SESSION_TOKEN = "session-token-abc123"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
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


@pytest_asyncio.fixture(scope="function")
async def client(db_engine):
    """HTTP test client with overridden DB dependency"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _create_user(db_session, email: str, password: str, display_name: str) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        password_hash=AuthService.hash_password(password),
        is_active=True,
    )
    db_session.add(user)
    await db_session.flush()
    db_session.add(Profile(user_id=user.id, email=email, display_name=display_name, organization="Acme Trials"))
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    """Create a test user with a profile"""
    return await _create_user(db_session, "testuser@trial-sync.dev", "TestPassword123!", "Test User")


@pytest_asyncio.fixture
async def other_user(db_session):
    """A second account, used to check owner scoping"""
    return await _create_user(db_session, "other@trial-sync.dev", "OtherPassword123!", "Other User")


async def create_configuration(db_session, user: User, **overrides) -> CtmsConfiguration:
    values = {
        "user_id": user.id,
        "configuration_name": "Sandbox",
        "environment_name": "sandbox",
        "veeva_url": CTMS_URL,
        "username": CTMS_USERNAME,
        "is_active": False,
    }
    values.update(overrides)
    config = CtmsConfiguration(**values)
    db_session.add(config)
    await db_session.commit()
    await db_session.refresh(config)
    return config


async def create_session(db_session, config: CtmsConfiguration, token: str = SESSION_TOKEN,
                         expires_in: timedelta = timedelta(hours=8), created_at=None,
                         is_active: bool = True) -> CtmsSession:
    now = utcnow()
    session = CtmsSession(
        configuration_id=config.id,
        session_id=token,
        expires_at=now + expires_in,
        is_active=is_active,
        created_at=created_at or now,
    )
    db_session.add(session)
    await db_session.commit()
    return session


@pytest_asyncio.fixture
async def configuration(db_session, test_user):
    return await create_configuration(db_session, test_user)


@pytest_asyncio.fixture
async def ctms_session(db_session, configuration):
    """A valid CTMS session for the test configuration"""
    return await create_session(db_session, configuration)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token({"sub": user.id, "email": user.email})
    return {"Authorization": f"Bearer {token}"}


def listing(records, next_page=None) -> dict:
    """A CTMS object listing body"""
    body = {"responseStatus": "SUCCESS", "data": records}
    if next_page:
        body["responseDetails"] = {"next_page": next_page}
    return body
