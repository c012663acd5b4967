# tests/conftest.py — Shared test fixtures
import os
import uuid
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.pop("TREASURY_URL", None)

from models import Base, User, UserRole
from auth import AuthService, UserDirectory
from database import get_db_session
from document_registry import DocumentRegistry
from registries import get_clock
from subscription_ledger import SubscriptionLedger
from substrate import ExecutionSubstrate, FrozenClock
from task_workflow import TaskWorkflowEngine
from treasury import LedgerTreasury
from workspace_registry import WorkspaceRegistry
from main import app

START = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)


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


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest_asyncio.fixture(scope="function")
async def client(db_engine, clock):
    """HTTP test client with overridden DB and clock dependencies"""
    session_factory = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ============================================================
# REGISTRIES (direct, no HTTP)
# ============================================================

@pytest.fixture
def substrate(db_session, clock):
    return ExecutionSubstrate(db_session, clock)


@pytest.fixture
def workspaces(substrate):
    return WorkspaceRegistry(substrate)


@pytest.fixture
def documents(substrate, workspaces):
    return DocumentRegistry(substrate, workspaces)


@pytest.fixture
def workflow(substrate, workspaces):
    return TaskWorkflowEngine(substrate, workspaces)


@pytest.fixture
def ledger(substrate, workspaces, db_session):
    return SubscriptionLedger(substrate, workspaces, LedgerTreasury(db_session), UserDirectory(db_session))


# ============================================================
# USERS
# ============================================================

async def _make_user(db_session, email: str, display_name: str, password: str, role: UserRole) -> User:
    user = User(
        id=str(uuid.uuid4()),
        email=email,
        display_name=display_name,
        password_hash=AuthService.hash_password(password),
        role=role,
        is_active=True,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_user(db_session):
    """Create a test user"""
    return await _make_user(db_session, "testuser@registry.dev", "Test User", "TestPassword123!", UserRole.USER)


@pytest_asyncio.fixture
async def other_user(db_session):
    return await _make_user(db_session, "other@registry.dev", "Other User", "OtherPassword123!", UserRole.USER)


@pytest_asyncio.fixture
async def third_user(db_session):
    return await _make_user(db_session, "third@registry.dev", "Third User", "ThirdPassword123!", UserRole.USER)


@pytest_asyncio.fixture
async def super_admin(db_session):
    """Create a platform administrator"""
    return await _make_user(db_session, "superadmin@registry.dev", "Super Admin", "SuperAdmin123!!", UserRole.SUPER_ADMIN)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token(AuthService.token_claims(user))
    return {"Authorization": f"Bearer {token}"}
