# tests/conftest.py — Shared test fixtures
import os
import tempfile

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("FILE_STORAGE_ROOT", tempfile.mkdtemp(prefix="kanban-attachments-"))
os.environ.pop("OPEN_SIGNUP", None)
os.environ.pop("SMTP_HOST", None)

import database
from models import Base, User, Organisation, Member, MemberRole
from auth import AuthService
from database import get_db_session, enable_sqlite_foreign_keys
from main import app


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = create_async_engine(TEST_DB_URL, echo=False)
    enable_sqlite_foreign_keys(engine)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, monkeypatch):
    """HTTP test client with overridden DB dependency"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    # Activity logging and websocket checks open their own sessions
    monkeypatch.setattr(database, "async_session_maker", session_factory)

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def create_member(db, org: Organisation, email: str, name: str, role: MemberRole) -> User:
    """Insert a user with an organisation membership; membership is loaded on the returned user"""
    user = User(email=email, display_name=name, is_active=True)
    db.add(user)
    await db.flush()
    db.add(Member(organisation_id=org.id, user_id=user.id, role=role))
    await db.commit()

    stmt = select(User).where(User.id == user.id).options(selectinload(User.membership))
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalar_one()


@pytest_asyncio.fixture
async def test_org(db_session):
    """Create a test organisation"""
    org = Organisation(name="Test Organisation", slug="test-org")
    db_session.add(org)
    await db_session.commit()
    await db_session.refresh(org)
    return org


@pytest_asyncio.fixture
async def other_org(db_session):
    org = Organisation(name="Other Organisation", slug="other-org")
    db_session.add(org)
    await db_session.commit()
    await db_session.refresh(org)
    return org


@pytest_asyncio.fixture
async def owner_user(db_session, test_org):
    return await create_member(db_session, test_org, "owner@printnow.dev", "Olive Owner", MemberRole.OWNER)


@pytest_asyncio.fixture
async def admin_user(db_session, test_org):
    return await create_member(db_session, test_org, "admin@printnow.dev", "Adam Admin", MemberRole.ADMIN)


@pytest_asyncio.fixture
async def member_user(db_session, test_org):
    return await create_member(db_session, test_org, "member@printnow.dev", "Mia Member", MemberRole.MEMBER)


@pytest_asyncio.fixture
async def other_org_user(db_session, other_org):
    return await create_member(db_session, other_org, "outsider@elsewhere.dev", "Otto Outsider", MemberRole.OWNER)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user whose membership is loaded"""
    token = AuthService.create_access_token(AuthService.token_data(user, user.membership))
    return {"Authorization": f"Bearer {token}"}


async def create_board(client: AsyncClient, user: User, name: str = "Print Jobs") -> dict:
    resp = await client.post("/api/v1/boards", json={"name": name}, headers=get_auth_headers(user))
    assert resp.status_code == 201, resp.text
    return resp.json()


async def create_card(client: AsyncClient, user: User, board: dict, title: str, column_index: int = 0) -> dict:
    resp = await client.post(
        f"/api/v1/boards/{board['id']}/cards",
        json={"column_id": board["columns"][column_index]["id"], "title": title},
        headers=get_auth_headers(user),
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def fail_commits(monkeypatch, reason: str = "UNIQUE constraint failed"):
    """Make every session commit lose a race to a database constraint"""

    async def commit(self):
        raise IntegrityError("COMMIT", {}, Exception(reason))

    monkeypatch.setattr(AsyncSession, "commit", commit)
