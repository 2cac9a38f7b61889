from decimal import Decimal
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from expenseflow.auth import auth_manager
from expenseflow.database import Base, get_db
from expenseflow.main import app
from expenseflow.models import Company, User
from expenseflow.schemas import UserRole
from expenseflow.services.rule_service import rule_repository

# In-memory database shared by every session of a test
TEST_DATABASE_URL = "sqlite+aiosqlite://"

TEST_PASSWORD = "StrongPass123!"
_password_hash: Optional[str] = None


def password_hash() -> str:
    global _password_hash
    if _password_hash is None:
        _password_hash = auth_manager.get_password_hash(TEST_PASSWORD)
    return _password_hash


@pytest.fixture
async def engine():
    """Create a fresh schema for each test"""
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with the database dependency overridden"""
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def make_company(db):
    async def _make(name: str = "Acme", default_currency: str = "USD") -> Company:
        company = Company(name=name, country="United States", default_currency=default_currency)
        db.add(company)
        await db.commit()
        return company
    return _make


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    async def _make(
        company: Company,
        role: UserRole = UserRole.employee,
        manager: Optional[User] = None,
        is_active: bool = True,
        email: Optional[str] = None,
    ) -> User:
        counter["n"] += 1
        user = User(
            company_id=company.id,
            email=email or f"{role.value}{counter['n']}@{company.name.lower()}.com",
            password_hash=password_hash(),
            first_name=role.value.title(),
            last_name=str(counter["n"]),
            role=role,
            manager_id=manager.id if manager else None,
            approval_limit=Decimal("0"),
            is_active=is_active,
        )
        db.add(user)
        await db.commit()
        return user
    return _make


@pytest.fixture
async def company(make_company) -> Company:
    return await make_company()


@pytest.fixture
async def admin(make_user, company) -> User:
    return await make_user(company, UserRole.admin)


@pytest.fixture
async def manager(make_user, company) -> User:
    return await make_user(company, UserRole.manager)


@pytest.fixture
async def employee(make_user, company, manager) -> User:
    return await make_user(company, UserRole.employee, manager=manager)


@pytest.fixture
async def default_rules(db, company, admin):
    rules = await rule_repository.create_default_rules(db, company, admin)
    await db.commit()
    return rules


def auth_headers(user: User) -> dict:
    """Bearer header for a user without going through login"""
    tokens = auth_manager.create_token_pair(user)
    return {"Authorization": f"Bearer {tokens['access_token']}"}


@pytest.fixture
def headers_for():
    return auth_headers
