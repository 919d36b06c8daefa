"""
Test fixtures for the BuildBooks procurement ledger.

Every test gets its own SQLite database file (via aiosqlite) with all tables
created, a session factory bound to it, one actor per role, and an
``httpx.AsyncClient`` wired to the FastAPI app with ``get_db`` overridden.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")

from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import buildbooks.models  # noqa: F401  registers every table on Base
from buildbooks.database import Base, get_db
from buildbooks.middleware.auth import token_for_actor
from buildbooks.models.gl import Account
from buildbooks.models.inventory import InventoryItem
from buildbooks.rbac import Actor

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'buildbooks.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    """Session used by the test body."""
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

ADMIN = Actor(user_id="u-1", username="dmitry", role="admin")
ACCOUNTANT = Actor(user_id="u-2", username="ramantha", role="accountant")
PROJECT_MANAGER = Actor(user_id="u-3", username="kiran", role="project_manager")
VIEWER = Actor(user_id="u-4", username="sarah", role="viewer")


@pytest.fixture
def admin():
    return ADMIN


@pytest.fixture
def accountant():
    return ACCOUNTANT


@pytest.fixture
def project_manager():
    return PROJECT_MANAGER


@pytest.fixture
def viewer():
    return VIEWER


def auth_headers(actor: Actor) -> dict:
    """Return auth header dict for a given actor."""
    return {"Authorization": f"Bearer {token_for_actor(actor)}"}


@pytest.fixture
def admin_headers():
    return auth_headers(ADMIN)


@pytest.fixture
def accountant_headers():
    return auth_headers(ACCOUNTANT)


@pytest.fixture
def pm_headers():
    return auth_headers(PROJECT_MANAGER)


@pytest.fixture
def viewer_headers():
    return auth_headers(VIEWER)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

# code, name, type, parent code
CHART = [
    ("1", "Assets", "asset", None),
    ("11", "Current Assets", "asset", "1"),
    ("112", "Inventory", "asset", "11"),
    ("2", "Liabilities", "liability", None),
    ("21", "Current Liabilities", "liability", "2"),
    ("211", "Accounts Payable", "liability", "21"),
    ("5", "Expenses", "expense", None),
    ("51", "Site Overheads", "expense", "5"),
]


@pytest_asyncio.fixture
async def chart(db):
    """Seeded chart of accounts, keyed by code."""
    accounts: dict[str, Account] = {}
    for code, name, account_type, parent in CHART:
        account = Account(
            code=code,
            name=name,
            account_type=account_type,
            parent_id=accounts[parent].id if parent else None,
        )
        db.add(account)
        await db.flush()
        accounts[code] = account
    await db.commit()
    return accounts


@pytest_asyncio.fixture
async def inventory(db):
    """Seeded catalog in the default warehouse, keyed by name."""
    items = {
        "Rebar 16mm": InventoryItem(
            name="Rebar 16mm", warehouse="main", category="steel", unit="t",
            quantity=Decimal("10"), average_cost=Decimal("80"),
        ),
        "Cement": InventoryItem(
            name="Cement", warehouse="main", category="binders", unit="bag",
            quantity=Decimal("0"), average_cost=Decimal("0"),
        ),
    }
    db.add_all(items.values())
    await db.commit()
    return items


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def client(session_factory):
    """Async HTTP client talking to the app in-process."""
    from buildbooks.main import app

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
