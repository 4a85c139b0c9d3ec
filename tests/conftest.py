"""
Ledgerline - Test Configuration

Pytest fixtures and configuration.

Every test gets its own SQLite database file, a seeded chart of
accounts and three open monthly fiscal periods for Q1 2026.
"""

import os

os.environ.setdefault("DATABASE_URL_ASYNC", "sqlite+aiosqlite:///./ledgerline_test.db")
os.environ.setdefault("APP_ENV", "testing")

from datetime import date
from typing import AsyncGenerator, Dict
from uuid import UUID

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

import ledgerline.models  # noqa: F401
from ledgerline.database import Base, build_engine, build_session_maker, get_async_session
from ledgerline.models.accounting import Account, AccountType, FiscalPeriod, FiscalPeriodStatus, NORMAL_BALANCE_BY_TYPE
from main import app


CHART_OF_ACCOUNTS = [
    ("1000", "Cash", AccountType.ASSET),
    ("1100", "Accounts Receivable", AccountType.ASSET),
    ("1200", "Bank - Current Account", AccountType.ASSET),
    ("1400", "Input Tax Recoverable", AccountType.ASSET),
    ("2100", "Accounts Payable", AccountType.LIABILITY),
    ("3200", "Retained Earnings", AccountType.EQUITY),
    ("4000", "Sales Revenue", AccountType.INCOME),
    ("5000", "General Expenses", AccountType.EXPENSE),
    ("5100", "Freight", AccountType.EXPENSE),
    ("7100", "Realized Forex Gain", AccountType.INCOME),
    ("8100", "Realized Forex Loss", AccountType.EXPENSE),
]

FISCAL_PERIODS = [
    ("2026-01", "January 2026", date(2026, 1, 1), date(2026, 1, 31)),
    ("2026-02", "February 2026", date(2026, 2, 1), date(2026, 2, 28)),
    ("2026-03", "March 2026", date(2026, 3, 1), date(2026, 3, 31)),
]


@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh SQLite database per test."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledgerline_test.db'}")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await test_engine.dispose()


@pytest.fixture
def session_maker(db_engine: AsyncEngine) -> async_sessionmaker:
    return build_session_maker(db_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_maker: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_maker() as session:
        yield session


# ===========================================
# DATA FIXTURES
# ===========================================

@pytest_asyncio.fixture
async def accounts(session_maker: async_sessionmaker) -> Dict[str, UUID]:
    """Seed the chart of accounts. Returns account ids by code."""
    async with session_maker() as session:
        rows = [
            Account(
                code=code,
                name=name,
                account_type=account_type,
                normal_balance=NORMAL_BALANCE_BY_TYPE[account_type],
                is_active=True,
            )
            for code, name, account_type in CHART_OF_ACCOUNTS
        ]
        rows.append(Account(
            code="9999",
            name="Suspense (retired)",
            account_type=AccountType.ASSET,
            normal_balance=NORMAL_BALANCE_BY_TYPE[AccountType.ASSET],
            is_active=False,
        ))
        session.add_all(rows)
        await session.commit()
        return {row.code: row.id for row in rows}


@pytest_asyncio.fixture
async def periods(session_maker: async_sessionmaker) -> Dict[str, UUID]:
    """Seed January to March 2026 as OPEN periods. Returns ids by code."""
    async with session_maker() as session:
        rows = [
            FiscalPeriod(
                code=code,
                name=name,
                start_date=start,
                end_date=end,
                status=FiscalPeriodStatus.OPEN,
                posting_sequence=0,
                is_adjustment=False,
            )
            for code, name, start, end in FISCAL_PERIODS
        ]
        session.add_all(rows)
        await session.commit()
        return {row.code: row.id for row in rows}


@pytest_asyncio.fixture
async def ledger(accounts: Dict[str, UUID], periods: Dict[str, UUID]) -> Dict[str, Dict[str, UUID]]:
    """Accounts and periods together."""
    return {"accounts": accounts, "periods": periods}


@pytest_asyncio.fixture(scope="function")
async def client(session_maker: async_sessionmaker, ledger) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""

    async def override_get_session():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_async_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
