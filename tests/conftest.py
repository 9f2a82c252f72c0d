"""Global test fixtures for the test suite."""

import sys
from pathlib import Path

# Add the project root to the path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, Dict, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from remitcore.clients.ledger import WalletLockRegistry
from remitcore.clients.notifications import LogNotifier
from remitcore.config import Settings
from remitcore.core.schedule_runner import ScheduleRunner
from remitcore.core.schedules import RecurringScheduleEngine
from remitcore.core.transfers import TransferAuthorizationService
from remitcore.database import Base
from remitcore.models.account import Account, TransferContact, Wallet


START = datetime(2026, 1, 15, 12, 0, 0)
ADMIN_TOKEN = "test-admin-token"


class FrozenClock:
    """Controllable clock; services read time only through it."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


# ============= Database Fixtures =============

@pytest_asyncio.fixture
async def async_engine():
    """Create an in-memory SQLite engine for testing."""
    import remitcore.models  # noqa: F401

    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_maker(async_engine) -> async_sessionmaker:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_maker() as session:
        yield session
        await session.rollback()


# ============= Service Fixtures =============

@pytest.fixture
def settings() -> Settings:
    return Settings(
        secret_key="test-secret",
        admin_api_token=ADMIN_TOKEN,
        expose_otp_codes=True,
        scheduler_enabled=False,
        scheduler_max_concurrency=1,
        notification_url="",
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def notifier() -> LogNotifier:
    return LogNotifier()


@pytest.fixture
def wallet_locks() -> WalletLockRegistry:
    return WalletLockRegistry()


@pytest.fixture
def transfer_service(db_session, settings, clock, notifier, wallet_locks) -> TransferAuthorizationService:
    return TransferAuthorizationService(
        db_session,
        notifier=notifier,
        settings=settings,
        clock=clock,
        wallet_locks=wallet_locks,
    )


@pytest.fixture
def schedule_engine(db_session, settings, clock) -> RecurringScheduleEngine:
    return RecurringScheduleEngine(db_session, settings=settings, clock=clock)


@pytest.fixture
def runner(session_maker, settings, clock, notifier, wallet_locks) -> ScheduleRunner:
    return ScheduleRunner(
        session_maker,
        settings=settings,
        clock=clock,
        notifier=notifier,
        wallet_locks=wallet_locks,
    )


# ============= Sample Data =============

async def create_account(
    db: AsyncSession,
    user_id: str,
    *,
    role: str = "CLIENT",
    verification_tier: int = 2,
    age_days: int = 200,
    plan_tier: str = "free",
    is_frozen: bool = False,
    wallets: Optional[Dict[str, str]] = None,
) -> Account:
    account = Account(
        user_id=user_id,
        role=role,
        verification_tier=verification_tier,
        plan_tier=plan_tier,
        is_frozen=is_frozen,
        created_at=START - timedelta(days=age_days),
    )
    db.add(account)
    for currency, balance in (wallets or {}).items():
        db.add(Wallet(owner_id=user_id, currency=currency, balance=Decimal(balance), held_amount=Decimal("0")))
    return account


async def get_wallet(db: AsyncSession, owner_id: str, currency: str) -> Wallet:
    result = await db.execute(
        select(Wallet)
        .where(Wallet.owner_id == owner_id, Wallet.currency == currency)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


@pytest_asyncio.fixture
async def world(db_session):
    """
    Seeded accounts:

    - alice: sender with USD and HTG funds
    - bob: trusted recipient (long history, favorite), HTG wallet only
    - carl: brand new, unverified recipient
    - dana: trusted USD recipient, used by schedules
    - platform_fees: fee collection wallets
    """
    await create_account(db_session, "alice", age_days=400, wallets={"USD": "1000.00", "HTG": "100000.00"})
    await create_account(db_session, "bob", wallets={"HTG": "1000.00"})
    await create_account(db_session, "carl", verification_tier=0, age_days=5, wallets={"HTG": "0.00"})
    await create_account(db_session, "dana", wallets={"USD": "0.00"})
    db_session.add(Wallet(owner_id="platform_fees", currency="USD", balance=Decimal("0"), held_amount=Decimal("0")))
    db_session.add(Wallet(owner_id="platform_fees", currency="HTG", balance=Decimal("0"), held_amount=Decimal("0")))
    db_session.add(TransferContact(user_id="alice", contact_user_id="bob", transfer_count=12, is_favorite=True))
    db_session.add(TransferContact(user_id="alice", contact_user_id="dana", transfer_count=6, is_favorite=False))
    await db_session.commit()
    return db_session


# ============= FastAPI Test Client =============

@pytest_asyncio.fixture
async def test_client(
    db_session, session_maker, settings, clock, notifier, wallet_locks
) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client with test dependencies."""
    from remitcore.config import get_settings
    from remitcore.clients.notifications import get_notifier
    from remitcore.database import get_db
    from remitcore.dependencies import get_clock, get_schedule_runner
    from remitcore.main import app

    async def override_get_db():
        yield db_session
        await db_session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_schedule_runner] = lambda: ScheduleRunner(
        session_maker, settings=settings, clock=clock, notifier=notifier, wallet_locks=wallet_locks
    )

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
