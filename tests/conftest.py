from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from libs.common.config import Settings
from libs.db.base import Base
from services.commerce_service import models as _commerce_models  # noqa: F401
from services.commerce_service.dispatch import JOB_SEND_NOTIFICATION, BackgroundDispatcher
from services.commerce_service.gateway_client import InquiryResult, SubmissionResult, normalize_status
from services.commerce_service.models import Account, AccountType
from services.commerce_service.services.settings_lookup import SettingsLookup
from tests.factories import ProductFactory

# (code, name, type, mapping key)
CHART_OF_ACCOUNTS = [
    ("1001", "Cash on hand", AccountType.ASSET, "CASH"),
    ("1002", "Bank - operating", AccountType.ASSET, "PRIMARY_BANK"),
    ("1300", "Inventory", AccountType.ASSET, "INVENTORY_ASSET"),
    ("2100", "Customer deposits", AccountType.LIABILITY, "CUSTOMER_DEPOSIT"),
    ("2200", "Store credit", AccountType.LIABILITY, "WALLET_LIABILITY"),
    ("4100", "Retail revenue", AccountType.REVENUE, "RETAIL_REVENUE"),
    ("4200", "Pre-order revenue", AccountType.REVENUE, "PO_REVENUE"),
    ("4900", "Other income", AccountType.REVENUE, "OTHER_INCOME"),
    ("5100", "Cost of goods sold", AccountType.COGS, "COGS_EXPENSE"),
]


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """
    File-backed SQLite engine, one database per test.

    Every transaction starts with BEGIN IMMEDIATE so concurrent sessions
    serialize on the write lock the way row locks serialize them in Postgres.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'commerce.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory, chart_of_accounts) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a database session on a seeded database.

    SQLite holds the write lock for as long as this session has a transaction
    open; tests that also open their own sessions commit or roll this one
    back first.
    """
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def chart_of_accounts(session_factory) -> dict[str, Account]:
    accounts = {}
    async with session_factory() as db:
        for code, name, account_type, mapping_key in CHART_OF_ACCOUNTS:
            account = Account(code=code, name=name, type=account_type, mapping_key=mapping_key)
            db.add(account)
            accounts[mapping_key] = account
        await db.commit()
    return accounts


@pytest.fixture
def settings_lookup() -> SettingsLookup:
    return SettingsLookup(Settings(_env_file=None), ttl_seconds=0)


@pytest_asyncio.fixture
async def make_product(session_factory):
    """Insert a product in its own transaction and return it."""

    async def _make(pre_order: bool = False, **overrides):
        if pre_order:
            product = ProductFactory.create_pre_order(**overrides)
        else:
            product = ProductFactory.create(**overrides)
        async with session_factory() as db:
            db.add(product)
            await db.commit()
        return product

    return _make


# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class RecordingDispatcher(BackgroundDispatcher):
    """Captures submitted jobs instead of running them."""

    def __init__(self):
        self.jobs: list[tuple[str, tuple, Optional[str]]] = []

    async def submit(self, job_name: str, *args: Any, dedupe_key: Optional[str] = None) -> bool:
        self.jobs.append((job_name, args, dedupe_key))
        return True

    def job_names(self) -> list[str]:
        return [name for name, _, _ in self.jobs if name != JOB_SEND_NOTIFICATION]

    def notification_kinds(self) -> list[str]:
        return [args[0] for name, args, _ in self.jobs if name == JOB_SEND_NOTIFICATION]


class FakeGateway:
    """Stands in for GatewayClient; statuses are keyed by merchant reference."""

    def __init__(self, default_status: str = "PENDING"):
        self.default_status = default_status
        self.statuses: dict[str, str] = {}
        self.submitted: list[dict] = []
        self.inquiries: list[str] = []
        self.error: Optional[Exception] = None

    async def submit_transaction(self, **kwargs) -> SubmissionResult:
        if self.error:
            raise self.error
        self.submitted.append(kwargs)
        reference = f"GW-{kwargs['merchant_ref_no']}"
        return SubmissionResult(
            gateway_ref=reference,
            payment_url=f"https://pay.test/{reference}",
            raw={"gateway_ref": reference},
        )

    async def inquire(self, merchant_ref_no: str, *, gateway_ref=None, amount=None) -> InquiryResult:
        if self.error:
            raise self.error
        self.inquiries.append(merchant_ref_no)
        raw_status = self.statuses.get(merchant_ref_no, self.default_status)
        return InquiryResult(
            status=normalize_status(raw_status),
            raw_status=raw_status,
            gateway_ref=gateway_ref,
            raw={"transaction_status": raw_status},
        )


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def client(
    session_factory, chart_of_accounts, settings_lookup, dispatcher, fake_gateway
) -> AsyncGenerator[AsyncClient, None]:
    """
    Yield an AsyncClient on the commerce app.

    ASGITransport does not run the lifespan, so the per-process collaborators
    are placed on ``app.state`` here.
    """
    from libs.db.session import get_async_db
    from services.commerce_service.app.main import app

    async def _override_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_async_db] = _override_db
    app.state.session_factory = session_factory
    app.state.settings_lookup = settings_lookup
    app.state.dispatcher = dispatcher
    app.state.gateway = fake_gateway
    app.state.shipping = None

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
