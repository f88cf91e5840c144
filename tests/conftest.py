"""
Test fixtures and configuration.
"""
import os

TEST_DATABASE_URL = "sqlite+aiosqlite:///./test_statementdesk.db"

os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["SYNC_RETRY_BASE_DELAY"] = "0"
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ["SECRET_KEY"] = "test-secret-key"

import asyncio
from collections.abc import AsyncGenerator
from datetime import date, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from statementdesk.main import app
from statementdesk.database import Base, get_db
from statementdesk.models.connection import Connection, TokenRecord
from statementdesk.models.mapping import CategoryMapping
from statementdesk.models.transaction import StatementFile, Transaction
from statementdesk.models.user import User
from statementdesk.services.errors import IntegrationError
from statementdesk.services.integrations import get_adapter_factory
from statementdesk.services.integrations.base import (
    ProviderAdapter,
    RemoteAccount,
    RemoteEntity,
    RemoteTenant,
    TokenResponse,
)
from statementdesk.services.worker import SyncWorker, get_sync_worker
from statementdesk.utils.dates import utcnow
from statementdesk.utils.encryption import encrypt_token
from statementdesk.utils.security import get_password_hash, create_access_token

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    poolclass=NullPool,
)

TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class FakeAdapter(ProviderAdapter):
    """In-memory provider that records every call."""

    provider = "quickbooks"
    required_sync_settings = ("bank_account_id",)

    def __init__(self):
        super().__init__()
        self.exchange_calls = 0
        self.refresh_calls = 0
        self.refresh_delay = 0.0
        self.refresh_error: IntegrationError | None = None
        self.rotate_refresh_token = True
        self.tenants = [RemoteTenant(tenant_id="realm-1", tenant_name="Acme Ltd")]
        self.accounts = [
            RemoteAccount(id="60", name="Meals and Entertainment", type="Expense", code="6000"),
            RemoteAccount(id="61", name="Office Supplies & Software", type="Expense", code="6100"),
            RemoteAccount(id="40", name="Sales", type="Income", code="4000"),
        ]
        self.push_errors: dict[str, list[IntegrationError]] = {}
        self.pushed: list[tuple[str, str]] = []
        self.revoked: list[str] = []
        self.on_push = None

    async def get_auth_url(self, state: str) -> str:
        return f"https://provider.test/authorize?state={state}"

    async def exchange_code(self, code: str) -> TokenResponse:
        self.exchange_calls += 1
        return TokenResponse(
            access_token=f"access-{code}",
            refresh_token="refresh-0",
            expires_at=utcnow() + timedelta(hours=1),
            scopes=["accounting"],
        )

    async def refresh_token(self, refresh_token: str) -> TokenResponse:
        self.refresh_calls += 1
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenResponse(
            access_token=f"access-r{self.refresh_calls}",
            refresh_token=f"refresh-r{self.refresh_calls}" if self.rotate_refresh_token else None,
            expires_at=utcnow() + timedelta(hours=1),
        )

    async def fetch_accounts(self, access_token, callback_params):
        return self.tenants

    async def list_remote_accounts(self, access_token, tenant_id):
        return self.accounts

    async def list_remote_entities(self, access_token, tenant_id):
        return (
            [RemoteEntity(id="v1", name="Walmart", type="vendor")],
            [RemoteEntity(id="c1", name="Client Co", type="customer")],
        )

    async def revoke(self, token: str) -> None:
        self.revoked.append(token)

    def build_payload(self, transaction, context, settings):
        return {
            "id": transaction.id,
            "account": context.account.id if context.account else None,
        }

    async def push_transaction(self, access_token, tenant_id, payload, settings):
        errors = self.push_errors.get(payload["id"])
        if errors:
            raise errors.pop(0)
        self.pushed.append((access_token, payload["id"]))
        if self.on_push is not None:
            await self.on_push(payload)
        return f"remote-{payload['id']}"


@pytest_asyncio.fixture(scope="function")
async def db() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory() -> async_sessionmaker[AsyncSession]:
    """Factory for independent sessions (concurrent requests, the worker)."""
    return TestSessionLocal


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def adapter_factory(fake_adapter):
    return lambda provider: fake_adapter


@pytest_asyncio.fixture(scope="function")
async def worker(adapter_factory) -> AsyncGenerator[SyncWorker, None]:
    """A running sync worker bound to the test database."""
    sync_worker = SyncWorker(TestSessionLocal, adapter_factory)
    sync_worker.start()
    yield sync_worker
    await sync_worker.stop()


@pytest_asyncio.fixture(scope="function")
async def client(db: AsyncSession, adapter_factory, worker) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database, adapter and worker overrides."""
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_adapter_factory] = lambda: adapter_factory
    app.dependency_overrides[get_sync_worker] = lambda: worker

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def test_user(db: AsyncSession) -> User:
    """Create a test user on a plan that includes bulk sync."""
    user = User(
        email="test@example.com",
        full_name="Test User",
        hashed_password=get_password_hash("testpassword123"),
        subscription_tier="professional",
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)

    return user


@pytest_asyncio.fixture(scope="function")
async def auth_headers(test_user) -> dict:
    """Create auth headers for test user."""
    token = create_access_token(data={"sub": test_user.id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_connection(db: AsyncSession, test_user):
    """Create an active connection with a stored token."""
    async def _make(
        provider: str = "quickbooks",
        tenant_id: str = "realm-1",
        expires_in: timedelta = timedelta(hours=1),
        access_token: str = "access-0",
        refresh_token: str | None = "refresh-0",
    ) -> Connection:
        connection = Connection(
            user_id=test_user.id,
            provider=provider,
            tenant_id=tenant_id,
            tenant_name="Acme Ltd",
            scopes=["accounting"],
        )
        connection.token = TokenRecord(
            access_token_encrypted=encrypt_token(access_token),
            refresh_token_encrypted=encrypt_token(refresh_token),
            expires_at=utcnow() + expires_in,
            refresh_count=0,
        )
        db.add(connection)
        await db.commit()
        return connection

    return _make


@pytest.fixture
def make_statement(db: AsyncSession, test_user):
    """Create a statement file with one transaction per (category, merchant, amount) row."""
    async def _make(
        rows: list[tuple[str | None, str | None, str]],
        same_day: date | None = None,
    ) -> tuple[StatementFile, list[Transaction]]:
        statement = StatementFile(user_id=test_user.id, filename="march.pdf", bank_name="Test Bank")
        db.add(statement)
        await db.flush()

        transactions = []
        for line, (category, merchant, amount) in enumerate(rows, start=1):
            txn = Transaction(
                file_id=statement.id,
                user_id=test_user.id,
                position=line,
                date=same_day or date(2026, 3, line),
                description=f"{merchant or 'Card'} payment",
                merchant=merchant,
                category=category,
                amount=Decimal(amount),
                confidence=95,
            )
            db.add(txn)
            transactions.append(txn)
        await db.commit()
        return statement, transactions

    return _make


@pytest.fixture
def map_category(db: AsyncSession):
    """Store an active category mapping."""
    async def _map(connection: Connection, category: str, account_id: str = "60", confidence: int = 100):
        mapping = CategoryMapping(
            connection_id=connection.id,
            category=category,
            remote_account_id=account_id,
            remote_account_name="Meals and Entertainment",
            remote_account_type="Expense",
            confidence=confidence,
        )
        db.add(mapping)
        await db.commit()
        return mapping

    return _map
