import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./billing_test.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-with-enough-length-1234")
os.environ.setdefault("ENCRYPTION_KEY", "test-encryption-key-with-enough-length-12345")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("GATEWAY_SECRET_KEY", "test_sk_gateway")
os.environ.setdefault("REDIS_URL", "")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.account import Account
from services.gateway import BillingKeyIssue, GatewayPayment
from services.rate_limiter import InMemoryRateLimitStore, RateLimiter
from services.session_token import create_session_token


TEST_ACCOUNT_ID = "acct-test-0001"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_ACCOUNT_ID)['token']}"}
CRON_AUTH_HEADER = {"Authorization": "Bearer test-cron-secret"}


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Give each test a fresh in-process limiter and keep limits off unless a test opts in."""
    previous_limiter = app.state.rate_limiter
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.rate_limiter = RateLimiter(InMemoryRateLimitStore())
    app.state.disable_rate_limits = True
    yield
    app.state.rate_limiter = previous_limiter
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "billing.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def account(db):
    record = Account(
        id=TEST_ACCOUNT_ID,
        email="billing-test@example.com",
        plan="starter",
        daily_quota_remaining=10,
        credit_balance=0,
    )
    db.add(record)
    await db.commit()
    return record


@pytest_asyncio.fixture
async def client(session_maker):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client

    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def auth_headers():
    return dict(TEST_AUTH_HEADER)


@pytest.fixture
def cron_headers():
    return dict(CRON_AUTH_HEADER)


class FakeGateway:
    """Scripted stand-in for GatewayClient used by service and router tests."""

    def __init__(self):
        self.calls = []
        self.cancel_results = []
        self.confirm_results = []
        self.charge_results = []
        self.issue_results = []
        self.idempotency_keys = []

    @staticmethod
    def _next(queue, default):
        result = queue.pop(0) if queue else default
        if isinstance(result, Exception):
            raise result
        return result

    async def cancel_payment(self, payment_key, cancel_reason, cancel_amount=None, idempotency_key=None):
        self.calls.append(("cancel", payment_key, cancel_amount))
        self.idempotency_keys.append(idempotency_key)
        return self._next(self.cancel_results, None)

    async def confirm_payment(self, payment_key, order_id, amount):
        self.calls.append(("confirm", payment_key, order_id, amount))
        default = GatewayPayment.from_payload(
            {"paymentKey": payment_key, "orderId": order_id, "status": "DONE", "totalAmount": amount}
        )
        return self._next(self.confirm_results, default)

    async def issue_billing_key(self, auth_key, customer_key):
        self.calls.append(("issue", auth_key, customer_key))
        return self._next(self.issue_results, BillingKeyIssue(billing_key=f"bk_{auth_key}", customer_key=customer_key))

    async def charge_billing_key(self, billing_key, customer_key, amount, order_id, order_name):
        self.calls.append(("charge", billing_key, amount, order_id))
        default = GatewayPayment.from_payload(
            {"paymentKey": f"pay_{order_id}", "orderId": order_id, "status": "DONE", "totalAmount": amount}
        )
        return self._next(self.charge_results, default)

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture
def fake_gateway(monkeypatch):
    gateway = FakeGateway()
    for module in ("services.refunds", "services.refund_retry", "services.subscriptions", "services.purchases"):
        monkeypatch.setattr(f"{module}.get_gateway_client", lambda: gateway)
    return gateway
