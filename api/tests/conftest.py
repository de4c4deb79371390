"""API test configuration.

Engine tests run against in-memory SQLite (one shared connection, so several
sessions can take part in the same test) with Stripe replaced by an in-process
fake that mimics PaymentIntent semantics, including idempotency keys.
"""

import time
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace
from typing import Any

import pytest
import stripe
from api.dependencies import get_db
from api.main import create_app
from api.middleware.rate_limit import RateLimiter
from api.services.keyed_locks import KeyedLocks
from gavel.config import get_settings, reset_settings_cache
from gavel.models import Auction, Base, DepositAuthorization, Listing, SiteSetting
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.pool import StaticPool

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setenv("CRON_SECRET", "cron-test-secret")
    monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "")
    monkeypatch.setenv("MAINTENANCE_ENABLED", "false")
    monkeypatch.setenv("SKIP_MIGRATION_CHECK", "true")
    monkeypatch.setenv("STRIPE_TIMEOUT_SECONDS", "2")
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def locks():
    return KeyedLocks()


# ---------- Stripe ----------


class FakeStripe:
    """In-process stand-in for the stripe module (PaymentIntent/Refund/Event/Webhook)."""

    def __init__(self):
        self.intents: dict[str, dict] = {}
        self.by_key: dict[str, dict] = {}
        self.key_params: dict[str, dict] = {}
        self.calls: list[tuple[str, object]] = []
        self.events: list[dict] = []
        self.failures: dict[Any, Exception] = {}
        self.create_status = "requires_capture"
        self.delay = 0.0
        self.PaymentIntent = SimpleNamespace(
            create=self._create,
            capture=self._capture,
            cancel=self._cancel,
            retrieve=self._retrieve,
        )
        self.Refund = SimpleNamespace(create=self._refund)
        self.Event = SimpleNamespace(list=self._list_events)
        self.Webhook = stripe.Webhook

    def _enter(self, op, payload):
        self.calls.append((op, payload))
        if self.delay:
            time.sleep(self.delay)
        failure = self.failures.get((op, payload)) if isinstance(payload, str) else None
        failure = failure or self.failures.get(op)
        if failure is not None:
            raise failure

    def ops(self, op):
        return [payload for name, payload in self.calls if name == op]

    def _create(self, **kwargs):
        self._enter("create", kwargs)
        key = kwargs.get("idempotency_key")
        params = {k: v for k, v in kwargs.items() if k != "idempotency_key"}
        if key in self.by_key:
            if self.key_params[key] != params:
                raise stripe.StripeError(
                    "Keys for idempotent requests can only be used with the same parameters"
                )
            return self.by_key[key]
        intent = {
            "id": f"pi_{len(self.intents) + 1}",
            "object": "payment_intent",
            "status": self.create_status,
            "amount": kwargs["amount"],
            "currency": kwargs["currency"],
            "capture_method": kwargs.get("capture_method"),
            "client_secret": f"pi_{len(self.intents) + 1}_secret",
            "metadata": dict(kwargs.get("metadata") or {}),
            "last_payment_error": None,
        }
        self.intents[intent["id"]] = intent
        if key:
            self.by_key[key] = intent
            self.key_params[key] = params
        return intent

    def _capture(self, intent_id, **kwargs):
        self._enter("capture", intent_id)
        intent = self.intents[intent_id]
        intent["status"] = "succeeded"
        return intent

    def _cancel(self, intent_id, **kwargs):
        self._enter("cancel", intent_id)
        intent = self.intents[intent_id]
        intent["status"] = "canceled"
        return intent

    def _retrieve(self, intent_id, **kwargs):
        self._enter("retrieve", intent_id)
        return self.intents[intent_id]

    def _refund(self, **kwargs):
        self._enter("refund", kwargs)
        return {"id": f"re_{len(self.ops('refund'))}", "payment_intent": kwargs["payment_intent"]}

    def _list_events(self, **kwargs):
        self._enter("list_events", kwargs)
        return {"data": list(self.events)}


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    monkeypatch.setattr(
        "api.services.stripe_service._get_stripe_client", lambda **kwargs: fake
    )
    return fake


# ---------- Seed data ----------


@pytest.fixture
def make_auction(db):
    async def _make(
        *,
        price="1000.00",
        buy_now=None,
        start_at=None,
        end_at=None,
        seller_id=None,
        min_increment_cad=None,
        soft_close_seconds=None,
    ) -> Auction:
        listing = Listing(
            seller_id=seller_id or uuid.uuid4(),
            title="1967 Gibson Les Paul",
            price_cad=Decimal(price),
            buy_now_cad=Decimal(buy_now) if buy_now is not None else None,
        )
        db.add(listing)
        await db.flush()
        auction = Auction(
            listing=listing,
            start_at=start_at or NOW - timedelta(days=1),
            end_at=end_at or NOW + timedelta(hours=1),
            min_increment_cad=Decimal(min_increment_cad) if min_increment_cad else None,
            soft_close_seconds=soft_close_seconds,
        )
        db.add(auction)
        await db.commit()
        await db.refresh(auction)
        return auction

    return _make


@pytest.fixture
def make_deposit(db):
    async def _make(
        auction,
        user_id,
        *,
        status="authorized",
        amount="100.00",
        reference=None,
        created_at=None,
        fake=None,
    ) -> DepositAuthorization:
        if reference is None and fake is not None and status != "pending":
            intent = fake._create(
                amount=int(Decimal(amount) * 100),
                currency="cad",
                capture_method="manual",
                metadata={"auction_id": str(auction.id), "user_id": str(user_id)},
            )
            intent["status"] = {"captured": "succeeded", "cancelled": "canceled"}.get(
                status, "requires_capture"
            )
            reference = intent["id"]
            fake.calls.clear()
        created = created_at or NOW - timedelta(hours=2)
        deposit = DepositAuthorization(
            user_id=user_id,
            auction_id=auction.id,
            amount_cad=Decimal(amount),
            status=status,
            processor_reference=reference,
            created_at=created,
            updated_at=created,
            authorized_at=created if status == "authorized" else None,
        )
        db.add(deposit)
        await db.commit()
        return deposit

    return _make


@pytest.fixture
def set_auction_setting(db):
    async def _set(field, value):
        db.add(
            SiteSetting(key=f"auction.{field}", value={"value": value}, category="auction")
        )
        await db.commit()

    return _set


# ---------- HTTP ----------


class FakeRedis:
    def __init__(self):
        self.counters: dict[str, int] = {}
        self.expiries: dict[str, int] = {}

    async def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    async def expire(self, key, seconds):
        self.expiries[key] = seconds
        return True

    async def aclose(self):
        return None


def make_token(sub, **claims):
    settings = get_settings()
    payload = {"sub": str(sub), **claims}
    return jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)


def bidder_headers(user_id, **overrides):
    claims = {
        "type": "user",
        "email_verified": True,
        "kyc_status": "approved",
        "terms_accepted": True,
    }
    claims.update(overrides)
    return {"Authorization": f"Bearer {make_token(user_id, **claims)}"}


def admin_headers(admin_id=None):
    token = make_token(admin_id or uuid.uuid4(), type="admin", role="admin")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def app(fake_redis):
    a = create_app()
    a.state.rate_limiter = RateLimiter(
        {"bid": 10, "deposit": 5, "settings": 5},
        window_seconds=60,
        redis_client=fake_redis,
    )
    return a


@pytest.fixture
async def client(app, session_factory):
    async def _override_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _override_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------- Notifications ----------


@pytest.fixture(autouse=True)
async def _drain_notifications():
    yield
    from api.services.notifications import drain_notifications

    await drain_notifications()


@pytest.fixture
def sent_notifications(monkeypatch):
    sent: list[tuple[str, str, dict]] = []

    def _record(template, recipient_id, **variables):
        sent.append((template, str(recipient_id), variables))

    monkeypatch.setattr("api.services.bid_service.notify", _record)
    monkeypatch.setattr("api.services.settlement_service.notify", _record)
    return sent


@pytest.fixture
def auth():
    return SimpleNamespace(bidder=bidder_headers, admin=admin_headers, token=make_token)
