"""
tests/conftest.py
Shared fixtures: a throwaway SQLite database per test, an HTTP client
wired to it, and in-memory stand-ins for the payment gateway and the
notification dispatcher.
"""

import os

# Settings are read at import time, so the environment comes first
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("APP_ENV", "test")
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["NOTIFICATIONS_ENABLED"] = "false"
os.environ["RESEND_API_KEY"] = ""
os.environ["APP_URL"] = ""

import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config.database import Base, get_db
from main import app
from services.notification.dispatcher import NotificationDispatcher, NotificationEvent, get_notifier
from services.payment.gateway import ConnectAccount, HoldResult, PaymentGateway, get_payment_gateway
from shared.models.models import AvailabilitySlot, CoachProfile, UserRole, User
from shared.utils.errors import PaymentError, ValidationError
from shared.utils.security import create_access_token


# ── Test doubles ───────────────────────────────────────────────────────────────

class FakeGateway(PaymentGateway):
    """In-memory processor. Intents are keyed by idempotency key like the real one."""

    def __init__(self, enabled: bool = True, webhooks: bool = True):
        self._enabled = enabled
        self._webhooks = webhooks
        self.hold_status = "requires_capture"
        self.fail_hold: Optional[PaymentError] = None
        self.fail_transfer: Optional[PaymentError] = None
        self.fail_cancel: Optional[PaymentError] = None
        self.intents: dict = {}
        self.holds: List[dict] = []
        self.captures: List[Tuple[str, Optional[str]]] = []
        self.transfers: List[dict] = []
        self.cancels: List[str] = []
        self.accounts: dict = {}
        self.account_links: List[Tuple[str, str, str]] = []
        self._by_key: dict = {}

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def webhooks_enabled(self) -> bool:
        return self._webhooks

    async def get_or_create_customer(self, user_id, email, existing_customer_id=None):
        return existing_customer_id or f"cus_{str(user_id)[:8]}"

    async def create_authorization_hold(self, **kwargs):
        if self.fail_hold is not None:
            raise self.fail_hold
        key = kwargs["idempotency_key"]
        if key not in self._by_key:
            intent_id = f"pi_{len(self._by_key) + 1}"
            self._by_key[key] = intent_id
            self.intents[intent_id] = self.hold_status
            self.holds.append(kwargs)
        intent_id = self._by_key[key]
        return HoldResult(intent_id=intent_id, client_secret=f"{intent_id}_secret", status=self.intents[intent_id])

    async def retrieve_intent_status(self, intent_id):
        return self.intents[intent_id]

    async def capture(self, intent_id, idempotency_key=None):
        self.captures.append((intent_id, idempotency_key))
        self.intents[intent_id] = "succeeded"

    async def transfer(self, *, amount_cents, currency, destination_account_id, group_ref, idempotency_key=None):
        if self.fail_transfer is not None:
            error, self.fail_transfer = self.fail_transfer, None
            raise error
        self.transfers.append({
            "amount_cents": amount_cents,
            "currency": currency,
            "destination_account_id": destination_account_id,
            "group_ref": group_ref,
            "idempotency_key": idempotency_key,
        })
        return f"tr_{len(self.transfers)}"

    async def cancel(self, intent_id):
        if self.fail_cancel is not None:
            raise self.fail_cancel
        self.cancels.append(intent_id)
        self.intents[intent_id] = "canceled"

    async def create_connect_account(self, email, coach_ref):
        account_id = f"acct_{len(self.accounts) + 1}"
        self.accounts[account_id] = ConnectAccount(id=account_id)
        return account_id

    async def create_account_link(self, account_id, refresh_url, return_url):
        self.account_links.append((account_id, refresh_url, return_url))
        return f"https://connect.example.com/setup/{account_id}"

    async def retrieve_account(self, account_id):
        return self.accounts.get(account_id) or ConnectAccount(id=account_id)

    def construct_event(self, payload, signature):
        if signature != "valid":
            raise ValidationError("Webhook signature verification failed")
        return json.loads(payload)


class RecordingNotifier(NotificationDispatcher):
    def __init__(self):
        super().__init__(enabled=True)
        self.sent: List[Tuple[NotificationEvent, dict]] = []

    def notify(self, event, payload):
        self.sent.append((NotificationEvent(event), payload))

    def events(self) -> List[NotificationEvent]:
        return [event for event, _ in self.sent]


# ── Database ───────────────────────────────────────────────────────────────────

@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", poolclass=NullPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(
        bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


async def reload(db: AsyncSession, model, pk):
    """Fresh copy of a row after the API changed it in another session."""
    return await db.get(model, pk, populate_existing=True)


# ── App client ─────────────────────────────────────────────────────────────────

@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
async def client(session_factory, gateway, notifier):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    token = create_access_token(user_id=str(user.id))
    return {"Authorization": f"Bearer {token}"}


# ── Domain fixtures ────────────────────────────────────────────────────────────

async def make_user(db: AsyncSession, email: str, name: str, role: Optional[UserRole] = None) -> User:
    user = User(id=uuid.uuid4(), email=email, name=name, role=role)
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def athlete(db: AsyncSession) -> User:
    return await make_user(db, "athlete@example.com", "Alex Athlete", UserRole.ATHLETE)


@pytest.fixture
async def coach_user(db: AsyncSession) -> User:
    return await make_user(db, "coach@example.com", "Casey Coach", UserRole.COACH)


@pytest.fixture
async def coach_profile(db: AsyncSession, coach_user: User) -> CoachProfile:
    profile = CoachProfile(
        id=uuid.uuid4(),
        user_id=coach_user.id,
        display_name="Casey Coach",
        sports=["tennis"],
        service_cities=["Portland"],
        bio="Baseline specialist.",
        hourly_rate=Decimal("75.00"),
        phone="+15035550100",
        connect_account_id="acct_test_coach",
        onboarding_complete=True,
    )
    db.add(profile)
    await db.commit()
    return profile


def future_start(days: int = 2) -> datetime:
    now = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)
    return now + timedelta(days=days)


async def make_slot(
    db: AsyncSession, coach: CoachProfile, start: Optional[datetime] = None, minutes: int = 60
) -> AvailabilitySlot:
    start = start or future_start()
    slot = AvailabilitySlot(
        id=uuid.uuid4(),
        coach_id=coach.id,
        start_time=start,
        end_time=start + timedelta(minutes=minutes),
    )
    db.add(slot)
    await db.commit()
    return slot


@pytest.fixture
async def slot(db: AsyncSession, coach_profile: CoachProfile) -> AvailabilitySlot:
    return await make_slot(db, coach_profile)


def booking_payload(coach: CoachProfile, slot: AvailabilitySlot, **extra) -> dict:
    return {"coachId": str(coach.id), "slotId": str(slot.id), **extra}
