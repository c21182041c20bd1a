"""
Pytest configuration and shared fixtures.
"""

from datetime import datetime, timezone
from typing import AsyncGenerator

import pytest
import stripe
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from helpers import MONTHLY_PRICE, WEBHOOK_SECRET, YEARLY_PRICE
from subsync.core.errors import PaymentProviderError
from subsync.core.settings import Settings
from subsync.db import models
from subsync.main import create_app
from subsync.services.payments.service import CheckoutResult
from subsync.services.subscriptions.plans import PlanClassifier
from subsync.services.subscriptions.service import SubscriptionReconciler
from subsync.services.webhooks.dispatcher import WebhookDispatcher
from subsync.services.webhooks.events import SubscriptionSnapshot, read_subscription

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeGateway:
    """Stands in for PaymentGateway; records calls and serves canned subscriptions as SDK objects."""

    def __init__(self) -> None:
        self.subscriptions: dict[str, dict] = {}
        self.fail_with: Exception | None = None
        self.checkout_calls: list[dict] = []
        self.portal_calls: list[dict] = []
        self.retrieved: list[str] = []

    async def create_checkout_session(self, **kwargs) -> CheckoutResult:
        if self.fail_with:
            raise self.fail_with
        self.checkout_calls.append(kwargs)
        return CheckoutResult(session_id="cs_test_1", url="https://checkout.stripe.test/cs_test_1")

    async def create_portal_session(self, **kwargs) -> str:
        if self.fail_with:
            raise self.fail_with
        self.portal_calls.append(kwargs)
        return "https://billing.stripe.test/session/bps_1"

    async def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        self.retrieved.append(subscription_id)
        if self.fail_with:
            raise self.fail_with
        if subscription_id not in self.subscriptions:
            raise PaymentProviderError(f"No such subscription: '{subscription_id}'")
        # Same object shape the SDK client returns.
        return read_subscription(stripe.StripeObject.construct_from(self.subscriptions[subscription_id], "sk_test"))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        base_url="http://app.test",
        database_url=TEST_DATABASE_URL,
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_id_monthly=MONTHLY_PRICE,
        stripe_price_id_yearly=YEARLY_PRICE,
        webhook_timeout_seconds=5,
        stripe_request_timeout_seconds=2,
    )


@pytest.fixture
async def db_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
async def profiles(session_maker) -> dict[str, models.UserProfile]:
    """u1 is not linked yet; u2 is already linked to cus_2."""
    async with session_maker() as session:
        rows = {
            "u1": models.UserProfile(id="u1", email="u1@example.com"),
            "u2": models.UserProfile(id="u2", email="u2@example.com", provider_customer_id="cus_2"),
        }
        session.add_all(rows.values())
        await session.commit()
    return rows


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def classifier() -> PlanClassifier:
    return PlanClassifier(MONTHLY_PRICE, YEARLY_PRICE)


@pytest.fixture
def reconciler(classifier, gateway) -> SubscriptionReconciler:
    return SubscriptionReconciler(classifier, gateway)


@pytest.fixture
def dispatcher(reconciler) -> WebhookDispatcher:
    return WebhookDispatcher(reconciler)


@pytest.fixture
def app(settings, gateway, db_engine):
    return create_app(settings, gateway=gateway, engine=db_engine)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def fetch_subscription(session_maker):
    """Read the stored subscription for a user through a fresh session."""

    async def _fetch(user_id: str) -> models.Subscription | None:
        async with session_maker() as session:
            res = await session.execute(select(models.Subscription).where(models.Subscription.user_id == user_id))
            return res.scalars().first()

    return _fetch


@pytest.fixture
def count_subscriptions(session_maker):
    async def _count() -> int:
        async with session_maker() as session:
            res = await session.execute(select(models.Subscription))
            return len(res.scalars().all())

    return _count


@pytest.fixture
async def u2_record(profiles, session_maker) -> models.Subscription:
    """u2 (cus_2) with an active monthly subscription sub_2 written at T0."""
    async with session_maker() as session:
        sub = models.Subscription(
            user_id="u2",
            provider_customer_id="cus_2",
            provider_subscription_id="sub_2",
            status="active",
            plan="premium_monthly",
            current_period_end=datetime(2023, 12, 14, tzinfo=timezone.utc),
            status_event_created=1_700_000_000,
            snapshot_event_created=1_700_000_000,
        )
        session.add(sub)
        await session.commit()
    return sub
