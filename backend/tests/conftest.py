"""Shared pytest fixtures for test suite"""
import json
import os
import sys
from datetime import datetime, timezone, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple
from unittest.mock import patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Test configuration must be in place before the app reads settings
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ENVIRONMENT", "test")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from app.main import app
from app.db.session import get_db
from app.db import redis as redis_module
from app.models import Base
from app.models.plan import Plan
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.user import User
from app.schemas.billing import BillingEvent
from app.services.billing_gateway import BillingGateway, get_billing_gateway


WEBHOOK_SECRET = "native_test_secret"

# Fixed reference point for event timestamps
T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(hours: float) -> datetime:
    """Timestamp ``hours`` after T0"""
    return T0 + timedelta(hours=hours)


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


class FakeBillingGateway(BillingGateway):
    """In-memory provider adapter.

    Outbound calls go through ``BillingGateway._call`` so retry and error
    translation behave as in production. Queue exceptions on ``failures`` to
    make the next invocations fail in order.
    """

    name = "fake"

    def __init__(self, webhook_secret: str = WEBHOOK_SECRET, max_retries: int = 1):
        super().__init__(webhook_secret=webhook_secret, max_retries=max_retries)
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: List[Exception] = []
        self.price_counter = 0

    def _invoke(self, operation: str, result: Any, **kwargs):
        def provider_call():
            self.calls.append((operation, kwargs))
            if self.failures:
                raise self.failures.pop(0)
            return result
        return self._call(operation, provider_call)

    def calls_for(self, operation: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == operation]

    def create_checkout_session(self, customer_ref, external_price_id, trial_days=None, coupon_code=None, metadata=None):
        return self._invoke(
            "create_checkout_session",
            f"https://billing.example/checkout/{customer_ref}/{external_price_id}",
            customer_ref=customer_ref,
            external_price_id=external_price_id,
            trial_days=trial_days,
            coupon_code=coupon_code,
            metadata=metadata,
        )

    def cancel_subscription(self, external_subscription_id, at_period_end):
        return self._invoke(
            "cancel_subscription", True,
            external_subscription_id=external_subscription_id, at_period_end=at_period_end,
        )

    def reactivate_subscription(self, external_subscription_id):
        return self._invoke("reactivate_subscription", True, external_subscription_id=external_subscription_id)

    def open_billing_portal(self, customer_ref, return_url):
        return self._invoke(
            "open_billing_portal", f"https://billing.example/portal/{customer_ref}",
            customer_ref=customer_ref, return_url=return_url,
        )

    def resolve_or_create_customer(self, email, name=None):
        return self._invoke("resolve_or_create_customer", f"cus_{email.split('@')[0]}", email=email, name=name)

    def create_price(self, name, description, price, currency):
        self.price_counter += 1
        return self._invoke(
            "create_price", f"price_fake_{self.price_counter}",
            name=name, description=description, price=price, currency=currency,
        )


def native_envelope(
    event_id: str,
    event_type: str,
    occurred_at: datetime,
    **data: Any
) -> Dict[str, Any]:
    return {
        "external_event_id": event_id,
        "type": event_type,
        "occurred_at": occurred_at.isoformat(),
        "data": {k: (v.isoformat() if isinstance(v, datetime) else v) for k, v in data.items()},
    }


def make_event(event_id: str, event_type: str, occurred_at: datetime, **data: Any) -> BillingEvent:
    return BillingEvent.model_validate(native_envelope(event_id, event_type, occurred_at, **data))


def sign(gateway: BillingGateway, envelope: Dict[str, Any]) -> Tuple[bytes, str]:
    payload = json.dumps(envelope).encode("utf-8")
    return payload, f"sha256={gateway.compute_signature(payload)}"


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)

    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function")
def mock_redis():
    """Mock Redis client using fakeredis"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, '_client', fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def gateway() -> FakeBillingGateway:
    return FakeBillingGateway()


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, gateway: FakeBillingGateway) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, mocked Redis and the fake gateway"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_billing_gateway] = lambda: gateway

    try:
        # Disable OpenTelemetry instrumentation in tests
        with patch('app.core.otel.initialize_otel', return_value=False):
            with patch('app.core.otel.setup_otel_logging', return_value=False):
                with patch('app.core.otel.instrument_fastapi'):
                    with patch('app.core.otel.instrument_sqlalchemy'):
                        with TestClient(app, raise_server_exceptions=False) as test_client:
                            yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def login(client: TestClient, mock_redis) -> Callable[[User], TestClient]:
    """Return a helper that authenticates the client as the given user"""

    def _login(user: User) -> TestClient:
        session_id = f"test-session-{user.id}"
        mock_redis.setex(f"session:{session_id}", 2592000, str(user.id))
        client.cookies.set("session_id", session_id)
        return client

    return _login


def _create_user(db: Session, email: str, name: str, is_admin: bool = False) -> User:
    user = User(email=email, name=name, is_admin=is_admin)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture(scope="function")
def creator(db_session: Session) -> User:
    return _create_user(db_session, "creator@example.com", "Creator")


@pytest.fixture(scope="function")
def subscriber(db_session: Session) -> User:
    return _create_user(db_session, "reader@example.com", "Reader")


@pytest.fixture(scope="function")
def other_user(db_session: Session) -> User:
    return _create_user(db_session, "other@example.com", "Other")


@pytest.fixture(scope="function")
def admin_user(db_session: Session) -> User:
    return _create_user(db_session, "admin@example.com", "Admin", is_admin=True)


@pytest.fixture(scope="function")
def plan(db_session: Session, creator: User) -> Plan:
    plan = Plan(
        creator_id=creator.id,
        name="Premium Newsletter",
        description="Weekly deep dives",
        price=1500,
        currency="USD",
        features=["Weekly issue", "Archive access"],
        is_active=True,
        external_price_id="price_premium",
    )
    db_session.add(plan)
    db_session.commit()
    db_session.refresh(plan)
    return plan


@pytest.fixture(scope="function")
def make_subscription(db_session: Session) -> Callable[..., Subscription]:
    """Insert a subscription row directly in a given state"""

    def _make(
        subscriber: User,
        plan: Plan,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        external_subscription_id: Optional[str] = None,
        last_event_at: Optional[datetime] = None,
        activated_at: Optional[datetime] = None,
        canceled_at: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
        current_period_end: Optional[datetime] = None,
    ) -> Subscription:
        subscription = Subscription(
            subscriber_id=subscriber.id,
            plan_id=plan.id,
            status=status.value,
            external_subscription_id=external_subscription_id,
            last_event_at=last_event_at,
            activated_at=activated_at,
            canceled_at=canceled_at,
            cancel_at_period_end=cancel_at_period_end,
            current_period_end=current_period_end,
        )
        db_session.add(subscription)
        db_session.commit()
        db_session.refresh(subscription)
        return subscription

    return _make


@pytest.fixture(scope="function")
def mock_email_service():
    """Mock email service (Resend) to avoid sending actual emails"""
    with patch('app.services.email_service.resend') as mock_resend:
        with patch('app.services.email_service.settings') as mock_settings:
            mock_settings.RESEND_API_KEY = "re_test_123"
            mock_settings.RESEND_FROM_EMAIL = "Billing <billing@example.com>"
            mock_settings.FRONTEND_URL = "http://localhost:3000"
            mock_resend.Emails.send.return_value = {"id": "email_test123"}
            yield mock_resend
