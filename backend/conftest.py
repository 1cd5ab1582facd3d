# backend/conftest.py
import json
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import fakeredis
import pytest

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from backend.core.config import Settings
from backend.core.database import create_all_tables, drop_all_tables, get_session_factory, init_engine
from backend.core.services import build_services
from backend.features.billing.signature import sign_payload
from backend.features.notifications.service import RecordingNotifier

WEBHOOK_SECRET = "whsec_test_secret"

# Mid-month, mid-day: far from both daily and monthly boundaries
DEFAULT_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Mutable clock injected into ledger and ingestor."""

    def __init__(self, now: datetime = DEFAULT_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return now


class WebhookFactory:
    """Builds provider envelopes and their signatures."""

    def __init__(self, clock: FakeClock, secret: str = WEBHOOK_SECRET):
        self.clock = clock
        self.secret = secret

    def event(
        self,
        event_name: str,
        data_id: str,
        attributes: Optional[Dict[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
        event_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        data_type: str = "subscriptions",
    ) -> Dict[str, Any]:
        created = created_at or self.clock()
        meta: Dict[str, Any] = {
            "event_name": event_name,
            "event_created_at": created.isoformat().replace("+00:00", "Z"),
        }
        if event_id:
            meta["event_id"] = event_id
        if user_id:
            meta["custom_data"] = {"user_id": user_id}
        return {
            "meta": meta,
            "data": {"id": data_id, "type": data_type, "attributes": attributes or {}},
        }

    def sign(self, envelope: Dict[str, Any]) -> Tuple[bytes, str]:
        body = json.dumps(envelope).encode()
        return body, self.sign_bytes(body)

    def sign_bytes(self, body: bytes) -> str:
        return sign_payload(self.secret, body)


@pytest.fixture(scope="function", autouse=True)
def database():
    """Fresh in-memory SQLite schema for every test."""
    engine = init_engine("sqlite://")
    create_all_tables()
    yield engine
    drop_all_tables()


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return Settings(
        ENV="test",
        DATABASE_URL="sqlite://",
        BILLING_WEBHOOK_SECRET=WEBHOOK_SECRET,
        BILLING_VARIANT_MONTHLY="111",
        BILLING_VARIANT_ANNUAL="222",
        BILLING_VARIANT_FAMILY_MONTHLY="333",
        QUOTA_LOCK_WAIT_SECONDS=0.05,
        QUOTA_LOCK_POLL_SECONDS=0.01,
    )


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def services(database, redis_client, test_settings, notifier, clock):
    return build_services(
        get_session_factory(),
        redis_client,
        test_settings,
        notifier=notifier,
        clock=clock,
    )


@pytest.fixture
def webhooks(clock):
    return WebhookFactory(clock)


@pytest.fixture
def client(services):
    """TestClient bound to the test container (lifespan not run)."""
    from fastapi.testclient import TestClient
    from backend.main import app

    app.state.services = services
    yield TestClient(app, raise_server_exceptions=False)
    app.state.services = None
