import hashlib
import hmac
import os
import sys
import tempfile
import time
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Module-level singletons read these at import time.
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="marketplace-tests-")
os.environ["MARKETPLACE_DB_PATH"] = os.path.join(_TEST_DATA_DIR, "marketplace.sqlite3")

from marketplace.models import JobRequestCreate, JobStatusUpdateRequest, Principal  # noqa: E402
from marketplace.services.database import Database  # noqa: E402
from marketplace.services.job_store import JobStore  # noqa: E402
from marketplace.services.ledger import BalanceLedger  # noqa: E402
from marketplace.services.payment_gateway import GatewayIntent, StripeGateway  # noqa: E402
from marketplace.services.payment_service import PaymentService  # noqa: E402
from marketplace.services.settings_store import SettingsStore  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway(StripeGateway):
    """Records intents locally; webhook verification stays the real Stripe check."""

    def __init__(self):
        super().__init__(secret_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET, tolerance=300)
        self.intents: dict[str, GatewayIntent] = {}
        self.intent_status = "succeeded"
        self.retrieve_calls = 0
        self.cancelled: list[str] = []

    def cancel_intent(self, intent_id):
        self.cancelled.append(intent_id)
        intent = self.intents[intent_id]
        intent.status = "canceled"
        return intent

    def create_intent(self, amount_minor_units, currency, metadata, description=None):
        intent_id = f"pi_test_{uuid4().hex[:10]}"
        intent = GatewayIntent(
            id=intent_id,
            status="requires_payment_method",
            client_secret=f"{intent_id}_secret_abc",
            amount=amount_minor_units,
            currency=currency,
            metadata=dict(metadata),
        )
        self.intents[intent_id] = intent
        return intent

    def retrieve_intent(self, intent_id):
        self.retrieve_calls += 1
        intent = self.intents[intent_id]
        return GatewayIntent(
            id=intent.id,
            status=self.intent_status,
            client_secret=intent.client_secret,
            amount=intent.amount,
            currency=intent.currency,
            metadata=intent.metadata,
        )


def sign_webhook(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    ts = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def unique_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:8]}"


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def stores(tmp_path, fake_gateway):
    db = Database(db_path=str(tmp_path / "marketplace.sqlite3"))
    settings = SettingsStore(db=db)
    jobs = JobStore(db=db)
    ledger = BalanceLedger(db=db, settings=settings)
    payments = PaymentService(db=db, settings=settings, jobs=jobs, ledger=ledger, gateway=fake_gateway)
    return SimpleNamespace(db=db, settings=settings, jobs=jobs, ledger=ledger, payments=payments, gateway=fake_gateway)


@pytest.fixture
def client_user():
    return Principal(id=unique_id("client"), role="client")


@pytest.fixture
def provider_user():
    return Principal(id=unique_id("provider"), role="provider")


@pytest.fixture
def admin_user():
    return Principal(id=unique_id("admin"), role="admin")


def job_payload(provider_id: str, **overrides) -> JobRequestCreate:
    payload = {
        "title": "Weld inspection",
        "description": "Inspect pipeline welds on site",
        "location": "Plant 4",
        "region": "north",
        "assigned_provider_id": provider_id,
        "required_services": ["ultrasonic testing"],
        "estimated_total": Decimal("100"),
    }
    payload.update(overrides)
    return JobRequestCreate(**payload)


@pytest.fixture
def make_closed_job(stores):
    def _make(client: Principal, provider: Principal, **overrides):
        job = stores.jobs.create_job(client, job_payload(provider.id, **overrides))
        return stores.jobs.update_status(provider, job.id, JobStatusUpdateRequest(status="closed"))

    return _make
