"""Pytest bootstrap configuration.

Ensure mandatory environment variables are set before test collection
and module imports that depend on application settings.
"""
import os

# Mandatory secret key for settings validation
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("DEBUG", "false")
os.environ.setdefault("DATABASE__URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT__WEBHOOK__SECRET", "whsec_test")
os.environ.setdefault("PAYMENT__GATEWAY__API_KEY", "gw_test_key")

from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402

from tests.fakes import FakeGateway, FakeLedger, InMemoryStore, RecordingPublisher  # noqa: E402


@pytest.fixture
def store() -> InMemoryStore:
    s = InMemoryStore()
    s.add_user(id=1, name="Asha Rao", email="asha@example.com", mobile="+919800000001")
    s.add_user(id=2, name="Ops Admin", email="ops@example.com", is_superuser=True)
    s.add_plan(id=7, name="Pro Annual", price=Decimal("999.00"), currency="INR", description="Pro plan, 12 months")
    return s


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()
