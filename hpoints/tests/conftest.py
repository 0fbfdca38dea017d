from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from hpoints.api import create_app
from hpoints.config import Settings
from hpoints.products import ProductService
from hpoints.redemptions import RedemptionService
from hpoints.service import LedgerService
from hpoints.storage import InMemoryStorage
from hpoints.validation import WorkoutValidationService


class FakeClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(_env_file=None, expiration_days=180, expiring_window_days=30)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def ledger(storage, settings, clock):
    return LedgerService(storage, settings, clock)


@pytest.fixture
def validation(ledger):
    return WorkoutValidationService(ledger)


@pytest.fixture
def products(ledger):
    return ProductService(ledger.storage, ledger.clock)


@pytest.fixture
def redemptions(ledger, products):
    return RedemptionService(ledger, products)


@pytest.fixture
def client(storage, settings, clock):
    return TestClient(create_app(storage, settings, clock))
