import os

# configuration is read at import time
os.environ["LEDGER_BACKEND"] = "memory"
os.environ["CALLBACK_BACKEND"] = "memory"
os.environ["PAYMENT_PROVIDER"] = "mockpay"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["STRUCTURED_LOGS_ENABLED"] = "0"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "test-pass"
os.environ["MOCK_SECRET"] = "test-secret"
os.environ["PUBLIC_BASE_URL"] = "http://testserver"

import pytest  # noqa: E402

from espazza.capacity import Capacity  # noqa: E402
from espazza.discounts import DiscountResolver  # noqa: E402
from espazza.lifecycle import PurchaseLifecycleManager  # noqa: E402
from espazza.model.entities import ItemRef  # noqa: E402
from espazza.model.ledger import MemoryLedgerStore  # noqa: E402
from espazza.payments.mockpay import MockPay  # noqa: E402


@pytest.fixture
def store():
    return MemoryLedgerStore()


@pytest.fixture
def discounts(store):
    return DiscountResolver(store)


@pytest.fixture
def capacity(store):
    return Capacity(store)


@pytest.fixture
def mockpay():
    return MockPay("test-secret")


@pytest.fixture
def manager(store, mockpay):
    return PurchaseLifecycleManager(store, adapter=mockpay,
                                    public_base_url="http://testserver")


@pytest.fixture
def ticket():
    return ItemRef.parse("ticket:gig-1")


@pytest.fixture
def release():
    return ItemRef.parse("release:42")
