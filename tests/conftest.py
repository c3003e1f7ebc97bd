"""
Pytest Configuration and Fixtures
"""

import os
import sys
import tempfile
from unittest.mock import create_autospec

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ.pop("NAKAPAY_API_KEY", None)
os.environ.pop("NAKAPAY_WEBHOOK_SECRET", None)

from billing.gateway import ExternalInvoice, ExternalInvoiceStatus, NakaPayClient
from billing.ledger import CreditLedger
from billing.service import CreditService
from billing.settlement import PaymentSettlement
from billing.usage import UsageLog
from core.registry import OwnerRegistry
from persistence.database import Database

WEBHOOK_SECRET = "whsec-test-secret"


@pytest.fixture
def temp_db():
    """Create a temporary database file for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.join(tmpdir, "credits.db")


@pytest.fixture
def db(temp_db):
    """Fresh initialized database per test."""
    database = Database(f"sqlite:///{temp_db}")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def registry(db):
    return OwnerRegistry(db)


@pytest.fixture
def ledger(db):
    return CreditLedger(db)


@pytest.fixture
def usage_log(db):
    return UsageLog(db)


@pytest.fixture
def session(registry):
    """An active anonymous session."""
    return registry.create_anonymous_session("test-agent", "127.0.0.1")


@pytest.fixture
def gateway():
    """NakaPay client stand-in handing out sequential invoice ids."""
    client = create_autospec(NakaPayClient, instance=True)
    counter = {"n": 0}

    def create_invoice(amount, description, callback_url=None):
        counter["n"] += 1
        return ExternalInvoice(
            id=f"inv_{counter['n']:04d}",
            payment_request=f"lnbc{amount}n1test{counter['n']}",
            amount=amount,
        )

    client.create_invoice.side_effect = create_invoice
    client.get_invoice_status.return_value = ExternalInvoiceStatus(id="", status="pending")
    return client


@pytest.fixture
def settlement(db, gateway, ledger, registry):
    return PaymentSettlement(
        gateway=gateway,
        ledger=ledger,
        registry=registry,
        db=db,
        webhook_secret=WEBHOOK_SECRET,
        invoice_ttl_minutes=60,
    )


@pytest.fixture
def service(db, gateway):
    return CreditService(db=db, gateway=gateway, webhook_secret=WEBHOOK_SECRET, invoice_ttl_minutes=60)
