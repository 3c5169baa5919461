"""
InvoiceTrail - shared pytest fixtures
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from ivt_core_v1 import HashSigner
from ivt_documents_v1 import LineItem, Party
from ivt_audit_chain_v1 import Actor, ChainLinkBuilder, OriginMeta
from ivt_storage_v1 import InMemoryDocumentStore
from ivt_sequence_v1 import SequenceAllocator
from ivt_billing_service_v1 import BillingDocumentService

class FakeClock:
    """Deterministic clock advancing one second per reading."""

    def __init__(self, start=None, step=timedelta(seconds=1)):
        self.now = start or datetime(2025, 3, 14, 10, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def store():
    return InMemoryDocumentStore(timeout=2.0)

@pytest.fixture
def service(store, clock):
    return BillingDocumentService(
        store,
        allocator=SequenceAllocator(store, backoff_seconds=0),
        builder=ChainLinkBuilder(HashSigner(), clock=clock),
        clock=clock,
        backoff_seconds=0,
    )

@pytest.fixture
def seller():
    return Party(name="Clinica Norte SL", tax_id="B12345678", address="Calle Mayor 1, Madrid")

@pytest.fixture
def buyer():
    return Party(name="Ana Garcia", tax_id="12345678Z")

@pytest.fixture
def items():
    return [
        LineItem(description="Genetic counselling report", quantity=1, unit_price=15000, tax_rate=Decimal("21")),
        LineItem(description="Sample shipping", quantity=2, unit_price=1250, tax_rate=Decimal("21")),
    ]

@pytest.fixture
def actor():
    return Actor(actor_id="user-001", display_name="Dr. Ruiz")

@pytest.fixture
def origin():
    return OriginMeta(address="10.0.0.7", agent="Mozilla/5.0")
