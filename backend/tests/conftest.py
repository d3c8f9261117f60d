"""
Shared fixtures for the coaching pipeline tests.

Everything runs against the in-memory ledger store and a mocked processor;
no database or Stripe account is needed.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from coaching.dependencies import CoachingServices
from coaching.memory_store import InMemoryLedgerStore
from coaching.models import AccountLink, AccountStatus, ChargeResult, RefundResult, TransferResult


class FakeClock:
    """Callable clock that tests move forward explicitly."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 10, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def processor():
    """Mocked StripeProcessor."""
    mock = MagicMock()
    mock.create_transfer = AsyncMock(return_value=TransferResult(
        id="tr_123", amount=4016, currency="cad", destination="acct_coach1", status="paid",
    ))
    mock.list_charges_for_account = AsyncMock(return_value=[])
    mock.retrieve_account = AsyncMock()
    mock.create_account = AsyncMock(return_value=AccountStatus(processor_account_ref="acct_new", provider_id="coach1"))
    mock.create_account_link = AsyncMock(return_value=AccountLink(
        url="https://connect.stripe.com/setup/e/acct_new/abc", expires_at=datetime(2026, 3, 10, 10, 5, tzinfo=timezone.utc),
    ))
    mock.create_charge = AsyncMock(return_value=ChargeResult(
        id="pi_new", client_secret="pi_new_secret", amount=4725, currency="cad", status="requires_payment_method",
    ))
    mock.retrieve_payment = AsyncMock()
    mock.create_refund = AsyncMock(return_value=RefundResult(id="re_1", amount=4725, status="succeeded"))
    mock.verify_event_signature = MagicMock()
    return mock


@pytest.fixture
def services(store, processor, clock):
    return CoachingServices(store, processor, clock)


def payment_intent(
    payment_id="pi_1",
    amount=6075,
    sport="golf",
    tier="2",
    provider_id="coach1",
    player_id="player1",
    routing_mode="separate_transfer",
    **metadata,
):
    """A succeeded payment intent as Stripe delivers it."""
    meta = {
        "provider_id": provider_id,
        "provider_name": "Coach One",
        "sport": sport,
        "tier": tier,
        "player_id": player_id,
        "player_name": "Pat Player",
        "routing_mode": routing_mode,
    }
    meta.update(metadata)
    return {
        "id": payment_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": "cad",
        "status": "succeeded",
        "metadata": {k: v for k, v in meta.items() if v is not None},
        "latest_charge": f"ch_{payment_id}",
        "customer": "cus_1",
    }


@pytest.fixture
def make_intent():
    return payment_intent
