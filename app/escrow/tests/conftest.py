"""
Pytest fixtures for escrow tests.

Service fixtures run against an InMemoryProvider and a FixedClock, so
deadlines and provider calls are fully deterministic. Record fixtures are
built through the service, one lifecycle step at a time.

Usage:
    def test_confirm_releases(service, awaiting_record, seller, provider):
        record = service.confirm(awaiting_record.id, seller)
        assert record.status == EscrowStatus.COMPLETED
"""

from datetime import datetime, timedelta
from datetime import timezone as dt_timezone
from decimal import Decimal

import pytest

from escrow.services import EscrowService
from escrow.tests.factories import (
    AdminUserFactory,
    EscrowRecordFactory,
    PartyFactory,
    UserFactory,
)
from escrow.tests.fakes import FixedClock, InMemoryProvider
from escrow.types import JobSnapshot

START = datetime(2024, 1, 15, 12, 0, tzinfo=dt_timezone.utc)


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def provider():
    """Recording payment provider."""
    return InMemoryProvider()


@pytest.fixture
def clock():
    """Clock frozen at 2024-01-15 12:00 UTC; advance it explicitly."""
    return FixedClock(START)


@pytest.fixture
def service(provider, clock):
    """EscrowService with the reference policy (15% commission, 24h window)."""
    return EscrowService(
        provider=provider,
        clock=clock,
        commission_rate=Decimal("0.15"),
        validation_window_hours=24,
        currency="eur",
        persist_attempts=3,
    )


@pytest.fixture
def no_persist_backoff(mocker):
    """Skip the sleep between persistence retries."""
    return mocker.patch("escrow.services.escrow_service.time.sleep")


@pytest.fixture
def mock_redis(mocker):
    """
    Mock Redis client for distributed lock tests.

    Returns a MagicMock configured for basic lock operations.
    """
    mock_client = mocker.MagicMock()
    mock_client.set.return_value = True
    mock_client.eval.return_value = 1

    mocker.patch(
        "escrow.locks.get_redis_connection",
        return_value=mock_client,
    )

    return mock_client


# =============================================================================
# Parties
# =============================================================================


@pytest.fixture
def seller(db):
    return PartyFactory(display_name="Seller")


@pytest.fixture
def buyer(db):
    return PartyFactory(display_name="Buyer")


@pytest.fixture
def other_party(db):
    return PartyFactory(display_name="Outsider")


@pytest.fixture
def admin_user(db):
    return AdminUserFactory()


@pytest.fixture
def regular_user(db):
    return UserFactory()


# =============================================================================
# Jobs and Records
# =============================================================================


@pytest.fixture
def job(clock):
    """Job priced 100.00, scheduled three days out."""
    return JobSnapshot(
        reference="job:ride-1",
        price=Decimal("100.00"),
        scheduled_at=clock.now() + timedelta(hours=72),
    )


@pytest.fixture
def held_record(service, job, seller):
    """Escrow in HELD with no buyer."""
    return service.create_escrow(job, seller)


@pytest.fixture
def accepted_record(service, held_record, buyer):
    """Escrow in HELD with the buyer assigned."""
    return service.accept(held_record.id, buyer)


@pytest.fixture
def awaiting_record(service, accepted_record, buyer):
    """Escrow in AWAITING_VALIDATION, deadline 24h after START."""
    return service.mark_completed(accepted_record.id, buyer)


@pytest.fixture
def disputed_record(service, awaiting_record, seller):
    """Escrow in DISPUTED, opened by the seller."""
    return service.open_dispute(awaiting_record.id, seller, "Job not done")


@pytest.fixture
def pending_record(db):
    """Bare PENDING record built by the factory (no provider involved)."""
    return EscrowRecordFactory()
