"""Pytest configuration and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from models import DropRecord
from services.claims import ClaimLedger
from services.database import ClaimStore
from services.drops import InMemoryDropSource


class FakeClock:
    """Settable clock for time-dependent code."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def now():
    """A fixed evaluation instant."""
    return datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now):
    return FakeClock(now)


@pytest.fixture
def store(tmp_path):
    """A claim ledger backed by a throwaway SQLite file."""
    return ClaimStore(tmp_path / "claims.db")


@pytest.fixture
def make_drop(now):
    """Factory for drops that expire an hour after ``now``."""

    def _make(drop_id="drop-0001", vendor_id="truck-a", quantity=5, **kwargs):
        kwargs.setdefault("title", "Free Tacos")
        kwargs.setdefault("expires_at", now + timedelta(hours=1))
        return DropRecord(id=drop_id, vendor_id=vendor_id, quantity=quantity, **kwargs)

    return _make


@pytest.fixture
def drops():
    return InMemoryDropSource()


@pytest.fixture
def ledger(drops, store, clock):
    """A ledger that does not start background polling."""
    return ClaimLedger(drops, store, now_provider=clock, watch=False)
