"""Tests for the claim ledger."""

import re
import sqlite3
from datetime import timedelta
from unittest.mock import MagicMock

import httpx
import pytest

from models import ClaimStatus
from services.claims import (
    ClaimFailure,
    ClaimLedger,
    cooldown_remaining_minutes,
    redemption_code,
)
from services.drops import DropSourceError, InMemoryDropSource
from services.supabase_client import SupabaseDropSource

USER = "user-abcd"
OTHER_USER = "user-wxyz"


class FlakySource(InMemoryDropSource):
    """Drop source whose reads or writes can be made to fail."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_reads = False
        self.fail_writes = False

    def get_drop(self, drop_id):
        if self.fail_reads:
            raise DropSourceError("network down")
        return super().get_drop(drop_id)

    def record_claim(self, drop_id, user_id):
        if self.fail_writes:
            raise DropSourceError("write rejected")
        super().record_claim(drop_id, user_id)


def test_successful_claim(ledger, drops, store, make_drop, now):
    drops.put(make_drop(quantity=3))

    result = ledger.attempt_claim(USER, "drop-0001")

    assert result.success is True
    assert result.failure is None
    assert result.code == "GRB-ABCD01"
    assert result.claim.status == ClaimStatus.ACTIVE
    assert result.claim.claimed_at == now
    assert drops.get_drop("drop-0001").claimed_by == [USER]
    assert drops.get_drop("drop-0001").remaining == 2
    assert store.get_claim(USER, "drop-0001").code == "GRB-ABCD01"
    assert ledger.current[USER].code == "GRB-ABCD01"
    assert ledger.current[USER].drop.remaining == 2


def test_redemption_code_format():
    code = redemption_code("firebase-uid-9f3k", "drop-xyz42")
    assert code == "GRB-9F3K42"
    assert re.fullmatch(r"GRB-[A-Z0-9]{4}.{2}", code)
    assert redemption_code("ab", "7", prefix="") == "AB7"


def test_last_unit_then_fully_claimed(ledger, drops, make_drop):
    drops.put(make_drop(quantity=1))

    first = ledger.attempt_claim(USER, "drop-0001")
    second = ledger.attempt_claim(OTHER_USER, "drop-0001")

    assert first.success is True
    assert second.success is False
    assert second.failure == ClaimFailure.FULLY_CLAIMED


def test_already_claimed(ledger, drops, make_drop):
    drops.put(make_drop(claimed_by=[USER]))

    result = ledger.attempt_claim(USER, "drop-0001")

    assert result.failure == ClaimFailure.ALREADY_CLAIMED
    assert drops.get_drop("drop-0001").claimed_by == [USER]


def test_already_claimed_wins_over_fully_claimed(ledger, drops, make_drop):
    drops.put(make_drop(quantity=1, claimed_by=[USER]))
    assert ledger.attempt_claim(USER, "drop-0001").failure == ClaimFailure.ALREADY_CLAIMED


def test_missing_drop(ledger):
    result = ledger.attempt_claim(USER, "nope")
    assert result.failure == ClaimFailure.NOT_FOUND
    assert result.message == "Drop not found."


def test_expired_drop_is_not_found(ledger, drops, make_drop, now):
    drops.put(make_drop(expires_at=now - timedelta(seconds=1)))
    result = ledger.attempt_claim(USER, "drop-0001")
    assert result.failure == ClaimFailure.NOT_FOUND
    assert "expired" in result.message


def test_drop_without_expiry_cannot_be_claimed(ledger, drops, make_drop):
    drops.put(make_drop(expires_at=None))
    assert ledger.attempt_claim(USER, "drop-0001").failure == ClaimFailure.NOT_FOUND


def test_unauthenticated(ledger, drops, make_drop):
    drops.put(make_drop())
    result = ledger.attempt_claim("", "drop-0001")
    assert result.failure == ClaimFailure.UNAUTHENTICATED
    assert drops.get_drop("drop-0001").claimed_by == []


def test_one_active_claim_only(ledger, drops, make_drop):
    drops.put(make_drop("drop-0001", title="Free Tacos"))
    drops.put(make_drop("drop-0002", title="Half-price Churros"))

    assert ledger.attempt_claim(USER, "drop-0001").success is True
    result = ledger.attempt_claim(USER, "drop-0002")

    assert result.failure == ClaimFailure.ONE_ACTIVE_CLAIM_ONLY
    assert '"Free Tacos"' in result.message
    assert drops.get_drop("drop-0002").claimed_by == []


def test_cooldown_across_vendors(ledger, drops, make_drop, clock, now):
    drops.put(make_drop("drop-a1", vendor_id="truck-a", expires_at=now + timedelta(minutes=10)))
    drops.put(make_drop("drop-b1", vendor_id="truck-b", expires_at=now + timedelta(hours=3)))

    assert ledger.attempt_claim(USER, "drop-a1").success is True

    clock.advance(minutes=20)
    blocked = ledger.attempt_claim(USER, "drop-b1")
    assert blocked.failure == ClaimFailure.COOLDOWN_ACTIVE
    assert blocked.wait_minutes == 40
    assert "40" in blocked.message

    clock.advance(minutes=39, seconds=30)
    assert ledger.attempt_claim(USER, "drop-b1").wait_minutes == 1

    clock.advance(seconds=30)
    assert ledger.attempt_claim(USER, "drop-b1").success is True


def test_same_vendor_has_no_cooldown(ledger, drops, make_drop, clock, now):
    drops.put(make_drop("drop-a1", vendor_id="truck-a", expires_at=now + timedelta(minutes=10)))
    drops.put(make_drop("drop-a2", vendor_id="truck-a", expires_at=now + timedelta(hours=3)))

    assert ledger.attempt_claim(USER, "drop-a1").success is True
    clock.advance(minutes=15)

    assert ledger.attempt_claim(USER, "drop-a2").success is True


def test_cooldown_remaining_rounds_up(now):
    assert cooldown_remaining_minutes(now, now) == 60
    assert cooldown_remaining_minutes(now, now + timedelta(minutes=59, seconds=59)) == 1
    assert cooldown_remaining_minutes(now, now + timedelta(minutes=30, seconds=1)) == 30


def test_read_failure_is_unavailable(store, clock, make_drop):
    source = FlakySource([make_drop()])
    source.fail_reads = True
    ledger = ClaimLedger(source, store, now_provider=clock, watch=False)

    result = ledger.attempt_claim(USER, "drop-0001")

    assert result.failure == ClaimFailure.UNAVAILABLE
    assert store.get_claims(USER) == []


def test_write_failure_records_nothing(store, clock, make_drop):
    source = FlakySource([make_drop()])
    source.fail_writes = True
    ledger = ClaimLedger(source, store, now_provider=clock, watch=False)

    result = ledger.attempt_claim(USER, "drop-0001")

    assert result.failure == ClaimFailure.UNAVAILABLE
    assert store.get_history(USER) == []
    assert USER not in ledger.current


def test_per_call_clock(ledger, drops, make_drop, now):
    drops.put(make_drop())
    result = ledger.attempt_claim(USER, "drop-0001", now_provider=lambda: now + timedelta(hours=2))
    assert result.failure == ClaimFailure.NOT_FOUND


def test_local_write_failure_leaves_drop_untouched(ledger, drops, store, make_drop, monkeypatch):
    drops.put(make_drop(quantity=1))

    def broken_add(claim):
        raise sqlite3.OperationalError("disk I/O error")

    with monkeypatch.context() as patch:
        patch.setattr(store, "add_claim", broken_add)
        result = ledger.attempt_claim(USER, "drop-0001")

    assert result.failure == ClaimFailure.UNAVAILABLE
    assert drops.get_drop("drop-0001").claimed_by == []
    assert USER not in ledger.current

    retry = ledger.attempt_claim(USER, "drop-0001")
    assert retry.success is True
    assert store.get_claim(USER, "drop-0001").code == retry.code


def test_local_read_failure_is_unavailable(ledger, drops, store, make_drop, monkeypatch):
    drops.put(make_drop())

    def broken_history(user_id, now):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(store, "expire_lapsed", broken_history)

    result = ledger.attempt_claim(USER, "drop-0001")

    assert result.failure == ClaimFailure.UNAVAILABLE
    assert drops.get_drop("drop-0001").claimed_by == []


@pytest.mark.parametrize(
    "error",
    [httpx.ConnectError("down"), httpx.ReadTimeout("slow")],
)
def test_supabase_transport_failure_is_unavailable(store, clock, error):
    client = MagicMock()
    client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.side_effect = error
    ledger = ClaimLedger(SupabaseDropSource(client=client), store, now_provider=clock, watch=False)

    result = ledger.attempt_claim(USER, "drop-0001")

    assert result.success is False
    assert result.failure == ClaimFailure.UNAVAILABLE
    assert store.get_history(USER) == []


def test_supabase_update_failure_rolls_back_local_claim(store, clock, now):
    client = MagicMock()
    row = {
        "id": "drop-0001",
        "truck_id": "truck-a",
        "quantity": 2,
        "claimed_by": [],
        "expires_at": (now + timedelta(hours=1)).isoformat(),
    }
    client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value = MagicMock(data=[row])
    client.table.return_value.update.return_value.eq.return_value.execute.side_effect = httpx.ConnectError("down")
    ledger = ClaimLedger(SupabaseDropSource(client=client), store, now_provider=clock, watch=False)

    result = ledger.attempt_claim(USER, "drop-0001")

    assert result.failure == ClaimFailure.UNAVAILABLE
    assert store.get_history(USER) == []
    assert USER not in ledger.current


class TestSeveralUsers:
    def test_each_user_has_own_current_claim(self, ledger, drops, make_drop):
        drops.put(make_drop("drop-0001", quantity=2))

        ledger.attempt_claim(USER, "drop-0001")
        ledger.attempt_claim(OTHER_USER, "drop-0001")

        assert ledger.current[USER].code == "GRB-ABCD01"
        assert ledger.current[OTHER_USER].code == "GRB-WXYZ01"

    def test_restoring_another_user_keeps_first_claim_watched(self, ledger, drops, store, make_drop):
        drops.put(make_drop("drop-0001", title="Free Tacos"))
        drops.put(make_drop("drop-0002"))
        ledger.attempt_claim(USER, "drop-0001")

        assert ledger.restore(OTHER_USER) is None
        assert USER in ledger.current

        drops.delete("drop-0001")
        assert ledger.check_expiry(USER) is True
        assert store.get_claim(USER, "drop-0001").status == ClaimStatus.EXPIRED
        assert ledger.attempt_claim(USER, "drop-0002").success is True

    def test_expiry_is_per_user(self, ledger, drops, make_drop, now):
        drops.put(make_drop("drop-0001", expires_at=now + timedelta(hours=2)))
        drops.put(make_drop("drop-0002", quantity=1))
        ledger.attempt_claim(USER, "drop-0001")
        ledger.attempt_claim(OTHER_USER, "drop-0002")

        drops.delete("drop-0002")

        assert ledger.check_expiry(USER) is False
        assert ledger.check_expiry(OTHER_USER) is True
        assert USER in ledger.current
        assert OTHER_USER not in ledger.current


class TestExpiry:
    def test_nothing_to_watch(self, ledger):
        assert ledger.check_expiry(USER) is True

    def test_live_drop_keeps_polling(self, ledger, drops, make_drop):
        drops.put(make_drop(quantity=4))
        ledger.attempt_claim(USER, "drop-0001")
        drops.record_claim("drop-0001", OTHER_USER)

        assert ledger.check_expiry(USER) is False
        assert ledger.current[USER].drop.remaining == 2

    def test_expired_drop_expires_claim(self, ledger, drops, store, make_drop, clock):
        drops.put(make_drop())
        ledger.attempt_claim(USER, "drop-0001")

        clock.advance(hours=1)

        assert ledger.check_expiry(USER) is True
        assert USER not in ledger.current
        assert store.get_claim(USER, "drop-0001").status == ClaimStatus.EXPIRED

    def test_deleted_drop_expires_claim(self, ledger, drops, store, make_drop):
        drops.put(make_drop())
        ledger.attempt_claim(USER, "drop-0001")
        drops.delete("drop-0001")

        assert ledger.check_expiry(USER) is True
        assert store.get_claim(USER, "drop-0001").status == ClaimStatus.EXPIRED

    def test_read_error_keeps_claim(self, store, clock, make_drop):
        source = FlakySource([make_drop()])
        ledger = ClaimLedger(source, store, now_provider=clock, watch=False)
        ledger.attempt_claim(USER, "drop-0001")

        source.fail_reads = True

        assert ledger.check_expiry(USER) is False
        assert USER in ledger.current
        assert store.get_claim(USER, "drop-0001").status == ClaimStatus.ACTIVE

    def test_expired_claim_frees_user(self, ledger, drops, make_drop, clock, now):
        drops.put(make_drop("drop-a1", expires_at=now + timedelta(minutes=5)))
        drops.put(make_drop("drop-a2", expires_at=now + timedelta(hours=2)))
        ledger.attempt_claim(USER, "drop-a1")

        clock.advance(minutes=5)
        ledger.check_expiry(USER)

        assert ledger.attempt_claim(USER, "drop-a2").success is True


class TestRestore:
    def test_restore_active_claim(self, drops, store, clock, make_drop):
        drops.put(make_drop())
        ClaimLedger(drops, store, now_provider=clock, watch=False).attempt_claim(
            USER, "drop-0001"
        )

        fresh = ClaimLedger(drops, store, now_provider=clock, watch=False)
        current = fresh.restore(USER)

        assert current.code == "GRB-ABCD01"
        assert current.drop.claimed_by == [USER]
        assert fresh.has_active_claim(USER, "drop-0001") is True

    def test_restore_expires_lapsed_claims(self, ledger, drops, store, make_drop, clock):
        drops.put(make_drop())
        ledger.attempt_claim(USER, "drop-0001")
        clock.advance(hours=2)

        assert ledger.restore(USER) is None
        assert store.get_claim(USER, "drop-0001").status == ClaimStatus.EXPIRED
        assert ledger.has_active_claim(USER, "drop-0001") is False

    def test_restore_without_user(self, ledger):
        assert ledger.restore("") is None


@pytest.mark.parametrize("failure", list(ClaimFailure))
def test_failure_values_are_stable_strings(failure):
    assert isinstance(failure.value, str)
    assert failure.value[0].isupper()
