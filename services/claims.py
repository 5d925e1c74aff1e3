"""
Claim lifecycle for limited-quantity drops.

A claim moves NONE -> ACTIVE -> EXPIRED and never back. Uniqueness (one
active claim per user) and the cross-vendor cooldown are enforced against
the device-local ClaimStore only; there is no cross-device lock.
"""

import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Optional

from models import ClaimRecord, ClaimStatus, DropRecord
from services.config import (
    CLAIM_CODE_PREFIX,
    CLAIM_COOLDOWN_MINUTES,
    CLAIM_POLL_SECONDS,
)
from services.database import ClaimStore
from services.drops import DropSource, DropSourceError
from services.polling import Poller
from services.timeparse import utcnow

logger = logging.getLogger(__name__)

COOLDOWN = timedelta(minutes=CLAIM_COOLDOWN_MINUTES)

MSG_CLAIMED = "Drop claimed successfully! Show your code to the truck owner."
MSG_UNAVAILABLE = "Failed to claim drop. Please try again."


class ClaimFailure(str, Enum):
    NOT_FOUND = "NotFound"
    ALREADY_CLAIMED = "AlreadyClaimed"
    FULLY_CLAIMED = "FullyClaimed"
    ONE_ACTIVE_CLAIM_ONLY = "OneActiveClaimOnly"
    COOLDOWN_ACTIVE = "CooldownActive"
    UNAUTHENTICATED = "Unauthenticated"
    UNAVAILABLE = "Unavailable"


@dataclass
class ClaimResult:
    """Outcome of a claim attempt."""

    success: bool
    message: str
    failure: Optional[ClaimFailure] = None
    code: Optional[str] = None
    claim: Optional[ClaimRecord] = None
    wait_minutes: Optional[int] = None

    @classmethod
    def failed(
        cls, failure: ClaimFailure, message: str, wait_minutes: Optional[int] = None
    ) -> "ClaimResult":
        return cls(
            success=False, message=message, failure=failure, wait_minutes=wait_minutes
        )


@dataclass
class CurrentClaim:
    """The claim the UI is currently showing a code and countdown for."""

    claim: ClaimRecord
    code: str
    drop: Optional[DropRecord] = None


def redemption_code(user_id: str, drop_id: str, prefix: str = CLAIM_CODE_PREFIX) -> str:
    code = f"{user_id[-4:].upper()}{drop_id[-2:]}"
    return f"{prefix}-{code}" if prefix else code


def cooldown_remaining_minutes(claimed_at: datetime, now: datetime) -> int:
    """Whole minutes left before a claim from another vendor is allowed."""
    remaining = COOLDOWN - (now - claimed_at)
    return max(math.ceil(remaining.total_seconds() / 60), 1)


class ClaimLedger:
    """
    Attempts, persists and expires claims for the users of this device.

    Responsibilities:
    1. Validate a claim against the shared drop and the local history
    2. Persist accepted claims and append the user to the drop
    3. Poll each user's claimed drop and expire the local claim once it ends

    Every user has their own current claim and expiry poller, so one user's
    session never cancels another user's watcher.
    """

    def __init__(
        self,
        drop_source: DropSource,
        store: ClaimStore,
        now_provider: Callable[[], datetime] = utcnow,
        poll_interval: float = CLAIM_POLL_SECONDS,
        watch: bool = True,
    ):
        """
        Initialize the ledger.

        Args:
            drop_source: Shared drop store
            store: Device-local claim history
            now_provider: Clock used when a call does not pass its own
            poll_interval: Seconds between expiry checks
            watch: Start the expiry poller after a claim (needs a running loop)
        """
        self.drop_source = drop_source
        self.store = store
        self.now_provider = now_provider
        self.poll_interval = poll_interval
        self.watch = watch
        self.current: Dict[str, CurrentClaim] = {}
        self._pollers: Dict[str, Poller] = {}

    def attempt_claim(
        self,
        user_id: str,
        drop_id: str,
        now_provider: Optional[Callable[[], datetime]] = None,
    ) -> ClaimResult:
        """
        Try to claim one unit of a drop.

        Never raises; every outcome is a ClaimResult. The claim is written to
        the local ledger first and rolled back there if the shared drop
        rejects it, so the two never disagree about a claim. The drop read
        and the claimed_by write are not atomic, so concurrent attempts on
        the last unit can both succeed.
        """
        clock = now_provider or self.now_provider

        if not user_id:
            return ClaimResult.failed(
                ClaimFailure.UNAUTHENTICATED, "You must be logged in to claim a drop."
            )

        try:
            drop = self.drop_source.get_drop(drop_id)
        except DropSourceError as e:
            logger.warning(f"Could not read drop {drop_id}: {e}")
            return ClaimResult.failed(ClaimFailure.UNAVAILABLE, MSG_UNAVAILABLE)

        if drop is None:
            return self._reject(ClaimFailure.NOT_FOUND, "Drop not found.", user_id, drop_id)

        now = clock()
        if drop.is_expired(now):
            return self._reject(
                ClaimFailure.NOT_FOUND, "This drop has expired.", user_id, drop_id
            )

        if user_id in drop.claimed_by:
            return self._reject(
                ClaimFailure.ALREADY_CLAIMED,
                "You have already claimed this drop.",
                user_id,
                drop_id,
            )

        if drop.remaining <= 0:
            return self._reject(
                ClaimFailure.FULLY_CLAIMED,
                "This drop has already been fully claimed.",
                user_id,
                drop_id,
            )

        try:
            history = self.store.expire_lapsed(user_id, now)
        except sqlite3.Error as e:
            logger.error(f"Could not read claim history for {user_id}: {e}")
            return ClaimResult.failed(ClaimFailure.UNAVAILABLE, MSG_UNAVAILABLE)

        active = [c for c in history if c.is_active(now)]
        if active:
            return self._reject(
                ClaimFailure.ONE_ACTIVE_CLAIM_ONLY,
                f'You already have an active claim for "{active[0].drop_title}". '
                "You can only claim one drop at a time.",
                user_id,
                drop_id,
            )

        recent_elsewhere = [
            c
            for c in history
            if now - c.claimed_at < COOLDOWN and c.vendor_id != drop.vendor_id
        ]
        if recent_elsewhere:
            latest = max(recent_elsewhere, key=lambda c: c.claimed_at)
            wait = cooldown_remaining_minutes(latest.claimed_at, now)
            result = ClaimResult.failed(
                ClaimFailure.COOLDOWN_ACTIVE,
                f"You recently claimed from another truck. Please wait {wait} more "
                "minutes before claiming from a different truck.",
                wait_minutes=wait,
            )
            logger.info(f"Claim on drop {drop_id} by {user_id} rejected: cooldown {wait}m")
            return result

        code = redemption_code(user_id, drop_id)
        claim = ClaimRecord(
            user_id=user_id,
            drop_id=drop_id,
            vendor_id=drop.vendor_id,
            drop_title=drop.title,
            claimed_at=now,
            expires_at=drop.expires_at,
            status=ClaimStatus.ACTIVE,
            code=code,
        )

        try:
            row_id = self.store.add_claim(claim)
        except sqlite3.Error as e:
            logger.error(f"Could not save claim on drop {drop_id} locally: {e}")
            return ClaimResult.failed(ClaimFailure.UNAVAILABLE, MSG_UNAVAILABLE)

        try:
            self.drop_source.record_claim(drop_id, user_id)
        except DropSourceError as e:
            logger.warning(f"Could not record claim on drop {drop_id}: {e}")
            self._discard(row_id, drop_id)
            return ClaimResult.failed(ClaimFailure.UNAVAILABLE, MSG_UNAVAILABLE)

        drop.claimed_by.append(user_id)
        self.current[user_id] = CurrentClaim(claim=claim, code=code, drop=drop)
        self._arm(user_id)

        logger.info(f"Drop {drop_id} claimed by {user_id} ({code})")
        return ClaimResult(success=True, message=MSG_CLAIMED, code=code, claim=claim)

    def _reject(
        self, failure: ClaimFailure, message: str, user_id: str, drop_id: str
    ) -> ClaimResult:
        logger.info(f"Claim on drop {drop_id} by {user_id} rejected: {failure.value}")
        return ClaimResult.failed(failure, message)

    def _discard(self, row_id: int, drop_id: str):
        try:
            self.store.remove_claim(row_id)
        except sqlite3.Error as e:
            logger.error(f"Could not roll back local claim on drop {drop_id}: {e}")

    def _arm(self, user_id: str):
        if not self.watch:
            return
        poller = self._pollers.get(user_id)
        if poller is None:
            poller = Poller(
                self.poll_interval,
                lambda: self.check_expiry(user_id),
                name=f"claim-expiry-{user_id}",
            )
            self._pollers[user_id] = poller
        poller.start()

    def check_expiry(self, user_id: str) -> bool:
        """
        One expiry poll for a user's current claim.

        Returns:
            True once there is nothing left to watch
        """
        current = self.current.get(user_id)
        if current is None:
            return True

        claim = current.claim
        try:
            drop = self.drop_source.get_drop(claim.drop_id)
        except DropSourceError as e:
            logger.warning(f"Expiry check for drop {claim.drop_id} failed, will retry: {e}")
            return False

        now = self.now_provider()
        if drop is not None and not drop.is_expired(now):
            current.drop = drop
            return False

        self.store.mark_expired(claim.user_id, claim.drop_id)
        claim.status = ClaimStatus.EXPIRED
        self.current.pop(user_id, None)
        logger.info(f"Claim {current.code} on drop {claim.drop_id} expired")
        return True

    def restore(self, user_id: str) -> Optional[CurrentClaim]:
        """
        Rebuild a user's current-claim projection from the local ledger.

        Used when a user session starts; lapsed claims are marked expired
        and the newest still-active claim, if any, is watched again. Other
        users' claims and pollers are left alone.
        """
        if not user_id:
            return None
        self.stop(user_id)
        self.current.pop(user_id, None)

        now = self.now_provider()
        active = [c for c in self.store.expire_lapsed(user_id, now) if c.is_active(now)]
        if not active:
            return None

        claim = active[-1]
        drop = None
        try:
            drop = self.drop_source.get_drop(claim.drop_id)
        except DropSourceError as e:
            logger.warning(f"Could not refresh drop {claim.drop_id} on restore: {e}")

        code = claim.code or redemption_code(user_id, claim.drop_id)
        self.current[user_id] = CurrentClaim(claim=claim, code=code, drop=drop)
        self._arm(user_id)
        logger.info(f"Restored claim {code} on drop {claim.drop_id}")
        return self.current[user_id]

    def has_active_claim(self, user_id: str, drop_id: str) -> bool:
        claim = self.store.get_claim(user_id, drop_id)
        return claim is not None and claim.is_active(self.now_provider())

    def stop(self, user_id: Optional[str] = None):
        """
        Cancel expiry polling for one user, or for everyone when no user is
        given; call when the owning view goes away.
        """
        if user_id is None:
            for poller in self._pollers.values():
                poller.stop()
            return
        poller = self._pollers.get(user_id)
        if poller is not None:
            poller.stop()
