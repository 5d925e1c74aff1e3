"""SQLite ledger of claims made on this device."""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from models import ClaimRecord, ClaimStatus
from services.config import DATABASE_PATH

logger = logging.getLogger(__name__)


class ClaimStore:
    """
    Durable, device-local claim history.

    Claiming the same drop again appends a new row, and only the newest row
    per (user, drop) is authoritative. A row is deleted only to roll back a
    claim the shared drop store rejected.
    """

    def __init__(self, db_path: Union[str, Path] = DATABASE_PATH):
        self.db_path = str(db_path)
        self.init_db()

    @contextmanager
    def transaction(self):
        """Open a connection, commit on success, roll back on error."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self):
        with self.transaction() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS claims (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    drop_id TEXT NOT NULL,
                    vendor_id TEXT NOT NULL,
                    drop_title TEXT,
                    code TEXT,
                    claimed_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_claims_user_drop
                ON claims(user_id, drop_id)
            """)
        logger.debug(f"Claim ledger ready at {self.db_path}")

    @staticmethod
    def _to_record(row: sqlite3.Row) -> ClaimRecord:
        return ClaimRecord(
            user_id=row["user_id"],
            drop_id=row["drop_id"],
            vendor_id=row["vendor_id"],
            drop_title=row["drop_title"] or "",
            code=row["code"],
            claimed_at=row["claimed_at"],
            expires_at=row["expires_at"],
            status=row["status"],
        )

    def add_claim(self, claim: ClaimRecord) -> int:
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO claims (
                    user_id, drop_id, vendor_id, drop_title, code,
                    claimed_at, expires_at, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
                (
                    claim.user_id,
                    claim.drop_id,
                    claim.vendor_id,
                    claim.drop_title,
                    claim.code,
                    claim.claimed_at.isoformat(),
                    claim.expires_at.isoformat(),
                    claim.status.value,
                ),
            )
            return cursor.lastrowid

    def remove_claim(self, row_id: int) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM claims WHERE id = ?", (row_id,))
            removed = cursor.rowcount > 0
        if removed:
            logger.info(f"Rolled back local claim row {row_id}")
        return removed

    def get_claims(self, user_id: str) -> List[ClaimRecord]:
        """Newest claim per drop for a user, oldest first."""
        with self.transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM claims c
                WHERE c.user_id = ?
                AND c.id = (
                    SELECT MAX(id) FROM claims
                    WHERE user_id = c.user_id AND drop_id = c.drop_id
                )
                ORDER BY c.id
            """,
                (user_id,),
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def get_history(self, user_id: str) -> List[ClaimRecord]:
        """Every claim row for a user, superseded ones included."""
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM claims WHERE user_id = ? ORDER BY id", (user_id,)
            ).fetchall()
        return [self._to_record(row) for row in rows]

    def get_claim(self, user_id: str, drop_id: str) -> Optional[ClaimRecord]:
        with self.transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM claims
                WHERE user_id = ? AND drop_id = ?
                ORDER BY id DESC LIMIT 1
            """,
                (user_id, drop_id),
            ).fetchone()
        return self._to_record(row) if row else None

    def mark_expired(self, user_id: str, drop_id: str) -> bool:
        """Expire the authoritative claim for a drop. Returns True if it changed."""
        with self.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE claims SET status = ?
                WHERE id = (
                    SELECT MAX(id) FROM claims WHERE user_id = ? AND drop_id = ?
                )
                AND status = ?
            """,
                (
                    ClaimStatus.EXPIRED.value,
                    user_id,
                    drop_id,
                    ClaimStatus.ACTIVE.value,
                ),
            )
            affected = cursor.rowcount
        if affected:
            logger.info(f"Claim on drop {drop_id} by {user_id} marked expired")
        return affected > 0

    def expire_lapsed(self, user_id: str, now: datetime) -> List[ClaimRecord]:
        """
        Mark every active claim whose drop has ended as expired.

        Returns:
            The user's claims after the update
        """
        claims = self.get_claims(user_id)
        for claim in claims:
            if claim.status == ClaimStatus.ACTIVE and claim.expires_at <= now:
                self.mark_expired(user_id, claim.drop_id)
                claim.status = ClaimStatus.EXPIRED
        return claims
