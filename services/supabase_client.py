"""Supabase access for drops and vendor profiles."""

import logging
import os
from typing import Any, Dict, Optional

import httpx
from postgrest.exceptions import APIError
from pydantic import ValidationError

from supabase import Client, create_client  # type: ignore[attr-defined]

from models import DropRecord, WeeklySchedule
from services.config import DROPS_TABLE, PROFILES_TABLE
from services.drops import DropSource, DropSourceError
from services.schedule import load_schedule

logger = logging.getLogger(__name__)

# Supabase configuration
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")  # Service role for backend

# Global Supabase client
_supabase: Optional[Client] = None


def get_supabase_client() -> Client:
    """Get or create Supabase client instance."""
    global _supabase

    if _supabase is None:
        if not SUPABASE_URL or not SUPABASE_KEY:
            raise ValueError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in environment"
            )

        _supabase = create_client(SUPABASE_URL, SUPABASE_KEY)
        logger.info("✅ Supabase client initialized")

    return _supabase


# ============================================
# Drop Operations
# ============================================


class SupabaseDropSource(DropSource):
    """Drops stored in a Supabase table."""

    def __init__(self, client: Optional[Client] = None, table: str = DROPS_TABLE):
        self._client = client
        self.table = table

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_supabase_client()
        return self._client

    def _fetch_row(self, drop_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = (
                self.client.table(self.table)
                .select("*")
                .eq("id", drop_id)
                .limit(1)
                .execute()
            )
        except APIError as e:
            raise DropSourceError(f"Supabase API error reading drop {drop_id}: {e}") from e
        except httpx.HTTPError as e:
            raise DropSourceError(f"Could not reach Supabase reading drop {drop_id}: {e}") from e
        except ValueError as e:
            raise DropSourceError(str(e)) from e
        return response.data[0] if response.data else None

    def get_drop(self, drop_id: str) -> Optional[DropRecord]:
        row = self._fetch_row(drop_id)
        if row is None:
            return None
        try:
            return DropRecord.model_validate(row)
        except ValidationError as e:
            raise DropSourceError(f"Malformed drop {drop_id}: {e}") from e

    def record_claim(self, drop_id: str, user_id: str) -> None:
        row = self._fetch_row(drop_id)
        if row is None:
            raise DropSourceError(f"Drop {drop_id} not found")

        claimed_by = list(row.get("claimed_by") or [])
        if user_id in claimed_by:
            return
        claimed_by.append(user_id)

        try:
            (
                self.client.table(self.table)
                .update({"claimed_by": claimed_by})
                .eq("id", drop_id)
                .execute()
            )
        except APIError as e:
            raise DropSourceError(f"Supabase API error updating drop {drop_id}: {e}") from e
        except httpx.HTTPError as e:
            raise DropSourceError(f"Could not reach Supabase updating drop {drop_id}: {e}") from e
        logger.info(f"Recorded claim by {user_id} on drop {drop_id}")


# ============================================
# Vendor Profile Operations
# ============================================


def get_vendor_schedule(vendor_id: str, client: Optional[Client] = None) -> WeeklySchedule:
    """
    Load a vendor's weekly hours from their profile.

    Vendors without stored hours, or whose profile cannot be read, get the
    default business hours.
    """
    try:
        supabase = client or get_supabase_client()
        response = (
            supabase.table(PROFILES_TABLE)
            .select("business_hours")
            .eq("id", vendor_id)
            .limit(1)
            .execute()
        )
    except (APIError, httpx.HTTPError) as e:
        logger.error(f"Supabase error loading hours for {vendor_id}: {e}")
        return load_schedule(None)

    row = response.data[0] if response.data else {}
    try:
        return load_schedule(row.get("business_hours"))
    except ValidationError as e:
        logger.warning(f"Malformed business hours for {vendor_id}, using defaults: {e}")
        return load_schedule(None)
