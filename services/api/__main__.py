"""
HTTP surface for the presence, schedule and claim evaluators.

Serves this device's claim ledger; the pure evaluators are exposed as
stateless endpoints.
"""

import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field, field_validator

from models import VendorPresenceRecord, WeeklySchedule
from services.claims import ClaimFailure, ClaimLedger, ClaimResult
from services.config import API_HOST, API_PORT, DEBUG
from services.event_status import classify
from services.presence import live_vendors
from services.schedule import is_open_now, local_now
from services.timeparse import coerce_instant

logger = logging.getLogger(__name__)

FAILURE_STATUS = {
    ClaimFailure.NOT_FOUND: 404,
    ClaimFailure.UNAUTHENTICATED: 401,
    ClaimFailure.UNAVAILABLE: 503,
}
STATUS_CONFLICT = 409


class ClaimRequest(BaseModel):
    user_id: str


class PresenceBatch(BaseModel):
    vendors: List[VendorPresenceRecord]
    now: Optional[datetime] = None

    @field_validator("now", mode="before")
    @classmethod
    def _instant(cls, value: Any) -> Optional[datetime]:
        return coerce_instant(value)


class ScheduleCheck(BaseModel):
    schedule: WeeklySchedule = Field(default_factory=WeeklySchedule)
    now: Optional[datetime] = None


def _claim_payload(result: ClaimResult) -> Dict[str, Any]:
    return {
        "message": result.message,
        "code": result.code,
        "claim": result.claim.model_dump(mode="json") if result.claim else None,
    }


def _default_ledger() -> ClaimLedger:
    from services.database import ClaimStore
    from services.supabase_client import SupabaseDropSource

    return ClaimLedger(SupabaseDropSource(), ClaimStore())


def _default_schedule_loader(vendor_id: str) -> WeeklySchedule:
    from services.supabase_client import get_vendor_schedule

    return get_vendor_schedule(vendor_id)


def create_app(
    ledger: Optional[ClaimLedger] = None,
    schedule_loader: Callable[[str], WeeklySchedule] = _default_schedule_loader,
) -> FastAPI:
    """Build the API around a claim ledger and a vendor-schedule loader."""
    ledger = ledger or _default_ledger()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        ledger.stop()

    app = FastAPI(title="Drop & Presence Engine API", lifespan=lifespan)
    app.state.ledger = ledger

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post("/drops/{drop_id}/claim", status_code=201)
    async def claim_drop(drop_id: str, request: ClaimRequest):
        """Claim one unit of a drop for a user."""
        result = ledger.attempt_claim(request.user_id, drop_id)
        if not result.success:
            raise HTTPException(
                status_code=FAILURE_STATUS.get(result.failure, STATUS_CONFLICT),
                detail={
                    "failure": result.failure.value,
                    "message": result.message,
                    "wait_minutes": result.wait_minutes,
                },
            )
        return _claim_payload(result)

    @app.get("/claims/{user_id}/current")
    async def current_claim(user_id: str):
        """The user's active claim code, restored from the local ledger if needed."""
        current = ledger.current.get(user_id) or ledger.restore(user_id)
        if current is None:
            raise HTTPException(status_code=404, detail="No active claim")
        return {
            "code": current.code,
            "claim": current.claim.model_dump(mode="json"),
            "remaining": current.drop.remaining if current.drop else None,
        }

    @app.post("/presence/live")
    async def presence_live(batch: PresenceBatch):
        """Which of the given vendors should be drawn as live."""
        vendors = live_vendors(batch.vendors, batch.now)
        return {"live": [asdict(vendor) for vendor in vendors]}

    @app.post("/schedule/open")
    async def schedule_open(check: ScheduleCheck):
        status = is_open_now(check.schedule, check.now or local_now())
        return {"open": status.open, "day": status.day}

    @app.get("/vendors/{vendor_id}/open")
    async def vendor_open(vendor_id: str):
        schedule = schedule_loader(vendor_id)
        status = is_open_now(schedule, local_now())
        return {
            "vendor_id": vendor_id,
            "open": status.open,
            "day": status.day,
            "hours": schedule.to_display(),
        }

    @app.get("/events/category")
    async def event_category(status: Optional[str] = None):
        return {"status": status, "category": classify(status).value}

    return app


def main():
    import uvicorn

    logging.basicConfig(
        level=logging.DEBUG if DEBUG else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    app = create_app()
    logger.info(f"Starting API on {API_HOST}:{API_PORT}")
    uvicorn.run(app, host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    main()
