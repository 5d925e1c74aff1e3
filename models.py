from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from services.timeparse import (
    WEEKDAYS,
    TimeOfDay,
    coerce_instant,
    parse_time_of_day,
    utcnow,
)


def _lift_position(data: Any) -> Any:
    """Accept flat lat/lng (or latitude/longitude) keys as a position."""
    if not isinstance(data, dict) or data.get("position") is not None:
        return data
    lat = data.get("lat", data.get("latitude"))
    lng = data.get("lng", data.get("longitude"))
    if lat is None or lng is None:
        return data
    return {**data, "position": {"lat": lat, "lng": lng}}


class Position(BaseModel):
    lat: float = Field(validation_alias=AliasChoices("lat", "latitude"))
    lng: float = Field(validation_alias=AliasChoices("lng", "longitude"))


class VendorPresenceRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    position: Optional[Position] = None
    kitchen_type: str = Field(
        default="truck", validation_alias=AliasChoices("kitchen_type", "kitchenType")
    )
    last_active_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("last_active_at", "lastActiveAt", "lastActive"),
    )
    session_started_at: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices(
            "session_started_at", "sessionStartedAt", "sessionStartTime"
        ),
    )
    explicitly_visible: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "explicitly_visible", "explicitlyVisible", "visible"
        ),
    )
    explicitly_live: bool = Field(
        default=False,
        validation_alias=AliasChoices("explicitly_live", "explicitlyLive", "isLive"),
    )

    @model_validator(mode="before")
    @classmethod
    def _position(cls, data: Any) -> Any:
        return _lift_position(data)

    @field_validator("last_active_at", "session_started_at", mode="before")
    @classmethod
    def _instant(cls, value: Any) -> Optional[datetime]:
        return coerce_instant(value)

    @field_validator("explicitly_visible", "explicitly_live", mode="before")
    @classmethod
    def _explicit_flag(cls, value: Any) -> bool:
        # Only a literal true counts; stale truthy strings do not.
        return value is True

    @field_validator("kitchen_type", mode="before")
    @classmethod
    def _kitchen_type(cls, value: Any) -> str:
        return str(value) if value else "truck"

    @property
    def session_anchor(self) -> Optional[datetime]:
        return self.session_started_at or self.last_active_at


class DropRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    vendor_id: str = Field(
        validation_alias=AliasChoices("vendor_id", "vendorId", "truckId", "truck_id")
    )
    title: str = ""
    quantity: int = 0
    claimed_by: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("claimed_by", "claimedBy")
    )
    expires_at: Optional[datetime] = Field(
        default=None, validation_alias=AliasChoices("expires_at", "expiresAt")
    )

    @field_validator("quantity", mode="before")
    @classmethod
    def _quantity(cls, value: Any) -> int:
        return max(int(value or 0), 0)

    @field_validator("claimed_by", mode="before")
    @classmethod
    def _claimed_by(cls, value: Any) -> list:
        return list(value or [])

    @field_validator("expires_at", mode="before")
    @classmethod
    def _instant(cls, value: Any) -> Optional[datetime]:
        return coerce_instant(value)

    @property
    def remaining(self) -> int:
        return max(self.quantity - len(self.claimed_by), 0)

    def is_expired(self, now: datetime) -> bool:
        """A drop without a readable expiry is treated as already over."""
        return self.expires_at is None or now >= self.expires_at


class ClaimStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"


class ClaimRecord(BaseModel):
    """A claim as kept in the device-local ledger."""

    user_id: str
    drop_id: str
    vendor_id: str
    drop_title: str = ""
    claimed_at: datetime
    expires_at: datetime
    status: ClaimStatus = ClaimStatus.ACTIVE
    code: Optional[str] = None

    @field_validator("claimed_at", "expires_at", mode="before")
    @classmethod
    def _instant(cls, value: Any) -> Any:
        # Unparseable values fall through so pydantic reports them.
        return coerce_instant(value) or value

    def is_active(self, now: datetime) -> bool:
        return self.status == ClaimStatus.ACTIVE and self.expires_at > now


class DayHours(BaseModel):
    open: TimeOfDay = Field(default=None, validate_default=True)
    close: TimeOfDay = Field(default=None, validate_default=True)
    closed: bool = False

    @field_validator("open", "close", mode="before")
    @classmethod
    def _time(cls, value: Any) -> TimeOfDay:
        return parse_time_of_day(value)

    @field_validator("closed", mode="before")
    @classmethod
    def _closed(cls, value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in ["1", "true", "yes"]
        return bool(value)

    def to_display(self) -> dict[str, Any]:
        return {
            "open": self.open.to_12h(),
            "close": self.close.to_12h(),
            "closed": self.closed,
        }


class WeeklySchedule(BaseModel):
    """Open/close hours keyed by lower-case weekday name."""

    model_config = ConfigDict(extra="ignore")

    monday: Optional[DayHours] = None
    tuesday: Optional[DayHours] = None
    wednesday: Optional[DayHours] = None
    thursday: Optional[DayHours] = None
    friday: Optional[DayHours] = None
    saturday: Optional[DayHours] = None
    sunday: Optional[DayHours] = None

    @model_validator(mode="before")
    @classmethod
    def _lower_keys(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {str(key).strip().lower(): value for key, value in data.items()}
        return data

    def for_day(self, day_key: str) -> Optional[DayHours]:
        if day_key not in WEEKDAYS:
            return None
        return getattr(self, day_key)

    def to_display(self) -> dict[str, dict[str, Any]]:
        return {
            day: hours.to_display()
            for day in WEEKDAYS
            if (hours := self.for_day(day)) is not None
        }


class EventRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    status: Optional[str] = None
    organizer_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("organizer_id", "organizerId", "createdBy"),
    )
    position: Optional[Position] = None

    @model_validator(mode="before")
    @classmethod
    def _position(cls, data: Any) -> Any:
        return _lift_position(data)


class FeedChange(BaseModel):
    """One pushed change from the live-data collaborator."""

    schema_version: str = "1.0.0"
    kind: Literal["vendor", "drop", "event"]
    op: Literal["upsert", "remove"] = "upsert"
    record_id: Optional[str] = None
    record: dict[str, Any] = Field(default_factory=dict)
    published_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> Optional[str]:
        key = self.record_id or self.record.get("id")
        return str(key) if key is not None else None
