from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _as_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class TimeSlot(BaseModel):
    courtId: str
    date: str  # YYYY-MM-DD
    start: str  # HH:MM
    end: str  # HH:MM
    price: int = Field(ge=0)


class HoldRequest(BaseModel):
    venueId: str
    slots: List[TimeSlot] = Field(min_length=1)
    courtQuantity: int = Field(default=1, ge=1)


class Hold(BaseModel):
    holdId: str
    venueId: str
    slots: List[TimeSlot]
    courtQuantity: int = 1
    totalPrice: int
    expiresAt: datetime
    # Set once a Booking has been created from this hold; a consumed hold is never released.
    consumed: bool = False

    @field_validator("expiresAt", mode="after")
    @classmethod
    def _expiry_in_utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    @model_validator(mode="after")
    def _total_matches_slots(self) -> "Hold":
        if self.totalPrice != sum(s.price for s in self.slots):
            raise ValueError("totalPrice must equal the sum of slot prices")
        return self

    def is_active(self, now: datetime) -> bool:
        return _as_utc(now) < self.expiresAt

    @property
    def court_ids(self) -> list[str]:
        seen: list[str] = []
        for s in self.slots:
            if s.courtId not in seen:
                seen.append(s.courtId)
        return seen


class CustomerInfo(BaseModel):
    fullName: str = ""
    phone: str = ""
    email: str = ""
    notes: str = ""


PaymentStatus = Literal["pending", "paid", "failed", "refunded", "cancelled"]
BookingStatus = Literal["pending", "confirmed", "cancelled"]


class Booking(BaseModel):
    model_config = ConfigDict(extra="ignore")

    bookingId: str
    bookingRef: str = ""
    venueId: str = ""
    courtIds: List[str] = Field(default_factory=list)
    date: str = ""
    slots: List[TimeSlot] = Field(default_factory=list)
    totalPrice: int = 0
    customerInfo: Optional[CustomerInfo] = None
    paymentMethod: str = ""
    paymentStatus: PaymentStatus = "pending"
    status: BookingStatus = "pending"
    holdId: Optional[str] = None
    checkoutUrl: Optional[str] = None
    # Filled in by the dispatcher once the customer is sent to a provider
    provider: Optional[str] = None
    providerRef: Optional[str] = None
    createdAt: Optional[str] = None


class ConfirmRequest(BaseModel):
    customerInfo: CustomerInfo
    paymentMethod: str


class HoldOut(BaseModel):
    hold: Hold
    remaining: int
    # Browser should push one extra history entry so a back press is intercepted
    pushSentinel: bool = True


class CountdownOut(BaseModel):
    remaining: int
    expiresAt: Optional[datetime] = None
    state: Literal["running", "expired", "stopped"]
    notice: str = ""
    navigate: Optional[str] = None
