import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from courtflow.core.config import settings
from courtflow.core.errors import BackendError, BackendUnavailable, SlotUnavailable
from courtflow.schemas.booking import Hold, TimeSlot
from courtflow.services.backend_client import BackendClient, parse_timestamp
from courtflow.services.flow_storage import ACTIVE_HOLD, FlowStorage

logger = logging.getLogger(__name__)

# Backend answers that mean "somebody else has this slot"
CONFLICT_STATUSES = (409, 423)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HoldStore:
    """Acquire, recover and release the single active Hold of a flow session."""

    def __init__(
        self,
        storage: FlowStorage,
        backend: BackendClient,
        hold_minutes: int | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.backend = backend
        self.hold_minutes = hold_minutes if hold_minutes is not None else settings.HOLD_MINUTES
        self.clock = clock

    def acquire(self, venue_id: str, slots: list[TimeSlot], court_quantity: int = 1) -> Hold:
        if not slots:
            raise SlotUnavailable("No time slots selected", code="NO_SLOTS")

        # At most one active hold per session: give back the previous claim first.
        previous = self.recover()
        if previous and not previous.consumed:
            self.release(previous.holdId)

        try:
            resp = self.backend.create_hold(venue_id, slots, court_quantity)
        except BackendError as e:
            if e.status_code in CONFLICT_STATUSES:
                logger.info("Hold refused for venue %s: %s", venue_id, e)
                raise SlotUnavailable(str(e) or "The selected slot is no longer available", details={"venueId": venue_id})
            logger.error("Hold request failed for venue %s: %s", venue_id, e)
            raise BackendUnavailable("Could not reach the booking service, please try again")

        hold_id = resp.get("holdId") or resp.get("bookingId") or resp.get("_id") or resp.get("id")
        if not hold_id:
            # A 2xx without an id is a refusal (e.g. `{"success": true, "data": {}}` from a raced slot)
            raise SlotUnavailable("The selected slot is no longer available", details={"venueId": venue_id})

        expires_at = parse_timestamp(resp.get("holdUntil") or resp.get("expiresAt"))
        if expires_at is None:
            expires_at = self.clock() + timedelta(minutes=self.hold_minutes)

        hold = Hold(
            holdId=str(hold_id),
            venueId=venue_id,
            slots=list(slots),
            courtQuantity=court_quantity,
            totalPrice=sum(s.price for s in slots),
            expiresAt=expires_at,
        )
        self.storage.write(ACTIVE_HOLD, hold, expires_at=hold.expiresAt)
        logger.info("Hold %s acquired until %s", hold.holdId, hold.expiresAt.isoformat())
        return hold

    def recover(self, now: datetime | None = None) -> Optional[Hold]:
        hold = self.storage.read(ACTIVE_HOLD, Hold)
        if not hold:
            return None
        if not hold.is_active(now or self.clock()):
            self.storage.clear(ACTIVE_HOLD)
            return None
        return hold

    def verify(self, hold: Hold) -> Optional[Hold]:
        """Ask the backend whether it still honours the hold; unreachable keeps the local view."""
        try:
            resp = self.backend.verify_hold(hold.holdId)
        except BackendError as e:
            if e.status_code in (404, 410):
                logger.info("Backend no longer knows hold %s; purging", hold.holdId)
                self.purge()
                return None
            logger.warning("Hold %s verification skipped: %s", hold.holdId, e)
            return hold
        expires_at = parse_timestamp(resp.get("holdUntil") or resp.get("expiresAt"))
        if expires_at and expires_at != hold.expiresAt:
            hold = hold.model_copy(update={"expiresAt": expires_at})
            self.storage.write(ACTIVE_HOLD, hold, expires_at=hold.expiresAt)
        return hold if hold.is_active(self.clock()) else None

    def release(self, hold_id: str) -> None:
        """Best-effort and idempotent. Never raises."""
        try:
            hold = self.storage.read(ACTIVE_HOLD, Hold)
            if not hold or hold.holdId != hold_id:
                logger.debug("Release of hold %s is a no-op (not held by this session)", hold_id)
                return
            if hold.consumed:
                logger.info("Hold %s belongs to a booking; not releasing", hold_id)
                return
            self.storage.clear(ACTIVE_HOLD)
        except Exception as e:
            logger.warning("Could not clear local record for hold %s: %s", hold_id, e)
        try:
            self.backend.release_hold(hold_id)
            logger.info("Hold %s released", hold_id)
        except BackendError as e:
            # The backend expires the hold by itself; the user is never blocked on this.
            logger.warning("Release of hold %s failed: %s", hold_id, e)

    def mark_consumed(self, hold_id: str) -> None:
        hold = self.storage.read(ACTIVE_HOLD, Hold)
        if hold and hold.holdId == hold_id and not hold.consumed:
            self.storage.write(ACTIVE_HOLD, hold.model_copy(update={"consumed": True}), expires_at=hold.expiresAt)

    def purge(self) -> None:
        self.storage.clear(ACTIVE_HOLD)
