from datetime import datetime, timedelta, timezone

from courtflow.core.errors import BackendError
from courtflow.schemas.booking import Booking, CustomerInfo, Hold
from courtflow.services.flow_storage import ACTIVE_HOLD, CURRENT_BOOKING

SESSION_ID = "sess-1"
PAYOS_KEY = "payos-checksum"
VNPAY_SECRET = "vnpay-secret"
VNPAY_TMN = "TMN01"


class FakeClock:
    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeBackend:
    """Stands in for BackendClient; records calls and answers from configurable fields."""

    def __init__(self, clock=None):
        self.clock = clock
        self.calls: list[tuple] = []
        self.hold_error: BackendError | None = None
        self.hold_response: dict | None = None
        self.hold_seconds = 300
        self.release_error: BackendError | None = None
        self.verify_error: BackendError | None = None
        self.booking_error: BackendError | None = None
        self.booking_response: dict | None = None
        self.checkout_error: BackendError | None = None
        self.checkout_response: dict | None = None
        self.status_error: BackendError | None = BackendError("backend down")
        self.status_response: tuple[int, dict] | None = None
        self.transaction: dict = {}
        self.booking_record: dict = {}
        self._holds = 0

    def _now(self) -> datetime:
        return self.clock() if self.clock else datetime.now(timezone.utc)

    def calls_to(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    def create_hold(self, venue_id, slots, court_quantity):
        self.calls.append(("create_hold", venue_id, len(slots), court_quantity))
        if self.hold_error:
            raise self.hold_error
        if self.hold_response is not None:
            return self.hold_response
        self._holds += 1
        until = self._now() + timedelta(seconds=self.hold_seconds)
        return {"holdId": f"hold-{self._holds}", "holdUntil": until.isoformat()}

    def verify_hold(self, hold_id):
        self.calls.append(("verify_hold", hold_id))
        if self.verify_error:
            raise self.verify_error
        return {"holdId": hold_id}

    def release_hold(self, hold_id):
        self.calls.append(("release_hold", hold_id))
        if self.release_error:
            raise self.release_error
        return {}

    def create_booking(self, hold, customer_info, payment_method):
        self.calls.append(("create_booking", hold.holdId, payment_method))
        if self.booking_error:
            raise self.booking_error
        if self.booking_response is not None:
            return self.booking_response
        return {"booking": {
            "_id": "bk-1",
            "bookingCode": "CF0001",
            "totalPrice": hold.totalPrice,
            "paymentMethod": payment_method,
            "paymentStatus": "pending",
            "status": "pending",
        }}

    def get_booking(self, booking_id):
        self.calls.append(("get_booking", booking_id))
        return self.booking_record

    def get_payment_transaction(self, payment_ref):
        self.calls.append(("get_payment_transaction", payment_ref))
        if self.status_error:
            raise self.status_error
        return self.transaction

    def create_provider_payment(self, provider, payload):
        self.calls.append(("create_provider_payment", provider, payload["amount"]))
        if self.checkout_error:
            raise self.checkout_error
        if self.checkout_response is not None:
            return self.checkout_response
        return {
            "paymentUrl": f"https://pay.example/{provider}/ref-1",
            "paymentRef": "ref-1",
            "amount": payload["amount"],
        }

    def payment_status(self, provider, provider_ref):
        self.calls.append(("payment_status", provider, provider_ref))
        if self.status_response is not None:
            return self.status_response
        if self.status_error:
            raise self.status_error
        return 202, {"status": "PENDING"}

    def cancel_provider_payment(self, provider, provider_ref, reason):
        self.calls.append(("cancel_provider_payment", provider, provider_ref, reason))
        return {}


def make_hold(slots, clock, seconds=300, **overrides) -> Hold:
    data = dict(
        holdId="hold-1",
        venueId="venue-1",
        slots=slots,
        courtQuantity=1,
        totalPrice=sum(s.price for s in slots),
        expiresAt=clock() + timedelta(seconds=seconds),
    )
    data.update(overrides)
    return Hold(**data)


def seed_booking(storage, slots, clock, **overrides) -> Booking:
    """Put the session in the state it has while the customer is away at a provider."""
    hold = make_hold(slots, clock, consumed=True)
    storage.write(ACTIVE_HOLD, hold, expires_at=hold.expiresAt)
    data = dict(
        bookingId="bk-1",
        bookingRef="CF0001",
        venueId="venue-1",
        courtIds=["court-1"],
        date="2026-05-02",
        slots=slots,
        totalPrice=hold.totalPrice,
        customerInfo=CustomerInfo(fullName="Nguyen Van An", phone="0912345678", email="an@example.com"),
        paymentMethod="payos",
        holdId=hold.holdId,
        provider="payos",
        providerRef="ref-1",
        checkoutUrl="https://pay.example/payos/ref-1",
    )
    data.update(overrides)
    booking = Booking(**data)
    storage.write(CURRENT_BOOKING, booking)
    return booking
