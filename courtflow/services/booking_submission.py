import logging
import re
from datetime import datetime
from typing import Callable

from pydantic import ValidationError

from courtflow.core.errors import (
    BackendError,
    CustomerInfoInvalid,
    HoldExpired,
    SubmissionRejected,
    UnsupportedPaymentMethod,
)
from courtflow.schemas.booking import Booking, CustomerInfo, Hold
from courtflow.services.backend_client import BackendClient, booking_from_backend
from courtflow.services.flow_storage import CURRENT_BOOKING, FlowStorage
from courtflow.services.hold_store import HoldStore, utcnow

logger = logging.getLogger(__name__)

# 10-11 digits, optional +84 prefix in place of the leading 0
PHONE_RE = re.compile(r"^(?:\+84|0)?[0-9]{9,10}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def normalize_phone(phone: str) -> str:
    return re.sub(r"[\s.\-()]", "", phone or "")


def validate_customer_info(info: CustomerInfo) -> CustomerInfo:
    errors: dict[str, str] = {}
    name = " ".join((info.fullName or "").split())
    phone = normalize_phone(info.phone)
    email = (info.email or "").strip().lower()

    if not name:
        errors["fullName"] = "Full name is required"
    elif len(name) < 2 or len(name) > 100:
        errors["fullName"] = "Full name must be 2-100 characters"

    if not phone:
        errors["phone"] = "Phone number is required"
    elif not PHONE_RE.match(phone) or len(phone.replace("+84", "0")) not in (10, 11):
        errors["phone"] = "Phone number is invalid"

    if not email:
        errors["email"] = "Email is required"
    elif not EMAIL_RE.match(email):
        errors["email"] = "Email is invalid"

    if errors:
        raise CustomerInfoInvalid("Please correct the highlighted fields", details=errors)
    return CustomerInfo(fullName=name, phone=phone, email=email, notes=(info.notes or "").strip())


class BookingSubmission:
    """Turns the session's hold plus customer details into a backend Booking."""

    def __init__(
        self,
        storage: FlowStorage,
        hold_store: HoldStore,
        backend: BackendClient,
        payment_methods: set[str],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.hold_store = hold_store
        self.backend = backend
        self.payment_methods = payment_methods
        self.clock = clock

    def submit(self, hold: Hold, customer_info: CustomerInfo, payment_method: str) -> Booking:
        info = validate_customer_info(customer_info)
        if payment_method not in self.payment_methods:
            raise UnsupportedPaymentMethod(
                f"Payment method '{payment_method}' is not supported",
                details={"supported": sorted(self.payment_methods)},
            )
        if not hold.is_active(self.clock()):
            raise HoldExpired("Your hold has expired. Please select your slots again.")

        try:
            resp = self.backend.create_booking(hold, info, payment_method)
        except BackendError as e:
            logger.warning("Booking creation for hold %s rejected: %s", hold.holdId, e)
            raise SubmissionRejected(str(e) or "Could not create booking", details={"status": e.status_code})

        data = resp.get("booking") if isinstance(resp.get("booking"), dict) else resp
        try:
            backend_booking = booking_from_backend(data)
        except (ValidationError, ValueError, TypeError) as e:
            # The backend booking exists now; keep its id so a retry dispatches instead of booking twice
            logger.warning("Backend booking for hold %s has an unreadable shape: %s", hold.holdId, e)
            backend_booking = Booking(
                bookingId=str(data.get("bookingId") or data.get("_id") or data.get("id") or ""),
                bookingRef=str(data.get("bookingRef") or data.get("bookingCode") or ""),
            )
        if not backend_booking.bookingId:
            raise SubmissionRejected(resp.get("message") or "Could not create booking")

        # The backend does not echo customer details; keep what the user entered.
        booking = backend_booking.model_copy(update={
            "customerInfo": info,
            "paymentMethod": backend_booking.paymentMethod or payment_method,
            "holdId": backend_booking.holdId or hold.holdId,
            "venueId": backend_booking.venueId or hold.venueId,
            "courtIds": backend_booking.courtIds or hold.court_ids,
            "slots": backend_booking.slots or list(hold.slots),
            "date": backend_booking.date or (hold.slots[0].date if hold.slots else ""),
            "totalPrice": backend_booking.totalPrice or hold.totalPrice,
        })
        self.storage.write(CURRENT_BOOKING, booking)
        self.hold_store.mark_consumed(hold.holdId)
        logger.info("Booking %s (%s) created from hold %s", booking.bookingId, booking.bookingRef, hold.holdId)
        return booking
