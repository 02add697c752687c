import hashlib
import hmac
import logging
from typing import Mapping, Optional

from courtflow.core.config import settings
from courtflow.core.errors import BackendError
from courtflow.schemas.booking import Booking
from courtflow.schemas.payments import CallbackParams, Outcome, PaymentIntent
from courtflow.services.backend_client import BackendClient
from courtflow.services.providers import CANCELLED_STATUSES, PaymentProvider

logger = logging.getLogger(__name__)

SUCCESS_CODE = "00"
CANCELLED_CODE = "02"

STATUS_MESSAGES = {
    "00": "Payment successful",
    "01": "Payment failed",
    "02": "Payment was cancelled",
    "03": "Payment was declined",
    "04": "Payment link expired",
    "05": "Insufficient balance",
    "06": "Invalid payment information",
    "07": "Payment system is under maintenance",
    "99": "Unknown payment error",
}

SIGNED_FIELDS = ("cancel", "code", "id", "orderCode", "status")


def _signing_string(data: Mapping[str, str]) -> str:
    # PayOS signs `key=value` pairs sorted by key and joined with '&'
    return "&".join(f"{k}={data.get(k, '')}" for k in sorted(data))


def payos_signature(checksum_key: str, data: Mapping[str, str]) -> str:
    return hmac.new(checksum_key.encode("utf-8"), _signing_string(data).encode("utf-8"), hashlib.sha256).hexdigest()


class PayOSProvider(PaymentProvider):
    name = "payos"

    def __init__(self, checksum_key: str | None = None, allow_unsigned_success: bool | None = None):
        self.checksum_key = settings.PAYOS_CHECKSUM_KEY if checksum_key is None else checksum_key
        self.allow_unsigned_success = (
            settings.PAYOS_ALLOW_UNSIGNED_RETURN if allow_unsigned_success is None else allow_unsigned_success
        )

    def create_checkout(self, backend: BackendClient, booking: Booking, return_url: str, cancel_url: str) -> PaymentIntent:
        if booking.totalPrice <= 0:
            raise ValueError("PayOS: invalid amount")
        customer = booking.customerInfo
        payload = {
            "amount": booking.totalPrice,
            "bookingId": booking.bookingId,
            # PayOS caps descriptions at 25 characters
            "description": f"Booking {booking.bookingRef or booking.bookingId}"[:25],
            "buyerName": customer.fullName if customer else "",
            "buyerEmail": customer.email if customer else "",
            "buyerPhone": customer.phone if customer else "",
            "returnUrl": return_url,
            "cancelUrl": cancel_url,
        }
        resp = backend.create_provider_payment(self.name, payload)
        return self._intent_from_backend(resp, booking, return_url, cancel_url)

    def parse_return(self, query: Mapping[str, str]) -> CallbackParams:
        raw = {k: str(v) for k, v in query.items()}
        return CallbackParams(
            provider=self.name,
            providerRef=(raw.get("orderCode") or "").strip(),
            statusCode=(raw.get("code") or "").strip(),
            status=(raw.get("status") or "").strip().upper(),
            cancelled=(raw.get("cancel") or "").strip().lower() == "true",
            transactionId=(raw.get("id") or "").strip(),
            signature=(raw.get("signature") or "").strip(),
            raw=raw,
        )

    def verify_signature(self, cb: CallbackParams) -> Optional[bool]:
        if not cb.signature:
            return None
        if not self.checksum_key:
            logger.warning("PayOS return carries a signature but PAYOS_CHECKSUM_KEY is not configured")
            return False
        data = {k: cb.raw.get(k, "") for k in SIGNED_FIELDS}
        expected = payos_signature(self.checksum_key, data)
        return hmac.compare_digest(expected, cb.signature.lower())

    def classify(self, cb: CallbackParams) -> Outcome:
        if cb.cancelled or cb.status in CANCELLED_STATUSES or cb.statusCode == CANCELLED_CODE:
            return Outcome.CANCELLED
        if cb.statusCode == SUCCESS_CODE and cb.status == "PAID":
            return Outcome.PAID
        return Outcome.FAILED

    def message_for(self, cb: CallbackParams) -> str:
        outcome = self.classify(cb)
        if outcome is Outcome.PAID:
            return STATUS_MESSAGES[SUCCESS_CODE]
        if outcome is Outcome.CANCELLED:
            return "Payment was cancelled by the user"
        if cb.statusCode == SUCCESS_CODE and cb.status and cb.status != "PAID":
            return f"Payment was not completed (status: {cb.status})"
        msg = STATUS_MESSAGES.get(cb.statusCode)
        if msg:
            return msg
        return f"Payment failed (code: {cb.statusCode or 'unknown'})"

    def notify_cancelled(self, backend: BackendClient, cb: CallbackParams) -> None:
        try:
            backend.cancel_provider_payment(self.name, cb.providerRef, "Payment cancelled by user")
        except BackendError as e:
            logger.warning("PayOS cancel notification for %s failed: %s", cb.providerRef, e)
