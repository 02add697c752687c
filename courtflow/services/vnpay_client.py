import hashlib
import hmac
import logging
from typing import Mapping, Optional
from urllib.parse import quote_plus

from courtflow.core.config import settings
from courtflow.schemas.booking import Booking
from courtflow.schemas.payments import CallbackParams, Outcome, PaymentIntent
from courtflow.services.backend_client import BackendClient
from courtflow.services.providers import PaymentProvider

logger = logging.getLogger(__name__)

SUCCESS_CODE = "00"
CANCELLED_CODE = "24"
HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")

RESPONSE_MESSAGES = {
    "00": "Payment successful",
    "07": "Amount debited but the transaction is flagged as suspicious",
    "09": "Card or account is not registered for internet banking",
    "10": "Card or account verification failed more than 3 times",
    "11": "Payment window expired",
    "12": "Card or account is locked",
    "13": "Wrong one-time password",
    "24": "Payment was cancelled by the user",
    "51": "Insufficient balance",
    "65": "Daily transaction limit exceeded",
    "75": "The bank is under maintenance",
    "79": "Wrong payment password entered too many times",
    "99": "Unknown payment error",
}


def vnpay_hash_data(params: Mapping[str, str]) -> str:
    return "&".join(
        f"{k}={quote_plus(str(v))}"
        for k, v in sorted(params.items())
        if k.startswith("vnp_") and k not in HASH_FIELDS
    )


def vnpay_secure_hash(hash_secret: str, params: Mapping[str, str]) -> str:
    return hmac.new(hash_secret.encode("utf-8"), vnpay_hash_data(params).encode("utf-8"), hashlib.sha512).hexdigest()


class VNPayProvider(PaymentProvider):
    name = "vnpay"

    def __init__(self, hash_secret: str | None = None, tmn_code: str | None = None):
        self.hash_secret = settings.VNPAY_HASH_SECRET if hash_secret is None else hash_secret
        self.tmn_code = settings.VNPAY_TMN_CODE if tmn_code is None else tmn_code

    def create_checkout(self, backend: BackendClient, booking: Booking, return_url: str, cancel_url: str) -> PaymentIntent:
        if booking.totalPrice <= 0:
            raise ValueError("VNPay: invalid amount")
        payload = {
            "amount": booking.totalPrice,
            "bookingId": booking.bookingId,
            "returnUrl": return_url,
            "locale": "vn",
            "orderInfo": f"Court booking {booking.bookingRef or booking.bookingId}",
        }
        resp = backend.create_provider_payment(self.name, payload)
        return self._intent_from_backend(resp, booking, return_url, cancel_url)

    def parse_return(self, query: Mapping[str, str]) -> CallbackParams:
        raw = {k: str(v) for k, v in query.items()}
        code = (raw.get("vnp_ResponseCode") or "").strip()
        amount = None
        if (raw.get("vnp_Amount") or "").isdigit():
            # VNPay sends the amount multiplied by 100
            amount = int(raw["vnp_Amount"]) // 100
        return CallbackParams(
            provider=self.name,
            providerRef=(raw.get("vnp_TxnRef") or "").strip(),
            statusCode=code,
            status=(raw.get("vnp_TransactionStatus") or "").strip(),
            cancelled=code == CANCELLED_CODE,
            transactionId=(raw.get("vnp_TransactionNo") or "").strip(),
            signature=(raw.get("vnp_SecureHash") or "").strip(),
            amount=amount,
            raw=raw,
        )

    def verify_signature(self, cb: CallbackParams) -> Optional[bool]:
        if not cb.signature:
            return None
        if not self.hash_secret:
            logger.warning("VNPay return carries a secure hash but VNPAY_HASH_SECRET is not configured")
            return False
        if self.tmn_code and cb.raw.get("vnp_TmnCode") and cb.raw["vnp_TmnCode"] != self.tmn_code:
            return False
        expected = vnpay_secure_hash(self.hash_secret, cb.raw)
        return hmac.compare_digest(expected.lower(), cb.signature.lower())

    def classify(self, cb: CallbackParams) -> Outcome:
        if cb.cancelled:
            return Outcome.CANCELLED
        # vnp_TransactionStatus may be absent on older return URLs
        if cb.statusCode == SUCCESS_CODE and cb.status in ("", SUCCESS_CODE):
            return Outcome.PAID
        return Outcome.FAILED

    def message_for(self, cb: CallbackParams) -> str:
        if self.classify(cb) is Outcome.PAID:
            return RESPONSE_MESSAGES[SUCCESS_CODE]
        msg = RESPONSE_MESSAGES.get(cb.statusCode)
        if msg and cb.statusCode != SUCCESS_CODE:
            return msg
        if cb.statusCode == SUCCESS_CODE and cb.status not in ("", SUCCESS_CODE):
            return f"Payment was not completed (status: {cb.status})"
        return f"Payment failed (code: {cb.statusCode or 'unknown'})"
