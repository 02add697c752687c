from __future__ import annotations

import logging
from typing import Mapping, Optional

from courtflow.schemas.booking import Booking
from courtflow.schemas.payments import CallbackParams, Outcome, PaymentIntent
from courtflow.services.backend_client import BackendClient

logger = logging.getLogger(__name__)

PAID_STATUSES = ("PAID", "SUCCESS", "SUCCEEDED", "COMPLETED")
FAILED_STATUSES = ("FAILED", "EXPIRED", "REJECTED")
CANCELLED_STATUSES = ("CANCELLED", "CANCELED")
PENDING_STATUSES = ("PENDING", "INIT", "PROCESSING", "UNKNOWN")


def first_of(payload: Mapping, *keys: str) -> Optional[str]:
    for k in keys:
        v = payload.get(k)
        if v not in (None, ""):
            return str(v)
    return None


class PaymentProvider:
    """Common surface of an external payment provider integration."""

    name: str = ""
    # Whether an unsigned success code may be trusted when the backend cannot confirm the payment
    allow_unsigned_success: bool = False

    def create_checkout(self, backend: BackendClient, booking: Booking, return_url: str, cancel_url: str) -> PaymentIntent:
        raise NotImplementedError

    def parse_return(self, query: Mapping[str, str]) -> CallbackParams:
        raise NotImplementedError

    def verify_signature(self, cb: CallbackParams) -> Optional[bool]:
        """True/False when the callback carries a signature we can check, None when it carries none."""
        raise NotImplementedError

    def classify(self, cb: CallbackParams) -> Outcome:
        raise NotImplementedError

    def message_for(self, cb: CallbackParams) -> str:
        raise NotImplementedError

    def fetch_status(self, backend: BackendClient, provider_ref: str) -> tuple[int, dict]:
        return backend.payment_status(self.name, provider_ref)

    def notify_cancelled(self, backend: BackendClient, cb: CallbackParams) -> None:
        """Tell the backend the customer abandoned checkout. Optional per provider."""
        return None

    def _intent_from_backend(self, resp: dict, booking: Booking, return_url: str, cancel_url: str) -> PaymentIntent:
        # Backends have answered with several field names over time
        checkout_url = first_of(resp, "paymentUrl", "checkoutUrl", "paymentLink", "redirectUrl")
        provider_ref = first_of(resp, "paymentRef", "orderCode", "paymentLinkId", "paymentId", "txnRef")
        if not checkout_url:
            raise ValueError(f"{self.name}: backend did not return a payment URL")
        if not provider_ref:
            raise ValueError(f"{self.name}: backend did not return a payment reference")
        amount = int(resp.get("amount") or booking.totalPrice)
        if amount != booking.totalPrice:
            raise ValueError(f"{self.name}: checkout amount {amount} does not match booking total {booking.totalPrice}")
        return PaymentIntent(
            provider=self.name,
            providerRef=provider_ref,
            amount=amount,
            returnUrl=return_url,
            cancelUrl=cancel_url,
            checkoutUrl=checkout_url,
        )


class GenericProvider(PaymentProvider):
    """Return visits that only carry `ref`/`id` and a `status`; they are verified through the backend only."""

    name = "generic"

    def parse_return(self, query: Mapping[str, str]) -> CallbackParams:
        raw = {k: str(v) for k, v in query.items()}
        status = (raw.get("status") or "").strip()
        return CallbackParams(
            provider=self.name,
            providerRef=(raw.get("ref") or raw.get("id") or "").strip(),
            statusCode=status,
            status=status.upper(),
            cancelled=status.lower() in ("cancel", "cancelled", "canceled"),
            raw=raw,
        )

    def verify_signature(self, cb: CallbackParams) -> Optional[bool]:
        return None

    def classify(self, cb: CallbackParams) -> Outcome:
        if cb.cancelled:
            return Outcome.CANCELLED
        if cb.statusCode.lower() in ("success", "00"):
            return Outcome.PAID
        return Outcome.FAILED

    def message_for(self, cb: CallbackParams) -> str:
        outcome = self.classify(cb)
        if outcome is Outcome.PAID:
            return "Payment successful"
        if outcome is Outcome.CANCELLED:
            return "Payment was cancelled by the user"
        return f"Payment failed (code: {cb.statusCode or 'unknown'})"

    def fetch_status(self, backend: BackendClient, provider_ref: str) -> tuple[int, dict]:
        tx = backend.get_payment_transaction(provider_ref)
        booking = backend.get_booking(str(tx["bookingId"])) if tx.get("bookingId") else {}
        return 200, {
            "success": True,
            "data": {
                "booking": booking.get("booking", booking) if booking else None,
                "paymentInfo": {
                    "status": str(tx.get("status") or "").upper(),
                    "amount": tx.get("amount"),
                    "paymentRef": tx.get("paymentRef") or provider_ref,
                },
            },
        }
