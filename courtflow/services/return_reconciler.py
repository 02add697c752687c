"""
Turns a payment provider's redirect-back into one canonical outcome.

Verification runs as an ordered list of stages behind one interface:
``BackendVerifier`` asks the backend (cannot be spoofed by a crafted return
URL) and ``LocalVerifier`` falls back to the provider's own signed result
code. The first stage that returns a verdict wins.

Running the reconciler twice for the same return visit yields the same
outcome; clearing the caches is idempotent and audit entries are written once
per (reference, outcome).
"""

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional, Protocol

from pydantic import ValidationError
from sqlalchemy.orm import Session

from courtflow.core.errors import BackendError
from courtflow.schemas.booking import Booking
from courtflow.schemas.payments import CallbackParams, Outcome, PaymentInfo, ReconciliationResult
from courtflow.services.audit_service import has_audit, log_audit
from courtflow.services.backend_client import BackendClient, booking_from_backend, unwrap
from courtflow.services.flow_storage import CURRENT_BOOKING, FlowStorage
from courtflow.services.hold_store import HoldStore
from courtflow.services.providers import (
    CANCELLED_STATUSES,
    FAILED_STATUSES,
    PAID_STATUSES,
    PENDING_STATUSES,
    PaymentProvider,
)

logger = logging.getLogger(__name__)

SUCCESS_VIEW = "/booking/success"
FAILURE_VIEW = "/booking/failed"
PENDING_RETRY_SECONDS = 2


@dataclass
class Verdict:
    outcome: Outcome
    source: str
    booking: Optional[Booking] = None
    message: str = ""
    payment: dict = field(default_factory=dict)


class VerificationStage(Protocol):
    def verify(self, provider: PaymentProvider, cb: CallbackParams, cached: Optional[Booking]) -> Optional[Verdict]:
        ...


class BackendVerifier:
    """Backend-authoritative check. Returns None when unreachable or inconclusive."""

    def __init__(self, backend: BackendClient):
        self.backend = backend
        self.last_status: str = ""

    def verify(self, provider: PaymentProvider, cb: CallbackParams, cached: Optional[Booking]) -> Optional[Verdict]:
        self.last_status = ""
        try:
            http_status, body = provider.fetch_status(self.backend, cb.providerRef)
        except BackendError as e:
            logger.warning("Backend verification of %s %s unavailable: %s", provider.name, cb.providerRef, e)
            return None
        if http_status == 202 or http_status >= 400 or body.get("success") is False:
            self.last_status = str(body.get("status") or "PENDING").upper() if http_status == 202 else ""
            return None

        payload = unwrap(body)
        raw_booking = payload.get("booking") if isinstance(payload.get("booking"), dict) else None
        info = payload.get("paymentInfo") if isinstance(payload.get("paymentInfo"), dict) else {}
        booking = None
        if raw_booking:
            try:
                booking = booking_from_backend(raw_booking)
            except (ValidationError, ValueError, TypeError) as e:
                logger.warning("Backend returned an unreadable booking for %s: %s", cb.providerRef, e)

        status = str(info.get("status") or "").strip().upper()
        if not status and booking is not None:
            if booking.paymentStatus == "paid" or booking.status == "confirmed":
                status = "PAID"
        self.last_status = status
        payment = {
            "amount": info.get("amount"),
            "providerRef": info.get("orderCode") or info.get("paymentRef") or cb.providerRef,
            "status": status,
        }

        if status in PAID_STATUSES:
            return Verdict(Outcome.PAID, "backend", booking=booking, payment=payment)
        if status in CANCELLED_STATUSES:
            return Verdict(Outcome.CANCELLED, "backend", booking=booking, payment=payment,
                           message="Payment was cancelled")
        if status in FAILED_STATUSES:
            return Verdict(Outcome.FAILED, "backend", booking=booking, payment=payment,
                           message="Payment failed or was cancelled")
        # PENDING / INIT / unknown: let the next stage decide
        return None


class LocalVerifier:
    """Classifies from the provider's own result code. Success requires a valid signature
    unless the provider explicitly allows unsigned returns."""

    def verify(self, provider: PaymentProvider, cb: CallbackParams, cached: Optional[Booking]) -> Optional[Verdict]:
        signature_ok = provider.verify_signature(cb)
        if signature_ok is False:
            logger.warning("Rejected %s return for %s: signature mismatch", provider.name, cb.providerRef)
            return Verdict(Outcome.FAILED, "local", booking=cached,
                           message="Payment could not be verified (invalid signature)")

        outcome = provider.classify(cb)
        if outcome is Outcome.PAID:
            if signature_ok is None and not provider.allow_unsigned_success:
                return Verdict(Outcome.INDETERMINATE, "local", booking=cached,
                               message="We could not confirm your payment yet. Please reload this page in a moment.")
            if cb.amount is not None and cached is not None and cached.totalPrice and cb.amount != cached.totalPrice:
                logger.warning("Amount mismatch on %s return %s: %s != %s",
                               provider.name, cb.providerRef, cb.amount, cached.totalPrice)
                return Verdict(Outcome.FAILED, "local", booking=cached,
                               message="Payment amount does not match the booking")
            return Verdict(Outcome.PAID, "local", booking=cached)
        return Verdict(outcome, "local", booking=cached, message=provider.message_for(cb))


class ReturnReconciler:
    def __init__(
        self,
        provider: PaymentProvider,
        storage: FlowStorage,
        hold_store: HoldStore,
        backend: BackendClient,
        stages: list[VerificationStage] | None = None,
        db: Session | None = None,
    ):
        self.provider = provider
        self.storage = storage
        self.hold_store = hold_store
        self.backend = backend
        self.stages = stages if stages is not None else [BackendVerifier(backend), LocalVerifier()]
        self.db = db

    def _cached_booking(self, cb: CallbackParams) -> Optional[Booking]:
        cached = self.storage.read(CURRENT_BOOKING, Booking)
        if cached is None:
            return None
        # Only a cache entry for this very payment is used for display
        if cached.providerRef and cached.providerRef != cb.providerRef:
            logger.info("Cached booking %s belongs to ref %s, not %s", cached.bookingId, cached.providerRef, cb.providerRef)
            return None
        return cached

    def reconcile(self, query: Mapping[str, str]) -> ReconciliationResult:
        cb = self.provider.parse_return(query)
        if not cb.providerRef:
            logger.warning("%s return without a payment reference", self.provider.name)
            return ReconciliationResult(
                outcome=Outcome.FAILED,
                state="failure",
                message="Missing payment reference; the payment could not be reconciled",
                navigate=FAILURE_VIEW,
            )

        cached = self._cached_booking(cb)
        verdict: Optional[Verdict] = None
        for stage in self.stages:
            verdict = stage.verify(self.provider, cb, cached)
            if verdict is not None:
                break
        if verdict is None:
            verdict = Verdict(Outcome.INDETERMINATE, "none", booking=cached,
                              message="We could not confirm your payment yet. Please reload this page in a moment.")

        still_processing = any(
            isinstance(s, BackendVerifier) and s.last_status in PENDING_STATUSES for s in self.stages
        )
        if verdict.outcome is Outcome.PAID:
            return self._success(cb, verdict, cached)
        return self._failure(cb, verdict, cached, still_processing)

    def _payment_info(self, cb: CallbackParams, verdict: Verdict, booking: Optional[Booking]) -> PaymentInfo:
        amount = verdict.payment.get("amount") or cb.amount or (booking.totalPrice if booking else 0)
        return PaymentInfo(
            provider=self.provider.name,
            providerRef=str(verdict.payment.get("providerRef") or cb.providerRef),
            amount=int(amount or 0),
            transactionId=cb.transactionId,
            statusCode=cb.statusCode,
            status=verdict.outcome.value,
        )

    def _success(self, cb: CallbackParams, verdict: Verdict, cached: Optional[Booking]) -> ReconciliationResult:
        booking = verdict.booking
        if booking is not None and cached is not None:
            # The backend does not echo customer details
            booking = booking.model_copy(update={
                "customerInfo": booking.customerInfo or cached.customerInfo,
                "bookingRef": booking.bookingRef or cached.bookingRef,
                "courtIds": booking.courtIds or cached.courtIds,
                "slots": booking.slots or cached.slots,
            })
        elif booking is None:
            booking = cached
        if booking is not None:
            booking = booking.model_copy(update={
                "paymentStatus": "paid",
                "status": "confirmed",
                "provider": self.provider.name,
                "providerRef": cb.providerRef,
            })

        self.storage.clear(CURRENT_BOOKING)
        self.hold_store.purge()
        self._audit_once("payment.reconciled_paid", cb, {"source": verdict.source})
        logger.info("%s payment %s reconciled as paid (%s)", self.provider.name, cb.providerRef, verdict.source)
        return ReconciliationResult(
            outcome=Outcome.PAID,
            state="success",
            booking=booking,
            payment=self._payment_info(cb, verdict, booking),
            message="Payment successful",
            source=verdict.source,
            navigate=SUCCESS_VIEW,
        )

    def _failure(self, cb: CallbackParams, verdict: Verdict, cached: Optional[Booking], still_processing: bool) -> ReconciliationResult:
        outcome = verdict.outcome
        # The booking cache is kept so a reload can re-run reconciliation
        first_visit = self._audit_once(f"payment.reconciled_{outcome.value}", cb,
                                       {"source": verdict.source, "code": cb.statusCode})
        if outcome is Outcome.CANCELLED:
            message = verdict.message if verdict.source == "local" else "Payment was cancelled by the user"
            if cb.cancelled:
                message = "Payment was cancelled by the user"
                if first_visit:
                    self.provider.notify_cancelled(self.backend, cb)
        else:
            message = verdict.message or self.provider.message_for(cb)

        logger.info("%s payment %s reconciled as %s: %s", self.provider.name, cb.providerRef, outcome.value, message)
        booking = verdict.booking or cached
        return ReconciliationResult(
            outcome=outcome,
            state="failure",
            booking=booking,
            payment=self._payment_info(cb, verdict, booking),
            message=message,
            source=verdict.source if verdict.source in ("backend", "local") else "none",
            navigate=FAILURE_VIEW,
            retryAfterSeconds=PENDING_RETRY_SECONDS if outcome is Outcome.INDETERMINATE and still_processing else None,
        )

    def _audit_once(self, action: str, cb: CallbackParams, details: dict) -> bool:
        """Record `action` for this reference unless already recorded. True on the first visit."""
        if self.db is None:
            return True
        if has_audit(self.db, action, "payment", cb.providerRef):
            return False
        log_audit(self.db, self.storage.session_id, action, "payment", cb.providerRef,
                  {"provider": self.provider.name, **details})
        return True
