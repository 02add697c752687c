"""
Per-session orchestration of the reservation flow.

A ``ReservationFlow`` is built for every request from the request's DB session
and the session's long-lived ``FlowRuntime`` (redirect intent, navigation
guard, confirm lock). Work that outlives a request (countdown expiry, the
visibility grace release) opens its own DB session through ``session_factory``.
"""

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator, Mapping, Optional, Union

from sqlalchemy.orm import Session

from courtflow.core.config import settings
from courtflow.core.errors import BookingNotFound, ConfirmInProgress, HoldExpired, HoldNotFound, SubmissionRejected
from courtflow.db.session import SessionLocal
from courtflow.schemas.booking import Booking, CountdownOut, CustomerInfo, Hold, HoldOut, TimeSlot
from courtflow.schemas.payments import GuardInstruction, InlineOutcome, RedirectOutcome, ReconciliationResult
from courtflow.services.audit_service import log_audit
from courtflow.services.backend_client import BackendClient
from courtflow.services.booking_submission import BookingSubmission
from courtflow.services.countdown import Countdown, CountdownRegistry, CountdownState, remaining
from courtflow.services.flow_storage import ACTIVE_HOLD, CURRENT_BOOKING, FlowStorage
from courtflow.services.hold_store import HoldStore, utcnow
from courtflow.services.navigation_guard import FlowIntent, NavigationGuard
from courtflow.services.payment_dispatcher import PaymentDispatcher
from courtflow.services.providers import PaymentProvider
from courtflow.services.return_reconciler import ReturnReconciler

logger = logging.getLogger(__name__)

EXPIRED_NOTICE = "Your hold has expired. Please select your time slots again."
SLOT_SELECTION_VIEW = "/"


class FlowRuntime:
    """In-process state of one flow session that must survive between requests."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.intent = FlowIntent()
        self.confirm_lock = threading.Lock()
        self.guard: Optional[NavigationGuard] = None
        self.notice = ""
        self.last_seen = 0.0


class RuntimeRegistry:
    """Runtimes by session id. A runtime is dropped when its flow ends or after `idle_seconds` unseen."""

    def __init__(self, idle_seconds: float | None = None, monotonic: Callable[[], float] = time.monotonic):
        self._lock = threading.Lock()
        self._runtimes: dict[str, FlowRuntime] = {}
        self.idle_seconds = settings.FLOW_RUNTIME_IDLE_SECONDS if idle_seconds is None else idle_seconds
        self.monotonic = monotonic

    def get(self, session_id: str) -> FlowRuntime:
        with self._lock:
            runtime = self._runtimes.get(session_id)
            if runtime is None:
                runtime = self._runtimes[session_id] = FlowRuntime(session_id)
            runtime.last_seen = self.monotonic()
            return runtime

    def evict_idle(self) -> list[str]:
        now = self.monotonic()
        with self._lock:
            stale = [
                sid for sid, rt in self._runtimes.items()
                if now - rt.last_seen > self.idle_seconds and not rt.confirm_lock.locked()
            ]
            for sid in stale:
                del self._runtimes[sid]
        return stale

    def __len__(self) -> int:
        with self._lock:
            return len(self._runtimes)

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._runtimes.pop(session_id, None)

    def clear(self) -> None:
        with self._lock:
            self._runtimes.clear()


runtimes = RuntimeRegistry()
countdowns = CountdownRegistry()


class ReservationFlow:
    def __init__(
        self,
        db: Session,
        session_id: str,
        backend: BackendClient,
        providers: dict[str, PaymentProvider] | None = None,
        offline_methods: set[str] | None = None,
        session_factory: Callable[[], Session] = SessionLocal,
        runtime_registry: RuntimeRegistry = runtimes,
        countdown_registry: CountdownRegistry = countdowns,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.session_id = session_id
        self.backend = backend
        self.session_factory = session_factory
        self.countdowns = countdown_registry
        self.clock = clock
        self.runtimes = runtime_registry
        for stale in runtime_registry.evict_idle():
            countdown_registry.stop(stale)
        self.runtime = runtime_registry.get(session_id)

        self.storage = FlowStorage(db, session_id)
        self.hold_store = HoldStore(self.storage, backend, clock=clock)
        self.dispatcher = PaymentDispatcher(
            self.storage, self.hold_store, backend, self.runtime.intent,
            providers=providers, offline_methods=offline_methods,
        )
        self.providers = self.dispatcher.providers
        self.submission = BookingSubmission(
            self.storage, self.hold_store, backend, self.dispatcher.payment_methods, clock=clock,
        )
        if self.runtime.guard is None:
            self.runtime.guard = NavigationGuard(
                self.runtime.intent,
                has_active_hold=self._has_active_hold,
                release_hold=self._release_detached,
            )
        self.guard = self.runtime.guard

    # --- detached work (runs after the request that scheduled it) ---

    @contextmanager
    def _detached(self) -> Iterator[tuple[Session, HoldStore]]:
        db = self.session_factory()
        try:
            yield db, HoldStore(FlowStorage(db, self.session_id), self.backend, clock=self.clock)
        finally:
            db.close()

    def _has_active_hold(self) -> bool:
        with self._detached() as (_, hold_store):
            hold = hold_store.recover()
            return hold is not None and not hold.consumed

    def _release_detached(self) -> bool:
        with self._detached() as (db, hold_store):
            return self._release_with(db, hold_store)

    def _release_with(self, db: Session, hold_store: HoldStore) -> bool:
        hold = hold_store.recover()
        if hold is None or hold.consumed:
            return False
        self.countdowns.stop(self.session_id)
        hold_store.release(hold.holdId)
        log_audit(db, self.session_id, "hold.released", "hold", hold.holdId)
        return True

    def _on_expire(self) -> None:
        with self._detached() as (db, hold_store):
            hold = hold_store.storage.read(ACTIVE_HOLD, Hold)
            hold_store.purge()
            if hold is not None:
                log_audit(db, self.session_id, "hold.expired", "hold", hold.holdId)
        self.runtime.notice = EXPIRED_NOTICE
        if self.guard is not None:
            self.guard.disarm()
        logger.info("Hold of session %s expired", self.session_id)

    def _start_countdown(self, hold: Hold) -> Countdown:
        countdown = Countdown(hold.expiresAt, on_expire=self._on_expire, clock=self.clock)
        return self.countdowns.start(self.session_id, countdown)

    # --- holds ---

    def acquire_hold(self, venue_id: str, slots: list[TimeSlot], court_quantity: int = 1) -> HoldOut:
        hold = self.hold_store.acquire(venue_id, slots, court_quantity)
        self._start_countdown(hold)
        self.runtime.notice = ""
        self.runtime.intent.clear()
        instruction = self.guard.arm()
        log_audit(self.db, self.session_id, "hold.acquired", "hold", hold.holdId,
                  {"venueId": venue_id, "slots": len(slots), "expiresAt": hold.expiresAt.isoformat()})
        return HoldOut(hold=hold, remaining=remaining(self.clock(), hold.expiresAt), pushSentinel=instruction.pushSentinel)

    def current_hold(self, verify: bool = False) -> HoldOut:
        """Recover the session's hold after a reload. The countdown resumes from the stored expiry."""
        hold = self.hold_store.recover()
        if hold is not None and verify:
            hold = self.hold_store.verify(hold)
        if hold is None:
            self.countdowns.stop(self.session_id)
            raise HoldNotFound("No active hold")
        countdown = self.countdowns.get(self.session_id)
        if countdown is None or countdown.state is not CountdownState.RUNNING or countdown.expiry != hold.expiresAt:
            self._start_countdown(hold)
        instruction = self.guard.arm() if not hold.consumed else GuardInstruction()
        return HoldOut(hold=hold, remaining=remaining(self.clock(), hold.expiresAt), pushSentinel=instruction.pushSentinel)

    def _end_runtime(self) -> None:
        self.runtimes.discard(self.session_id)

    def release(self) -> bool:
        released = self._release_with(self.db, self.hold_store)
        self.guard.disarm()
        self._end_runtime()
        return released

    def countdown(self) -> CountdownOut:
        countdown = self.countdowns.get(self.session_id)
        if countdown is None:
            hold = self.hold_store.recover()
            if hold is not None and not hold.consumed:
                countdown = self._start_countdown(hold)
        if countdown is None:
            if self.runtime.notice:
                return CountdownOut(remaining=0, state="expired", notice=self.runtime.notice, navigate=SLOT_SELECTION_VIEW)
            return CountdownOut(remaining=0, state="stopped")
        value = countdown.tick()
        return self.snapshot(countdown, value)

    def snapshot(self, countdown: Countdown, value: int) -> CountdownOut:
        if countdown.state is CountdownState.EXPIRED:
            return CountdownOut(remaining=0, expiresAt=countdown.expiry, state="expired",
                                notice=self.runtime.notice or EXPIRED_NOTICE, navigate=SLOT_SELECTION_VIEW)
        return CountdownOut(remaining=value, expiresAt=countdown.expiry, state=countdown.state.value)

    # --- navigation ---

    def on_unload(self) -> GuardInstruction:
        return self.guard.on_unload()

    async def on_hidden(self) -> GuardInstruction:
        released = await self.guard.on_hidden()
        if released:
            self._end_runtime()
        return GuardInstruction(release=released)

    def on_visible(self) -> GuardInstruction:
        self.guard.on_visible()
        return GuardInstruction()

    def on_back(self) -> GuardInstruction:
        return self.guard.on_back()

    def confirm_leave(self) -> GuardInstruction:
        instruction = self.guard.confirm_leave()
        self._end_runtime()
        return instruction

    def decline_leave(self) -> GuardInstruction:
        return self.guard.decline_leave()

    # --- confirm / dispatch ---

    def confirm(self, customer_info: CustomerInfo, payment_method: str) -> Union[InlineOutcome, RedirectOutcome]:
        if not self.runtime.confirm_lock.acquire(blocking=False):
            raise ConfirmInProgress("Your booking is already being confirmed")
        try:
            # Set before any backend call so a concurrent unload or hide does not release the hold
            if self.dispatcher.is_external(payment_method):
                self.runtime.intent.begin_redirect()
            hold = self.storage.read(ACTIVE_HOLD, Hold)
            if hold is None:
                raise HoldNotFound("No active hold. Please select your time slots again.")
            if hold.consumed:
                cached = self.storage.read(CURRENT_BOOKING, Booking)
                raise SubmissionRejected(
                    "A booking already exists for this hold",
                    code="BOOKING_EXISTS",
                    details={"bookingId": cached.bookingId if cached else None},
                )
            try:
                booking = self.submission.submit(hold, customer_info, payment_method)
            except HoldExpired:
                self.hold_store.purge()
                self.countdowns.stop(self.session_id)
                raise
            log_audit(self.db, self.session_id, "booking.submitted", "booking", booking.bookingId,
                      {"holdId": hold.holdId, "paymentMethod": payment_method, "totalPrice": booking.totalPrice})
            return self._dispatch(booking, payment_method)
        except Exception:
            self.runtime.intent.clear()
            raise
        finally:
            self.runtime.confirm_lock.release()

    def retry_dispatch(self, booking_id: str, payment_method: str | None = None) -> Union[InlineOutcome, RedirectOutcome]:
        if not self.runtime.confirm_lock.acquire(blocking=False):
            raise ConfirmInProgress("Your booking is already being confirmed")
        try:
            booking = self.storage.read(CURRENT_BOOKING, Booking)
            if booking is None or booking.bookingId != booking_id:
                raise BookingNotFound(f"Booking {booking_id} is not part of this session")
            method = payment_method or booking.paymentMethod
            if self.dispatcher.is_external(method):
                self.runtime.intent.begin_redirect()
            if method != booking.paymentMethod:
                # A different provider needs a fresh checkout
                booking = booking.model_copy(update={"checkoutUrl": None, "providerRef": None, "paymentMethod": method})
            return self._dispatch(booking, method)
        except Exception:
            self.runtime.intent.clear()
            raise
        finally:
            self.runtime.confirm_lock.release()

    def _dispatch(self, booking: Booking, payment_method: str) -> Union[InlineOutcome, RedirectOutcome]:
        try:
            outcome = self.dispatcher.dispatch(booking, payment_method)
        finally:
            # The booking owns the slots now; a failed dispatch is retried, never re-held
            self.countdowns.stop(self.session_id)
        self.guard.disarm()
        log_audit(self.db, self.session_id, f"booking.dispatched_{outcome.kind}", "booking", booking.bookingId,
                  {"paymentMethod": payment_method})
        return outcome

    def cancel_confirm(self) -> None:
        self.runtime.intent.clear()

    def current_booking(self) -> Booking:
        booking = self.storage.read(CURRENT_BOOKING, Booking)
        if booking is None:
            raise BookingNotFound("No booking in progress")
        return booking

    # --- provider return ---

    def reconcile(self, provider_name: str, query: Mapping[str, str]) -> ReconciliationResult:
        provider = self.providers[provider_name]
        result = ReturnReconciler(provider, self.storage, self.hold_store, self.backend, db=self.db).reconcile(query)
        # Back from the provider: the redirect is over whatever the outcome
        self.runtime.intent.clear()
        if result.state == "success":
            self.countdowns.stop(self.session_id)
            self.guard.disarm()
            self._end_runtime()
        return result
