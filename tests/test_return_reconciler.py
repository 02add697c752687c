import pytest

from courtflow.core.errors import BackendError
from courtflow.models.audit_log import AuditLog
from courtflow.schemas.booking import Booking, Hold
from courtflow.schemas.payments import Outcome
from courtflow.services.flow_storage import ACTIVE_HOLD, CURRENT_BOOKING
from courtflow.services.hold_store import HoldStore
from courtflow.services.payos_client import PayOSProvider, payos_signature
from courtflow.services.return_reconciler import ReturnReconciler
from courtflow.services.vnpay_client import vnpay_secure_hash
from tests.helpers import PAYOS_KEY, VNPAY_SECRET, VNPAY_TMN, seed_booking

BACKEND_PAID = (200, {
    "success": True,
    "data": {
        "booking": {"_id": "bk-1", "bookingCode": "CF0001", "totalPrice": 200000,
                    "paymentStatus": "paid", "status": "confirmed"},
        "paymentInfo": {"status": "PAID", "amount": 200000, "orderCode": "ref-1"},
    },
})


def payos_query(code="00", status="PAID", cancel="false", order_code="ref-1", signed=True):
    query = {"code": code, "id": "tx-1", "cancel": cancel, "status": status, "orderCode": order_code}
    if signed:
        query["signature"] = payos_signature(PAYOS_KEY, query)
    return query


def vnpay_query(code="00", txn_status="00", amount=200000, ref="ref-1"):
    query = {
        "vnp_Amount": str(amount * 100),
        "vnp_BankCode": "NCB",
        "vnp_OrderInfo": "Court booking CF0001",
        "vnp_ResponseCode": code,
        "vnp_TmnCode": VNPAY_TMN,
        "vnp_TransactionNo": "14123456",
        "vnp_TransactionStatus": txn_status,
        "vnp_TxnRef": ref,
    }
    query["vnp_SecureHash"] = vnpay_secure_hash(VNPAY_SECRET, query)
    return query


@pytest.fixture
def make_reconciler(storage, backend, clock, db, providers):
    def _make(name="payos", provider=None):
        return ReturnReconciler(
            provider or providers[name], storage, HoldStore(storage, backend, clock=clock), backend, db=db,
        )
    return _make


@pytest.fixture
def booking(storage, slots, clock):
    return seed_booking(storage, slots, clock)


def test_backend_confirmation_wins(make_reconciler, booking, backend, storage):
    backend.status_response = BACKEND_PAID

    result = make_reconciler().reconcile(payos_query(signed=False))

    assert result.outcome is Outcome.PAID
    assert result.state == "success"
    assert result.source == "backend"
    assert result.navigate == "/booking/success"
    assert result.booking.bookingId == "bk-1"
    assert result.booking.customerInfo.fullName == "Nguyen Van An"
    assert storage.read(CURRENT_BOOKING, Booking) is None
    assert storage.read(ACTIVE_HOLD, Hold) is None


def test_success_shape_is_the_same_for_both_stages(make_reconciler, storage, slots, clock, backend):
    seed_booking(storage, slots, clock)
    backend.status_response = BACKEND_PAID
    from_backend = make_reconciler().reconcile(payos_query())

    seed_booking(storage, slots, clock)
    backend.status_response = None
    from_local = make_reconciler().reconcile(payos_query())

    assert from_backend.source == "backend"
    assert from_local.source == "local"
    for field in ("outcome", "state", "message", "navigate"):
        assert getattr(from_backend, field) == getattr(from_local, field)
    assert from_backend.booking.bookingId == from_local.booking.bookingId
    assert from_backend.booking.paymentStatus == from_local.booking.paymentStatus == "paid"
    assert from_backend.payment.providerRef == from_local.payment.providerRef == "ref-1"
    assert from_backend.payment.amount == from_local.payment.amount == 200000


def test_unsigned_success_without_backend_is_indeterminate(make_reconciler, booking, storage):
    result = make_reconciler().reconcile(payos_query(signed=False))

    assert result.outcome is Outcome.INDETERMINATE
    assert result.state == "failure"
    assert result.navigate == "/booking/failed"
    assert storage.read(CURRENT_BOOKING, Booking) == booking


def test_unsigned_success_trusted_when_allowed(make_reconciler, booking):
    legacy = PayOSProvider(checksum_key=PAYOS_KEY, allow_unsigned_success=True)

    result = make_reconciler(provider=legacy).reconcile(payos_query(signed=False))

    assert result.outcome is Outcome.PAID
    assert result.source == "local"


def test_bad_payos_signature_fails(make_reconciler, booking, storage):
    query = payos_query()
    query["signature"] = "0" * 64

    result = make_reconciler().reconcile(query)

    assert result.outcome is Outcome.FAILED
    assert storage.read(CURRENT_BOOKING, Booking) is not None


def test_pending_backend_asks_for_retry(make_reconciler, booking, backend):
    backend.status_response = (202, {"status": "PENDING"})

    result = make_reconciler().reconcile(payos_query(signed=False))

    assert result.outcome is Outcome.INDETERMINATE
    assert result.retryAfterSeconds == 2


def test_backend_failure_status_is_definitive(make_reconciler, booking, backend, storage):
    backend.status_response = (200, {"success": True, "data": {"paymentInfo": {"status": "FAILED"}}})

    result = make_reconciler().reconcile(payos_query())

    assert result.outcome is Outcome.FAILED
    assert result.source == "backend"
    assert storage.read(CURRENT_BOOKING, Booking) == booking


def test_payos_cancel_notifies_backend(make_reconciler, booking, backend, storage):
    result = make_reconciler().reconcile(payos_query(code="00", status="CANCELLED", cancel="true"))

    assert result.outcome is Outcome.CANCELLED
    assert result.message == "Payment was cancelled by the user"
    assert backend.calls_to("cancel_provider_payment") == [
        ("cancel_provider_payment", "payos", "ref-1", "Payment cancelled by user"),
    ]
    assert storage.read(CURRENT_BOOKING, Booking) == booking


def test_reloaded_cancel_notifies_backend_once(make_reconciler, booking, backend, db):
    for _ in range(2):
        result = make_reconciler().reconcile(payos_query(code="00", status="CANCELLED", cancel="true"))
        assert result.outcome is Outcome.CANCELLED

    assert len(backend.calls_to("cancel_provider_payment")) == 1
    assert db.query(AuditLog).filter(AuditLog.action == "payment.reconciled_cancelled").count() == 1


def test_missing_reference_is_a_failure(make_reconciler, booking, backend):
    result = make_reconciler().reconcile({"code": "00", "status": "PAID"})

    assert result.outcome is Outcome.FAILED
    assert result.message.startswith("Missing payment reference")
    assert backend.calls == []


def test_reconciling_twice_gives_same_outcome_and_one_audit(make_reconciler, booking, db):
    reconciler = make_reconciler()

    first = reconciler.reconcile(payos_query(signed=False))
    second = reconciler.reconcile(payos_query(signed=False))

    assert first.outcome is second.outcome is Outcome.INDETERMINATE
    assert first.message == second.message
    assert db.query(AuditLog).filter(AuditLog.entity_id == "ref-1").count() == 1


def test_reconciling_paid_twice_is_harmless(make_reconciler, booking, backend, db):
    backend.status_response = BACKEND_PAID
    reconciler = make_reconciler()

    first = reconciler.reconcile(payos_query())
    second = reconciler.reconcile(payos_query())

    assert first.outcome is second.outcome is Outcome.PAID
    assert db.query(AuditLog).filter(AuditLog.action == "payment.reconciled_paid").count() == 1


def test_signed_vnpay_success_pays_without_backend(make_reconciler, storage, slots, clock):
    seed_booking(storage, slots, clock, paymentMethod="vnpay", provider="vnpay")

    result = make_reconciler("vnpay").reconcile(vnpay_query())

    assert result.outcome is Outcome.PAID
    assert result.payment.transactionId == "14123456"
    assert result.payment.amount == 200000


def test_tampered_vnpay_return_never_pays(make_reconciler, storage, slots, clock):
    seed_booking(storage, slots, clock, paymentMethod="vnpay", provider="vnpay")
    query = vnpay_query(amount=200000)
    query["vnp_Amount"] = "100"

    result = make_reconciler("vnpay").reconcile(query)

    assert result.outcome is Outcome.FAILED
    assert storage.read(CURRENT_BOOKING, Booking) is not None


def test_vnpay_user_cancel(make_reconciler, storage, slots, clock):
    seed_booking(storage, slots, clock, paymentMethod="vnpay", provider="vnpay")

    result = make_reconciler("vnpay").reconcile(vnpay_query(code="24", txn_status="02"))

    assert result.outcome is Outcome.CANCELLED
    assert result.message == "Payment was cancelled by the user"
    assert storage.read(CURRENT_BOOKING, Booking).bookingId == "bk-1"


def test_unknown_vnpay_code_message(make_reconciler, storage, slots, clock):
    seed_booking(storage, slots, clock, paymentMethod="vnpay", provider="vnpay")

    result = make_reconciler("vnpay").reconcile(vnpay_query(code="42", txn_status="02"))

    assert result.outcome is Outcome.FAILED
    assert result.message == "Payment failed (code: 42)"


def test_generic_return_is_backend_verified(make_reconciler, booking, backend):
    backend.status_error = None
    backend.transaction = {"bookingId": "bk-1", "status": "success", "amount": 200000, "paymentRef": "ref-1"}
    backend.booking_record = {"booking": {"_id": "bk-1", "totalPrice": 200000, "paymentStatus": "paid"}}

    result = make_reconciler("generic").reconcile({"ref": "ref-1", "status": "success"})

    assert result.outcome is Outcome.PAID
    assert result.source == "backend"


def test_generic_return_without_backend_cannot_pay(make_reconciler, booking, backend):
    backend.status_error = BackendError("Backend unreachable")

    result = make_reconciler("generic").reconcile({"ref": "ref-1", "status": "success"})

    assert result.outcome is Outcome.INDETERMINATE
