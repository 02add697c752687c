from datetime import timedelta

import pytest

from courtflow.core.errors import BackendError, BackendUnavailable, SlotUnavailable
from courtflow.schemas.booking import Hold
from courtflow.services.flow_storage import ACTIVE_HOLD, FlowStorage
from courtflow.services.hold_store import HoldStore
from tests.helpers import FakeBackend


@pytest.fixture
def hold_store(storage, backend, clock):
    return HoldStore(storage, backend, hold_minutes=5, clock=clock)


def test_acquire_persists_hold_immediately(hold_store, storage, slots, clock):
    hold = hold_store.acquire("venue-1", slots)

    assert hold.holdId == "hold-1"
    assert hold.totalPrice == 200000
    assert hold.expiresAt == clock() + timedelta(seconds=300)
    assert storage.read(ACTIVE_HOLD, Hold) == hold


def test_acquire_without_backend_expiry_uses_hold_minutes(hold_store, backend, slots, clock):
    backend.hold_response = {"holdId": "h-9"}

    hold = hold_store.acquire("venue-1", slots)

    assert hold.expiresAt == clock() + timedelta(minutes=5)


def test_contended_slot_raises_and_stores_nothing(hold_store, backend, storage, slots):
    backend.hold_error = BackendError("Slot already held", status_code=409)

    with pytest.raises(SlotUnavailable) as exc:
        hold_store.acquire("venue-1", slots)

    assert exc.value.message == "Slot already held"
    assert storage.read(ACTIVE_HOLD, Hold) is None


def test_response_without_id_is_a_refusal(hold_store, backend, storage, slots):
    backend.hold_response = {}

    with pytest.raises(SlotUnavailable):
        hold_store.acquire("venue-1", slots)
    assert storage.read(ACTIVE_HOLD, Hold) is None


def test_backend_outage_is_not_reported_as_conflict(hold_store, backend, slots):
    backend.hold_error = BackendError("Backend unreachable")

    with pytest.raises(BackendUnavailable):
        hold_store.acquire("venue-1", slots)


def test_no_slots_is_refused_locally(hold_store, backend):
    with pytest.raises(SlotUnavailable):
        hold_store.acquire("venue-1", [])
    assert backend.calls == []


def test_second_acquire_releases_the_first(hold_store, backend, slots):
    hold_store.acquire("venue-1", slots)
    second = hold_store.acquire("venue-1", slots[:1])

    assert backend.calls_to("release_hold") == [("release_hold", "hold-1")]
    assert hold_store.recover().holdId == second.holdId


def test_recover_returns_active_hold(hold_store, slots, clock):
    hold = hold_store.acquire("venue-1", slots)
    clock.advance(299)

    assert hold_store.recover() == hold


def test_recover_after_expiry_purges(hold_store, storage, slots, clock):
    hold_store.acquire("venue-1", slots)
    clock.advance(300)

    assert hold_store.recover() is None
    assert storage.read(ACTIVE_HOLD, Hold) is None


def test_release_twice_calls_backend_once(hold_store, backend, slots):
    hold = hold_store.acquire("venue-1", slots)

    hold_store.release(hold.holdId)
    hold_store.release(hold.holdId)

    assert hold_store.recover() is None
    assert len(backend.calls_to("release_hold")) == 1


def test_release_survives_backend_failure(hold_store, backend, slots):
    hold = hold_store.acquire("venue-1", slots)
    backend.release_error = BackendError("Backend unreachable")

    hold_store.release(hold.holdId)

    assert hold_store.recover() is None


def test_consumed_hold_is_never_released(hold_store, backend, slots):
    hold = hold_store.acquire("venue-1", slots)
    hold_store.mark_consumed(hold.holdId)

    hold_store.release(hold.holdId)

    assert hold_store.recover().consumed is True
    assert backend.calls_to("release_hold") == []


def test_verify_purges_hold_the_backend_forgot(hold_store, backend, slots):
    hold = hold_store.acquire("venue-1", slots)
    backend.verify_error = BackendError("Hold not found", status_code=404)

    assert hold_store.verify(hold) is None
    assert hold_store.recover() is None


def test_verify_keeps_hold_when_backend_unreachable(hold_store, backend, slots):
    hold = hold_store.acquire("venue-1", slots)
    backend.verify_error = BackendError("Backend unreachable")

    assert hold_store.verify(hold) == hold


class SlotOwnerBackend(FakeBackend):
    """Refuses a hold on any slot another hold still owns."""

    def __init__(self, clock):
        super().__init__(clock)
        self.owners: dict[tuple, str] = {}

    def create_hold(self, venue_id, slots, court_quantity):
        taken = [s for s in slots if (s.courtId, s.date, s.start) in self.owners]
        if taken:
            self.calls.append(("create_hold", venue_id, len(slots), court_quantity))
            raise BackendError("Slot already held", status_code=409)
        resp = super().create_hold(venue_id, slots, court_quantity)
        for s in slots:
            self.owners[(s.courtId, s.date, s.start)] = resp["holdId"]
        return resp

    def release_hold(self, hold_id):
        self.owners = {k: v for k, v in self.owners.items() if v != hold_id}
        return super().release_hold(hold_id)


def test_two_sessions_contend_for_one_slot(db, slots, clock):
    backend = SlotOwnerBackend(clock)
    first = HoldStore(FlowStorage(db, "sess-a"), backend, clock=clock)
    second = HoldStore(FlowStorage(db, "sess-b"), backend, clock=clock)

    winner = first.acquire("venue-1", slots)
    with pytest.raises(SlotUnavailable):
        second.acquire("venue-1", slots[1:])

    assert second.recover() is None
    assert first.recover() == winner

    first.release(winner.holdId)
    assert second.acquire("venue-1", slots[1:]).holdId == "hold-2"
