from courtflow.models.flow_slot import FlowSlot
from courtflow.schemas.booking import Booking, Hold
from courtflow.services.flow_storage import ACTIVE_HOLD, CURRENT_BOOKING, FlowStorage
from tests.helpers import make_hold


def test_write_then_read_returns_the_record(storage, slots, clock):
    hold = make_hold(slots, clock)

    storage.write(ACTIVE_HOLD, hold, expires_at=hold.expiresAt)

    assert storage.read(ACTIVE_HOLD, Hold) == hold


def test_write_replaces_previous_record(storage, db, slots, clock):
    storage.write(ACTIVE_HOLD, make_hold(slots, clock, holdId="hold-1"))
    storage.write(ACTIVE_HOLD, make_hold(slots, clock, holdId="hold-2"))

    assert storage.read(ACTIVE_HOLD, Hold).holdId == "hold-2"
    assert db.query(FlowSlot).count() == 1


def test_missing_record_is_none(storage):
    assert storage.read(CURRENT_BOOKING, Booking) is None


def test_other_record_version_is_a_cache_miss(storage, db, slots, clock):
    storage.write(ACTIVE_HOLD, make_hold(slots, clock))
    row = db.query(FlowSlot).one()
    row.version = 99
    db.commit()

    assert storage.read(ACTIVE_HOLD, Hold) is None
    assert db.query(FlowSlot).count() == 0


def test_unparsable_json_is_a_cache_miss(storage, db, slots, clock):
    storage.write(ACTIVE_HOLD, make_hold(slots, clock))
    db.query(FlowSlot).one().payload_json = "{not json"
    db.commit()

    assert storage.read(ACTIVE_HOLD, Hold) is None


def test_wrong_shape_is_a_cache_miss(storage, db, slots, clock):
    storage.write(ACTIVE_HOLD, make_hold(slots, clock))
    # totalPrice no longer matches the slots
    db.query(FlowSlot).one().payload_json = make_hold(slots, clock).model_dump_json().replace("200000", "1")
    db.commit()

    assert storage.read(ACTIVE_HOLD, Hold) is None


def test_clear_is_idempotent(storage, slots, clock):
    storage.write(ACTIVE_HOLD, make_hold(slots, clock))

    assert storage.clear(ACTIVE_HOLD) is True
    assert storage.clear(ACTIVE_HOLD) is False


def test_sessions_do_not_see_each_other(db, storage, slots, clock):
    storage.write(ACTIVE_HOLD, make_hold(slots, clock))

    assert FlowStorage(db, "someone-else").read(ACTIVE_HOLD, Hold) is None
