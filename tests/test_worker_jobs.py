from datetime import timedelta

from courtflow.schemas.booking import Booking, Hold
from courtflow.services.flow_storage import ACTIVE_HOLD, CURRENT_BOOKING, FlowStorage
from courtflow.tasks.worker_jobs import purge_expired_holds
from tests.helpers import make_hold, seed_booking


def test_purge_drops_only_expired_hold_records(db, session_factory, slots, clock):
    stale = FlowStorage(db, "stale-session")
    stale.write(ACTIVE_HOLD, make_hold(slots, clock, seconds=-60), expires_at=clock() - timedelta(seconds=60))
    live = FlowStorage(db, "live-session")
    live.write(ACTIVE_HOLD, make_hold(slots, clock), expires_at=clock() + timedelta(seconds=300))
    seed_booking(FlowStorage(db, "paying-session"), slots, clock)

    result = purge_expired_holds(session_factory, now=clock())

    assert result == {"purged": 1}
    assert stale.read(ACTIVE_HOLD, Hold) is None
    assert live.read(ACTIVE_HOLD, Hold) is not None
    assert FlowStorage(db, "paying-session").read(CURRENT_BOOKING, Booking) is not None
