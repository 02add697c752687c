import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import ProgrammingError
from sqlalchemy.orm import Session

from courtflow.db.session import SessionLocal
from courtflow.models.flow_slot import FlowSlot
from courtflow.services.flow_storage import ACTIVE_HOLD

logger = logging.getLogger(__name__)


def purge_expired_holds(session_factory: Callable[[], Session] = SessionLocal, now: datetime | None = None) -> dict:
    """Drop durable hold records of sessions that never came back. The backend expires the holds itself."""
    db: Session = session_factory()
    try:
        now = now or datetime.now(timezone.utc)
        try:
            deleted = db.query(FlowSlot).filter(
                FlowSlot.name == ACTIVE_HOLD,
                FlowSlot.expires_at != None,  # noqa: E711
                FlowSlot.expires_at < now,
            ).delete(synchronize_session=False)
        except ProgrammingError:
            # DB not migrated yet; don't crash the worker.
            db.rollback()
            return {"skipped": True, "reason": "missing_tables"}
        db.commit()
        if deleted:
            logger.info("Purged %d expired hold record(s)", deleted)
        return {"purged": deleted}
    finally:
        db.close()
