"""
Durable per-session slots backing the reservation flow.

Two logical slots exist: ``active_hold`` and ``current_booking``. Records are
versioned JSON validated against a pydantic model on read. A missing row, a
row written by another record version, unparsable JSON or a shape mismatch is
treated as a cache miss (and the bad row is dropped), never as an error.
"""

import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from courtflow.models.flow_slot import FlowSlot

logger = logging.getLogger(__name__)

ACTIVE_HOLD = "active_hold"
CURRENT_BOOKING = "current_booking"
RECORD_VERSION = 1

M = TypeVar("M", bound=BaseModel)


class FlowStorage:
    def __init__(self, db: Session, session_id: str):
        self.db = db
        self.session_id = session_id

    def _row(self, name: str) -> Optional[FlowSlot]:
        return (
            self.db.query(FlowSlot)
            .filter(FlowSlot.session_id == self.session_id, FlowSlot.name == name)
            .first()
        )

    def read(self, name: str, model: Type[M]) -> Optional[M]:
        row = self._row(name)
        if not row:
            return None
        if row.version != RECORD_VERSION:
            logger.info("Dropping %s record with version %s for session %s", name, row.version, self.session_id)
            self._drop(row)
            return None
        try:
            return model.model_validate(json.loads(row.payload_json or ""))
        except (json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning("Discarding malformed %s record for session %s: %s", name, self.session_id, e)
            self._drop(row)
            return None

    def write(self, name: str, record: BaseModel, expires_at: datetime | None = None) -> None:
        payload = record.model_dump_json()
        row = self._row(name)
        now = datetime.now(timezone.utc)
        if not row:
            row = FlowSlot(
                id=str(uuid.uuid4()),
                session_id=self.session_id,
                name=name,
            )
            self.db.add(row)
        row.version = RECORD_VERSION
        row.payload_json = payload
        row.expires_at = expires_at
        row.updated_at = now
        self.db.commit()

    def clear(self, name: str) -> bool:
        row = self._row(name)
        if not row:
            return False
        self._drop(row)
        return True

    def _drop(self, row: FlowSlot) -> None:
        self.db.delete(row)
        self.db.commit()
