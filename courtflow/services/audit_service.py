import uuid, json
from sqlalchemy.orm import Session
from courtflow.models.audit_log import AuditLog

def log_audit(db: Session, session_id: str, action: str, entity_type: str, entity_id: str, details: dict | None = None):
    db.add(AuditLog(
        id=str(uuid.uuid4()),
        session_id=session_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id or ""),
        details_json=json.dumps(details or {}, ensure_ascii=False, default=str),
    ))
    db.commit()

def has_audit(db: Session, action: str, entity_type: str, entity_id: str) -> bool:
    return db.query(AuditLog.id).filter(
        AuditLog.action == action,
        AuditLog.entity_type == entity_type,
        AuditLog.entity_id == str(entity_id),
    ).first() is not None
