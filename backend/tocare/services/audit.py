from sqlalchemy.orm import Session

from tocare.db.models import AuditLog, utcnow


def record_audit(db: Session, action: str, entity_type: str, entity_id=None, meta: dict | None = None,
                 actor_type: str = "SYSTEM", actor_id=None) -> AuditLog:
    entry = AuditLog(
        actor_type=actor_type,
        actor_id=str(actor_id) if actor_id is not None else None,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id is not None else None,
        meta=meta or {},
        occurred_at=utcnow(),
    )
    db.add(entry)
    return entry
