from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.market_models import AuditLog


def log_audit(db: Session, entity_type: str, entity_id: int, action: str, details: str | None = None, user_id: int | None = None) -> None:
    db.add(
        AuditLog(
            EntityType=entity_type,
            EntityID=entity_id,
            Action=action,
            Details=(details or "")[:2000] or None,
            UserID=user_id,
            CreatedAt=datetime.now(),
        )
    )


def list_audit_entries(db: Session, entity_type: str, entity_id: int) -> list[AuditLog]:
    return list(
        db.execute(
            select(AuditLog)
            .where(AuditLog.EntityType == entity_type, AuditLog.EntityID == entity_id)
            .order_by(AuditLog.AuditID.asc())
        ).scalars()
    )
