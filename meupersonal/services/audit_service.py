"""
Audit trail for sensitive operations (bookings, payments, credit grants, policies).
Writing an audit row must never break the operation being audited.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import AuditLog, User

logger = logging.getLogger(__name__)

AUDIT_ACTIONS = (
    "CREATE",
    "UPDATE",
    "DELETE",
    "LOGIN",
    "LOGOUT",
    "PAYMENT",
    "BOOKING_CANCEL",
    "BOOKING_CREATE",
    "BOOKING_UPDATE",
    "SENSITIVE_CHANGE",
)


def _request_metadata(request: Optional[Request]) -> dict:
    if request is None:
        return {}
    forwarded = request.headers.get("X-Forwarded-For")
    ip = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)
    return {"ip": ip, "user_agent": request.headers.get("user-agent")}


def create_audit_log(
    db: Session,
    entity: str,
    entity_id: Optional[str],
    action: str,
    actor: Optional[User] = None,
    old: Optional[dict[str, Any]] = None,
    new: Optional[dict[str, Any]] = None,
    request: Optional[Request] = None,
    extra: Optional[dict[str, Any]] = None,
) -> Optional[AuditLog]:
    """Add an audit row inside a savepoint; failures are logged and swallowed"""
    if action not in AUDIT_ACTIONS:
        logger.warning(f"⚠️ Unknown audit action {action} for {entity}:{entity_id}")

    metadata = {"actor_role": actor.role if actor else None, **_request_metadata(request), **(extra or {})}
    try:
        with db.begin_nested():
            log = AuditLog(
                entity=entity,
                entity_id=entity_id,
                action=action,
                actor_user_id=actor.id if actor else None,
                diff_json={"old": old, "new": new} if (old is not None or new is not None) else None,
                metadata_json=metadata,
            )
            db.add(log)
        return log
    except SQLAlchemyError as e:
        logger.error(f"❌ Failed to write audit log {action} for {entity}:{entity_id}: {e}")
        return None


def get_audit_logs(
    db: Session,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    action: Optional[str] = None,
    actor_user_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[AuditLog], int]:
    query = db.query(AuditLog)
    if entity:
        query = query.filter(AuditLog.entity == entity)
    if entity_id:
        query = query.filter(AuditLog.entity_id == entity_id)
    if action:
        query = query.filter(AuditLog.action == action)
    if actor_user_id:
        query = query.filter(AuditLog.actor_user_id == actor_user_id)
    if start_date:
        query = query.filter(AuditLog.created_at >= start_date)
    if end_date:
        query = query.filter(AuditLog.created_at <= end_date)

    total = query.count()
    rows = query.order_by(AuditLog.created_at.desc()).offset(offset).limit(limit).all()
    return rows, total


def serialize_audit_log(log: AuditLog) -> dict:
    return {
        "id": log.id,
        "entity": log.entity,
        "entity_id": log.entity_id,
        "action": log.action,
        "actor_user_id": log.actor_user_id,
        "diff": log.diff_json,
        "metadata": log.metadata_json,
        "created_at": log.created_at.isoformat() if log.created_at else None,
    }
