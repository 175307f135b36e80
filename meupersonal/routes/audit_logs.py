import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import require_roles
from ..database import get_db
from ..models import ROLE_ADMIN, ROLE_FRANCHISOR, ROLE_SUPER_ADMIN, User
from ..services.audit_service import get_audit_logs, serialize_audit_log
from ..shared.pagination import PageParams, build_paginated_response, page_params

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/audit-logs", tags=["Audit"])


@router.get("")
async def list_audit_logs(
    entity: Optional[str] = Query(None),
    entity_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    actor_user_id: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    params: PageParams = Depends(page_params),
    current_user: User = Depends(require_roles(ROLE_FRANCHISOR, ROLE_ADMIN, ROLE_SUPER_ADMIN)),
    db: Session = Depends(get_db),
):
    """Audit trail, newest first"""
    rows, total = get_audit_logs(
        db,
        entity=entity,
        entity_id=entity_id,
        action=action.upper() if action else None,
        actor_user_id=actor_user_id,
        start_date=start_date,
        end_date=end_date,
        offset=params.offset,
        limit=params.limit,
    )
    return build_paginated_response([serialize_audit_log(log) for log in rows], total, params)
