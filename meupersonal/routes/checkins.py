import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth import get_current_user, resolve_franchise_scope, user_academy_ids
from ..database import get_db, utcnow
from ..models import ADMIN_ROLES, ROLE_TEACHER, Academy, Checkin, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/checkins", tags=["Check-ins"])

MAX_CHECKINS = 500
STATS_WINDOW_DAYS = 30


def serialize_checkin(checkin: Checkin) -> dict:
    return {
        "id": checkin.id,
        "booking_id": checkin.booking_id,
        "academy_id": checkin.academy_id,
        "teacher_id": checkin.teacher_id,
        "actor_id": checkin.actor_id,
        "status": checkin.status,
        "reason": checkin.reason,
        "method": checkin.method,
        "created_at": checkin.created_at.isoformat() if checkin.created_at else None,
    }


def _authorize(db: Session, user: User, academy_id: Optional[str], teacher_id: Optional[str]) -> None:
    """Teachers read their own check-ins; admins read academies in their scope"""
    if not academy_id and not teacher_id:
        raise HTTPException(
            status_code=400,
            detail={"error": "Informe academy_id ou teacher_id", "code": "MISSING_FILTER"},
        )

    if user.role in ADMIN_ROLES:
        if academy_id:
            academy = db.query(Academy).filter(Academy.id == academy_id).first()
            if not academy or not resolve_franchise_scope(db, user).can_access_academy(academy):
                raise HTTPException(status_code=403, detail={"error": "Acesso negado", "code": "FORBIDDEN"})
        return

    if user.role == ROLE_TEACHER:
        if teacher_id and teacher_id != user.id:
            raise HTTPException(status_code=403, detail={"error": "Acesso negado", "code": "FORBIDDEN"})
        if academy_id and not teacher_id and academy_id not in user_academy_ids(db, user):
            raise HTTPException(status_code=403, detail={"error": "Acesso negado", "code": "FORBIDDEN"})
        return

    raise HTTPException(status_code=403, detail={"error": "Acesso negado", "code": "FORBIDDEN"})


def _base_query(db: Session, academy_id: Optional[str], teacher_id: Optional[str]):
    query = db.query(Checkin)
    if academy_id:
        query = query.filter(Checkin.academy_id == academy_id)
    if teacher_id:
        query = query.filter(Checkin.teacher_id == teacher_id)
    return query


@router.get("")
async def list_checkins(
    academy_id: Optional[str] = Query(None),
    teacher_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None, pattern="^(GRANTED|DENIED)$"),
    limit: int = Query(100, ge=1, le=MAX_CHECKINS),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    _authorize(db, current_user, academy_id, teacher_id)
    query = _base_query(db, academy_id, teacher_id)
    if status:
        query = query.filter(Checkin.status == status)
    checkins = query.order_by(Checkin.created_at.desc()).limit(limit).all()
    return {"checkins": [serialize_checkin(c) for c in checkins]}


@router.get("/stats")
async def checkin_stats(
    academy_id: Optional[str] = Query(None),
    teacher_id: Optional[str] = Query(None),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Counts over the last 30 days"""
    _authorize(db, current_user, academy_id, teacher_id)
    now = utcnow()
    checkins = (
        _base_query(db, academy_id, teacher_id)
        .filter(Checkin.created_at >= now - timedelta(days=STATS_WINDOW_DAYS))
        .all()
    )
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    week_start = today_start - timedelta(days=today_start.weekday())
    month_start = today_start.replace(day=1)

    return {
        "stats": {
            "total": len(checkins),
            "granted": sum(1 for c in checkins if c.status == "GRANTED"),
            "denied": sum(1 for c in checkins if c.status == "DENIED"),
            "today": sum(1 for c in checkins if c.created_at >= today_start),
            "this_week": sum(1 for c in checkins if c.created_at >= week_start),
            "this_month": sum(1 for c in checkins if c.created_at >= month_start),
        }
    }
