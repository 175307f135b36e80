import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import events
from ..auth import (
    authenticate_token,
    extract_token,
    get_current_user,
    require_roles,
    resolve_franchise_scope,
    security,
    user_academy_ids,
)
from ..database import get_db, utcnow
from ..models import ADMIN_ROLES, ROLE_FRANCHISOR, User, UserNotification
from ..services.notification_service import create_user_notification, serialize_notification

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])

KEEPALIVE_SECONDS = 15


class NotificationCreate(BaseModel):
    user_id: str
    type: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    data: Optional[dict[str, Any]] = None
    link: Optional[str] = Field(None, max_length=500)


def _get_own_notification(db: Session, notification_id: str, user: User) -> UserNotification:
    notification = (
        db.query(UserNotification)
        .filter(UserNotification.id == notification_id, UserNotification.user_id == user.id)
        .first()
    )
    if not notification:
        raise HTTPException(status_code=404, detail={"error": "Notificação não encontrada", "code": "NOT_FOUND"})
    return notification


@router.get("")
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    query = db.query(UserNotification).filter(UserNotification.user_id == current_user.id)
    if unread_only:
        query = query.filter(UserNotification.is_read.is_(False))
    notifications = query.order_by(UserNotification.created_at.desc()).limit(limit).all()
    unread_count = (
        db.query(UserNotification)
        .filter(UserNotification.user_id == current_user.id, UserNotification.is_read.is_(False))
        .count()
    )
    return {"notifications": [serialize_notification(n) for n in notifications], "unread_count": unread_count}


@router.patch("/read-all")
async def mark_all_read(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    updated = (
        db.query(UserNotification)
        .filter(UserNotification.user_id == current_user.id, UserNotification.is_read.is_(False))
        .update({"is_read": True, "read_at": utcnow()}, synchronize_session=False)
    )
    db.commit()
    return {"message": "Notificações marcadas como lidas", "updated": updated}


@router.patch("/{notification_id}/read")
async def mark_read(
    notification_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = _get_own_notification(db, notification_id, current_user)
    if not notification.is_read:
        notification.is_read = True
        notification.read_at = utcnow()
        db.commit()
    return {"notification": serialize_notification(notification)}


@router.post("", status_code=201)
async def create_notification(
    data: NotificationCreate,
    current_user: User = Depends(require_roles(*ADMIN_ROLES)),
    db: Session = Depends(get_db),
):
    """Send a notification to a user (admins only)"""
    if not db.query(User.id).filter(User.id == data.user_id).first():
        raise HTTPException(status_code=404, detail={"error": "Usuário não encontrado", "code": "USER_NOT_FOUND"})
    notification = create_user_notification(
        db,
        data.user_id,
        data.type,
        data.title,
        data.message,
        data=data.data,
        link=data.link,
        actor_id=current_user.id,
        role_scope=current_user.role,
    )
    db.commit()
    return {"notification": serialize_notification(notification)}


# ============================================================================
# SERVER-SENT EVENTS
# ============================================================================


def format_sse_event(data: dict[str, Any], event_type: Optional[str] = None) -> str:
    lines = []
    if event_type:
        lines.append(f"event: {event_type}")
    lines.append(f"data: {json.dumps(data, default=str)}")
    return "\n".join(lines) + "\n\n"


def stream_topics(db: Session, user: User) -> list[str]:
    """User topic plus the academy/network topics the caller may watch"""
    topics = [events.user_topic(user.id)]
    if user.role in ADMIN_ROLES:
        scope = resolve_franchise_scope(db, user)
        topics.extend(events.academy_topic(a) for a in scope.academy_ids)
        if user.role == ROLE_FRANCHISOR and scope.franqueadora_id:
            topics.append(events.franqueadora_topic(scope.franqueadora_id))
    else:
        topics.extend(events.academy_topic(a) for a in sorted(user_academy_ids(db, user)))
    return topics


async def _event_generator(request: Request, user_id: str, topics: list[str]) -> AsyncIterator[str]:
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def handler(payload: Any) -> None:
        # Publishers run on worker threads
        loop.call_soon_threadsafe(queue.put_nowait, payload)

    unsubscribers = [events.subscribe(topic, handler) for topic in topics]
    logger.info(f"🔌 SSE connected for user {user_id} ({len(topics)} topic(s))")
    try:
        yield format_sse_event({"type": "connected", "topics": topics}, event_type="connected")
        while True:
            if await request.is_disconnected():
                break
            try:
                payload = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            event_type = payload.get("event") if isinstance(payload, dict) else None
            yield format_sse_event(payload, event_type=event_type)
    except asyncio.CancelledError:
        logger.debug(f"SSE connection cancelled for user {user_id}")
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()
        logger.info(f"🔌 SSE disconnected for user {user_id}")


@router.get("/stream")
async def stream_notifications(
    request: Request,
    token: Optional[str] = Query(None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> StreamingResponse:
    """
    Live notifications over SSE.

    EventSource cannot send headers, so the token may also come as ?token=.
    """
    user = authenticate_token(db, extract_token(request, credentials) or token)
    topics = stream_topics(db, user)
    return StreamingResponse(
        _event_generator(request, user.id, topics),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )
