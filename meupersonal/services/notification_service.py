"""
Notification Service
Persists user notifications and fans them out to live SSE subscribers.

Rows are added to the caller's session; the matching events are queued on the
session and only published once it commits, so a rolled back booking never
reaches a browser.
"""

import logging
from typing import Any, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from .. import events
from ..models import Booking, UserNotification

logger = logging.getLogger(__name__)

PENDING_EVENTS_KEY = "pending_events"


def _queue_event(db: Session, topic: str, payload: dict) -> None:
    db.info.setdefault(PENDING_EVENTS_KEY, []).append((topic, payload))


@event.listens_for(Session, "after_commit")
def _publish_pending_events(session: Session) -> None:
    pending = session.info.pop(PENDING_EVENTS_KEY, [])
    for topic, payload in pending:
        events.publish(topic, payload)


@event.listens_for(Session, "after_rollback")
def _drop_pending_events(session: Session) -> None:
    dropped = session.info.pop(PENDING_EVENTS_KEY, [])
    if dropped:
        logger.debug(f"🗑️ Dropped {len(dropped)} unpublished event(s) after rollback")


def serialize_notification(notification: UserNotification) -> dict:
    return {
        "id": notification.id,
        "user_id": notification.user_id,
        "type": notification.type,
        "title": notification.title,
        "message": notification.message,
        "data": notification.data or {},
        "link": notification.link,
        "actor_id": notification.actor_id,
        "role_scope": notification.role_scope,
        "is_read": notification.is_read,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }


def create_user_notification(
    db: Session,
    user_id: str,
    type: str,
    title: str,
    message: str,
    data: Optional[dict] = None,
    link: Optional[str] = None,
    actor_id: Optional[str] = None,
    role_scope: Optional[str] = None,
) -> UserNotification:
    """Add a notification to the session and queue its live event"""
    notification = UserNotification(
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        data=data or {},
        link=link,
        actor_id=actor_id,
        role_scope=role_scope,
        is_read=False,
    )
    db.add(notification)
    db.flush()
    _queue_event(
        db,
        events.user_topic(user_id),
        {"event": "notification", "notification": serialize_notification(notification)},
    )
    logger.debug(f"🔔 Queued {type} notification for user {user_id}")
    return notification


def publish_academy_event(db: Session, academy_id: str, event_type: str, data: dict[str, Any]) -> None:
    _queue_event(db, events.academy_topic(academy_id), {"event": event_type, **data})


def publish_franqueadora_event(db: Session, franqueadora_id: str, event_type: str, data: dict[str, Any]) -> None:
    _queue_event(db, events.franqueadora_topic(franqueadora_id), {"event": event_type, **data})


# ============================================================================
# DOMAIN EVENT HELPERS
# ============================================================================


def _booking_payload(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "unit_id": booking.unit_id,
        "start_at": booking.start_at.isoformat() if booking.start_at else None,
        "status": booking.status_canonical,
    }


def notify_booking_created(db: Session, booking: Booking, actor_id: Optional[str] = None) -> None:
    when = booking.start_at.strftime("%d/%m/%Y %H:%M")
    payload = _booking_payload(booking)
    if booking.student_id:
        create_user_notification(
            db,
            booking.student_id,
            "booking_created",
            "Agendamento confirmado",
            f"Sua aula em {when} foi reservada.",
            data=payload,
            link=f"/aluno/agendamentos/{booking.id}",
            actor_id=actor_id,
            role_scope="STUDENT",
        )
    create_user_notification(
        db,
        booking.teacher_id,
        "booking_created",
        "Novo agendamento",
        f"Você tem uma nova aula em {when}.",
        data=payload,
        link=f"/professor/agenda/{booking.id}",
        actor_id=actor_id,
        role_scope="TEACHER",
    )
    publish_academy_event(db, booking.unit_id, "booking_created", payload)


def notify_booking_canceled(db: Session, booking: Booking, actor_id: Optional[str] = None) -> None:
    when = booking.start_at.strftime("%d/%m/%Y %H:%M")
    payload = _booking_payload(booking)
    for user_id, role in ((booking.student_id, "STUDENT"), (booking.teacher_id, "TEACHER")):
        if not user_id or user_id == actor_id:
            continue
        create_user_notification(
            db,
            user_id,
            "booking_canceled",
            "Agendamento cancelado",
            f"A aula de {when} foi cancelada.",
            data=payload,
            actor_id=actor_id,
            role_scope=role,
        )
    publish_academy_event(db, booking.unit_id, "booking_canceled", payload)


def notify_lock_expired(db: Session, student_id: str, qty: int, booking_id: Optional[str]) -> None:
    create_user_notification(
        db,
        student_id,
        "lock_expired",
        "Crédito consumido",
        f"{qty} crédito(s) foram consumidos pela aula agendada.",
        data={"booking_id": booking_id, "qty": qty},
        role_scope="STUDENT",
    )


def notify_bonus_earned(db: Session, professor_id: str, hours: int, booking_id: Optional[str]) -> None:
    create_user_notification(
        db,
        professor_id,
        "bonus_earned",
        "Hora bônus liberada",
        f"Você ganhou {hours} hora(s) bônus por uma aula agendada por aluno.",
        data={"booking_id": booking_id, "hours": hours},
        role_scope="TEACHER",
    )


def notify_payment_confirmed(db: Session, user_id: str, intent_id: str, description: str) -> None:
    create_user_notification(
        db,
        user_id,
        "payment_confirmed",
        "Pagamento confirmado",
        f"Seu pagamento foi confirmado: {description}.",
        data={"payment_intent_id": intent_id},
    )


def notify_credits_granted(
    db: Session, user_id: str, credit_type: str, quantity: int, actor_id: Optional[str] = None
) -> None:
    label = "aula(s)" if credit_type == "STUDENT_CLASS" else "hora(s)"
    create_user_notification(
        db,
        user_id,
        "credits_granted",
        "Créditos liberados",
        f"Você recebeu {quantity} {label}.",
        data={"credit_type": credit_type, "quantity": quantity},
        actor_id=actor_id,
    )
