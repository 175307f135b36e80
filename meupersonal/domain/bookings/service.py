"""Booking service - Business logic for the booking lifecycle

RESERVED -> PAID -> COMPLETED, or -> CANCELED before the cancellation window closes.
Creating a booking locks one student class (student-led) and one professor hour;
the locks are released on cancellation and settled on completion, check-in, or
by the expiry sweep once unlock_at passes.
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from ...auth import canonicalize_role, user_academy_ids
from ...config import CANCELLATION_WINDOW_HOURS
from ...database import utcnow
from ...models import (
    ADMIN_ROLES,
    ROLE_STUDENT,
    ROLE_TEACHER,
    Booking,
    User,
)
from ...services import notification_service, policy_service
from ...services.audit_service import create_audit_log
from ...services.booking_status import is_active_booking, normalize_booking_status
from ..balances.service import BalanceService
from .repository import BookingRepository
from .schemas import BookingCreate

logger = logging.getLogger(__name__)

CHECKIN_ADMIN_ROLES = ADMIN_ROLES


def booking_error(status_code: int, message: str, code: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": message, "code": code})


def serialize_booking(booking: Booking) -> dict:
    return {
        "id": booking.id,
        "source": booking.source,
        "student_id": booking.student_id,
        "teacher_id": booking.teacher_id,
        "unit_id": booking.unit_id,
        "start_at": booking.start_at.isoformat(),
        "end_at": booking.end_at.isoformat(),
        "status": booking.status,
        "status_canonical": booking.status_canonical,
        "cancellable_until": booking.cancellable_until.isoformat() if booking.cancellable_until else None,
        "notes": booking.notes,
        "created_at": booking.created_at.isoformat() if booking.created_at else None,
    }


class BookingService:
    """Service layer for booking business logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BookingRepository()
        self.balances = BalanceService(db)

    # ========================================================================
    # QUERIES
    # ========================================================================

    def _is_admin(self, user: User) -> bool:
        return canonicalize_role(user.role) in ADMIN_ROLES

    def _is_participant(self, booking: Booking, user: User) -> bool:
        return user.id in (booking.student_id, booking.teacher_id)

    def get_booking(self, booking_id: str, user: User) -> Booking:
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise booking_error(404, "Agendamento não encontrado", "BOOKING_NOT_FOUND")
        if not (self._is_participant(booking, user) or self._is_admin(user)):
            raise booking_error(403, "Acesso negado", "FORBIDDEN")
        return booking

    def list_bookings(self, unit_id: str, user: User, status: Optional[str] = None, **filters) -> list[Booking]:
        role = canonicalize_role(user.role)
        if role in (ROLE_STUDENT, ROLE_TEACHER) and unit_id not in user_academy_ids(self.db, user):
            raise booking_error(403, "Acesso negado a esta unidade", "UNIT_ACCESS_DENIED")
        if role == ROLE_STUDENT:
            filters["student_id"] = user.id
        return self.repo.list_bookings(
            self.db, unit_id, status=normalize_booking_status(status) if status else None, **filters
        )

    # ========================================================================
    # CREATE
    # ========================================================================

    def _check_actor_can_create(self, data: BookingCreate, actor: User) -> None:
        role = canonicalize_role(actor.role)
        if role == ROLE_STUDENT:
            if data.source != "ALUNO" or data.studentId != actor.id:
                raise booking_error(403, "Alunos só podem agendar para si mesmos", "FORBIDDEN")
        elif role == ROLE_TEACHER:
            if data.source != "PROFESSOR" or data.professorId != actor.id:
                raise booking_error(403, "Professores só podem agendar em sua própria agenda", "FORBIDDEN")
        elif role not in ADMIN_ROLES:
            raise booking_error(403, "Permissões insuficientes", "INSUFFICIENT_PERMISSIONS")

    def create_booking(self, data: BookingCreate, actor: User, request: Optional[Request] = None) -> Booking:
        now = utcnow()
        if data.startAt <= now:
            raise booking_error(400, "A data de início deve ser no futuro", "INVALID_START")

        self._check_actor_can_create(data, actor)

        academy = self.repo.get_academy(self.db, data.unitId)
        if not academy or not academy.is_active:
            raise booking_error(404, "Unidade não encontrada", "UNIT_NOT_FOUND")

        teacher = self.repo.get_user(self.db, data.professorId)
        if not teacher or canonicalize_role(teacher.role) != ROLE_TEACHER:
            raise booking_error(404, "Professor não encontrado", "TEACHER_NOT_FOUND")

        student = None
        if data.source == "ALUNO":
            student = self.repo.get_user(self.db, data.studentId)
            if not student or canonicalize_role(student.role) != ROLE_STUDENT:
                raise booking_error(404, "Aluno não encontrado", "STUDENT_NOT_FOUND")

        policy = policy_service.get_effective_policy(self.db, academy.id)
        ok, message = policy_service.validate_booking_creation(policy, data.startAt, now)
        if not ok:
            raise booking_error(400, message, "POLICY_VIOLATION")
        ok, message = policy_service.validate_teacher_daily_limit(self.db, policy, teacher.id, data.startAt)
        if not ok:
            raise booking_error(400, message, "TEACHER_DAILY_LIMIT")

        if self.repo.find_overlapping_booking(self.db, teacher.id, data.startAt, data.endAt):
            raise booking_error(409, "Horário indisponível para este professor", "SLOT_UNAVAILABLE")

        cancellable_until = data.startAt - timedelta(hours=CANCELLATION_WINDOW_HOURS)
        franqueadora_id = academy.franqueadora_id

        try:
            if student is not None:
                balance = self.balances.get_student_balance(student.id, franqueadora_id, academy.id)
                if balance.available < policy["credits_per_class"]:
                    raise booking_error(400, "Saldo insuficiente de aulas", "INSUFFICIENT_BALANCE")

            booking = self.repo.create_booking(
                self.db,
                source=data.source,
                student_id=student.id if student else None,
                teacher_id=teacher.id,
                unit_id=academy.id,
                start_at=data.startAt,
                end_at=data.endAt,
                status="RESERVED",
                status_canonical="RESERVED",
                cancellable_until=cancellable_until,
                notes=data.studentNotes if data.source == "ALUNO" else data.professorNotes,
            )

            if student is not None:
                self.balances.lock_student_classes(
                    student.id,
                    policy["credits_per_class"],
                    booking_id=booking.id,
                    unlock_at=cancellable_until,
                    franqueadora_id=franqueadora_id,
                    unit_id=academy.id,
                    source="ALUNO",
                )
                self.balances.lock_professor_hours(
                    teacher.id,
                    1,
                    booking_id=booking.id,
                    unlock_at=cancellable_until,
                    franqueadora_id=franqueadora_id,
                    unit_id=academy.id,
                    source="SYSTEM",
                    require_free=False,
                )
                self._track_student_unit(student.id, academy.id, data.startAt)
            else:
                self.balances.lock_professor_hours(
                    teacher.id,
                    1,
                    booking_id=booking.id,
                    unlock_at=cancellable_until,
                    franqueadora_id=franqueadora_id,
                    unit_id=academy.id,
                    source="PROFESSOR",
                    require_free=True,
                )

            notification_service.notify_booking_created(self.db, booking, actor_id=actor.id)
            create_audit_log(
                self.db, "booking", booking.id, "BOOKING_CREATE", actor=actor,
                new=serialize_booking(booking), request=request,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(booking)
        logger.info(f"✅ Booking {booking.id} created ({data.source}) at unit {academy.id}")
        return booking

    def _track_student_unit(self, student_id: str, unit_id: str, start_at) -> None:
        """Keep student_units current; failures never block the booking"""
        try:
            with self.db.begin_nested():
                self.repo.upsert_student_unit(self.db, student_id, unit_id, start_at)
        except Exception as e:
            logger.warning(f"⚠️ Failed to update student_units for {student_id}@{unit_id}: {e}")

    # ========================================================================
    # STATUS TRANSITIONS
    # ========================================================================

    def cancel_booking(self, booking_id: str, actor: User, request: Optional[Request] = None) -> Booking:
        booking = self.get_booking(booking_id, actor)
        canonical = normalize_booking_status(booking.status_canonical)
        if canonical == "CANCELED":
            raise booking_error(400, "Agendamento já cancelado", "ALREADY_CANCELED")
        if not is_active_booking(canonical):
            raise booking_error(400, "Agendamento não pode ser cancelado", "INVALID_STATUS")

        now = utcnow()
        if booking.cancellable_until and now > booking.cancellable_until:
            raise booking_error(
                400, "Prazo para cancelamento expirado", "CANCELLATION_WINDOW_CLOSED"
            )

        policy = policy_service.get_effective_policy(self.db, booking.unit_id)
        if booking.student_id and actor.id == booking.student_id:
            ok, message = policy_service.validate_monthly_cancel_limit(
                self.db, policy, booking.student_id, booking.unit_id, now
            )
            if not ok:
                raise booking_error(400, message, "CANCEL_LIMIT_REACHED")
        cancellation = policy_service.validate_cancellation(policy, booking.start_at, now)

        old = serialize_booking(booking)
        try:
            student_lock = self.balances.repo.get_student_lock_for_booking(self.db, booking.id)
            if student_lock:
                self.balances.release_student_lock(student_lock, reason="booking_canceled")
            professor_lock = self.balances.repo.get_professor_lock_for_booking(self.db, booking.id)
            if professor_lock:
                self.balances.release_professor_lock(professor_lock, reason="booking_canceled")

            booking.status = "CANCELED"
            booking.status_canonical = "CANCELED"
            booking.canceled_at = now
            booking.canceled_by = actor.id

            notification_service.notify_booking_canceled(self.db, booking, actor_id=actor.id)
            create_audit_log(
                self.db, "booking", booking.id, "BOOKING_CANCEL", actor=actor,
                old=old, new=serialize_booking(booking), request=request,
                extra={"is_late_cancel": cancellation["is_late_cancel"]},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"🔄 Booking {booking.id} canceled by {actor.id}")
        return booking

    def confirm_booking(self, booking_id: str, actor: User, request: Optional[Request] = None) -> Booking:
        booking = self.get_booking(booking_id, actor)
        if canonicalize_role(actor.role) == ROLE_STUDENT:
            raise booking_error(403, "Permissões insuficientes", "INSUFFICIENT_PERMISSIONS")
        if normalize_booking_status(booking.status_canonical) not in ("PENDING", "RESERVED"):
            raise booking_error(400, "Agendamento não pode ser confirmado", "INVALID_STATUS")

        old = serialize_booking(booking)
        booking.status = "PAID"
        booking.status_canonical = "PAID"
        create_audit_log(
            self.db, "booking", booking.id, "BOOKING_UPDATE", actor=actor,
            old=old, new=serialize_booking(booking), request=request,
        )
        self.db.commit()
        return booking

    def _settle_locks(self, booking: Booking, processed_by: str, reason: str) -> None:
        student_lock = self.balances.repo.get_student_lock_for_booking(self.db, booking.id)
        if student_lock:
            self.balances.settle_student_lock(student_lock, processed_by, reason)
        professor_lock = self.balances.repo.get_professor_lock_for_booking(self.db, booking.id)
        if professor_lock:
            self.balances.settle_professor_lock(
                professor_lock, processed_by, reason, student_led=booking.source == "ALUNO"
            )

    def complete_booking(self, booking_id: str, actor: User, request: Optional[Request] = None) -> Booking:
        booking = self.get_booking(booking_id, actor)
        if canonicalize_role(actor.role) == ROLE_STUDENT:
            raise booking_error(403, "Permissões insuficientes", "INSUFFICIENT_PERMISSIONS")
        canonical = normalize_booking_status(booking.status_canonical)
        if canonical == "COMPLETED":
            return booking
        if not is_active_booking(canonical):
            raise booking_error(400, "Agendamento não pode ser concluído", "INVALID_STATUS")

        old = serialize_booking(booking)
        try:
            self._settle_locks(booking, processed_by=actor.id, reason="booking_completed")
            booking.status = "DONE"
            booking.status_canonical = "COMPLETED"
            booking.completed_at = utcnow()
            create_audit_log(
                self.db, "booking", booking.id, "BOOKING_UPDATE", actor=actor,
                old=old, new=serialize_booking(booking), request=request,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return booking

    def update_status(self, booking_id: str, status: str, actor: User, request: Optional[Request] = None) -> Booking:
        if status == "CANCELED":
            return self.cancel_booking(booking_id, actor, request)
        if status == "PAID":
            return self.confirm_booking(booking_id, actor, request)
        return self.complete_booking(booking_id, actor, request)

    # ========================================================================
    # CHECK-IN
    # ========================================================================

    def _deny_checkin(self, booking: Booking, actor: User, method: str, reason: str) -> None:
        self.repo.add_checkin(
            self.db,
            booking_id=booking.id,
            academy_id=booking.unit_id,
            teacher_id=booking.teacher_id,
            actor_id=actor.id,
            status="DENIED",
            reason=reason,
            method=method,
        )
        self.db.commit()
        logger.warning(f"🚫 Check-in denied for booking {booking.id}: {reason}")

    def check_in(self, booking_id: str, actor: User, method: str = "MANUAL") -> dict:
        """
        Check a booking in.

        Returns {"status": "GRANTED"|"ALREADY_COMPLETED", ...}; denials are
        recorded and then raised as 403 UNAUTHORIZED or 400 INVALID_STATUS.
        """
        booking = self.repo.get_booking(self.db, booking_id)
        if not booking:
            raise booking_error(404, "Agendamento não encontrado", "BOOKING_NOT_FOUND")

        allowed = self._is_participant(booking, actor) or canonicalize_role(actor.role) in CHECKIN_ADMIN_ROLES
        if not allowed:
            self._deny_checkin(booking, actor, method, "UNAUTHORIZED")
            raise booking_error(403, "Sem permissão para fazer check-in", "UNAUTHORIZED")

        canonical = normalize_booking_status(booking.status_canonical or booking.status)
        if canonical == "COMPLETED":
            return {"status": "ALREADY_COMPLETED", "code": "ALREADY_COMPLETED", "booking": serialize_booking(booking)}

        if canonical != "PAID":
            self._deny_checkin(booking, actor, method, "INVALID_STATUS")
            raise booking_error(400, "Agendamento não está pago", "INVALID_STATUS")

        minutes = (booking.end_at - booking.start_at).total_seconds() / 60
        hours = max(1, round(minutes / 60))
        franqueadora_id = booking.unit.franqueadora_id if booking.unit else None

        try:
            self._settle_locks(booking, processed_by=actor.id, reason="checkin")
            # The settled bonus hour counts toward the session's hours
            remaining = hours - self.balances.repo.bonus_hours_earned(self.db, booking.id)
            if remaining > 0:
                self.balances.credit_professor_hours(
                    booking.teacher_id,
                    remaining,
                    booking_id=booking.id,
                    franqueadora_id=franqueadora_id,
                    unit_id=booking.unit_id,
                    meta={"method": method, "duration_minutes": int(minutes)},
                )
            booking.status = "COMPLETED"
            booking.status_canonical = "COMPLETED"
            booking.completed_at = utcnow()
            checkin = self.repo.add_checkin(
                self.db,
                booking_id=booking.id,
                academy_id=booking.unit_id,
                teacher_id=booking.teacher_id,
                actor_id=actor.id,
                status="GRANTED",
                method=method,
            )
            notification_service.publish_academy_event(
                self.db, booking.unit_id, "checkin_granted", {"booking_id": booking.id, "checkin_id": checkin.id}
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"✅ Check-in granted for booking {booking.id} ({hours}h credited to {booking.teacher_id})")
        return {
            "status": "GRANTED",
            "code": "GRANTED",
            "hours_credited": hours,
            "checkin_id": checkin.id,
            "booking": serialize_booking(booking),
        }
