"""Booking repository - Database operations for bookings, check-ins and unit links"""

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...models import Academy, Booking, Checkin, StudentUnit, User
from ...services.booking_status import ACTIVE_STATUSES


class BookingRepository:
    """Repository for booking database operations. The service commits."""

    @staticmethod
    def get_booking(db: Session, booking_id: str) -> Optional[Booking]:
        return db.query(Booking).filter(Booking.id == booking_id).first()

    @staticmethod
    def get_academy(db: Session, academy_id: str) -> Optional[Academy]:
        return db.query(Academy).filter(Academy.id == academy_id).first()

    @staticmethod
    def get_user(db: Session, user_id: str) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def list_bookings(
        db: Session,
        unit_id: str,
        status: Optional[str] = None,
        teacher_id: Optional[str] = None,
        student_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 200,
    ) -> list[Booking]:
        query = db.query(Booking).filter(Booking.unit_id == unit_id)
        if status:
            query = query.filter(Booking.status_canonical == status)
        if teacher_id:
            query = query.filter(Booking.teacher_id == teacher_id)
        if student_id:
            query = query.filter(Booking.student_id == student_id)
        if date_from:
            query = query.filter(Booking.start_at >= date_from)
        if date_to:
            query = query.filter(Booking.start_at <= date_to)
        return query.order_by(Booking.start_at.asc()).limit(limit).all()

    @staticmethod
    def find_overlapping_booking(
        db: Session, teacher_id: str, start_at: datetime, end_at: datetime
    ) -> Optional[Booking]:
        """An active booking of the teacher that intersects [start_at, end_at)"""
        return (
            db.query(Booking)
            .filter(
                Booking.teacher_id == teacher_id,
                Booking.status_canonical.in_(ACTIVE_STATUSES),
                Booking.start_at < end_at,
                Booking.end_at > start_at,
            )
            .first()
        )

    @staticmethod
    def create_booking(db: Session, **booking_data) -> Booking:
        booking = Booking(**booking_data)
        db.add(booking)
        db.flush()
        return booking

    @staticmethod
    def add_checkin(db: Session, **checkin_data) -> Checkin:
        checkin = Checkin(**checkin_data)
        db.add(checkin)
        db.flush()
        return checkin

    @staticmethod
    def upsert_student_unit(db: Session, student_id: str, unit_id: str, booking_date: datetime) -> StudentUnit:
        link = (
            db.query(StudentUnit)
            .filter(StudentUnit.student_id == student_id, StudentUnit.unit_id == unit_id)
            .first()
        )
        if link is None:
            link = StudentUnit(
                student_id=student_id,
                unit_id=unit_id,
                first_booking_date=booking_date,
                last_booking_date=booking_date,
                total_bookings=1,
                is_active=True,
            )
            db.add(link)
        else:
            if link.first_booking_date is None or booking_date < link.first_booking_date:
                link.first_booking_date = booking_date
            if link.last_booking_date is None or booking_date > link.last_booking_date:
                link.last_booking_date = booking_date
            link.total_bookings = (link.total_bookings or 0) + 1
            link.is_active = True
        db.flush()
        return link
