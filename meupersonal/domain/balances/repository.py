"""Balance repository - Database operations for class and hour ledgers"""

from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import HourTransaction, ProfHourBalance, StudentClassBalance, StudentClassTransaction


class BalanceRepository:
    """Repository for ledger rows. Nothing here commits; the service owns the unit of work."""

    @staticmethod
    def get_student_balance(db: Session, student_id: str) -> Optional[StudentClassBalance]:
        return db.query(StudentClassBalance).filter(StudentClassBalance.student_id == student_id).first()

    @staticmethod
    def create_student_balance(
        db: Session, student_id: str, franqueadora_id: Optional[str] = None, unit_id: Optional[str] = None
    ) -> StudentClassBalance:
        balance = StudentClassBalance(
            student_id=student_id,
            franqueadora_id=franqueadora_id,
            unit_id=unit_id,
            total_purchased=0,
            total_consumed=0,
            locked_qty=0,
        )
        db.add(balance)
        db.flush()
        return balance

    @staticmethod
    def get_professor_balance(db: Session, professor_id: str) -> Optional[ProfHourBalance]:
        return db.query(ProfHourBalance).filter(ProfHourBalance.professor_id == professor_id).first()

    @staticmethod
    def create_professor_balance(
        db: Session, professor_id: str, franqueadora_id: Optional[str] = None, unit_id: Optional[str] = None
    ) -> ProfHourBalance:
        balance = ProfHourBalance(
            professor_id=professor_id,
            franqueadora_id=franqueadora_id,
            unit_id=unit_id,
            available_hours=0,
            locked_hours=0,
        )
        db.add(balance)
        db.flush()
        return balance

    @staticmethod
    def add_student_tx(db: Session, **tx_data) -> StudentClassTransaction:
        tx = StudentClassTransaction(**tx_data)
        db.add(tx)
        db.flush()
        return tx

    @staticmethod
    def add_hour_tx(db: Session, **tx_data) -> HourTransaction:
        tx = HourTransaction(**tx_data)
        db.add(tx)
        db.flush()
        return tx

    @staticmethod
    def get_student_lock_for_booking(db: Session, booking_id: str) -> Optional[StudentClassTransaction]:
        """The still-open LOCK row of a booking, if the sweep has not settled it."""
        return (
            db.query(StudentClassTransaction)
            .filter(
                StudentClassTransaction.booking_id == booking_id,
                StudentClassTransaction.type == "LOCK",
                StudentClassTransaction.unlock_at.isnot(None),
            )
            .first()
        )

    @staticmethod
    def get_professor_lock_for_booking(db: Session, booking_id: str) -> Optional[HourTransaction]:
        return (
            db.query(HourTransaction)
            .filter(
                HourTransaction.booking_id == booking_id,
                HourTransaction.type == "BONUS_LOCK",
                HourTransaction.unlock_at.isnot(None),
            )
            .first()
        )

    @staticmethod
    def bonus_hours_earned(db: Session, booking_id: str) -> int:
        """Hours already paid to the teacher for a booking through BONUS_UNLOCK."""
        total = (
            db.query(func.coalesce(func.sum(HourTransaction.hours), 0))
            .filter(HourTransaction.booking_id == booking_id, HourTransaction.type == "BONUS_UNLOCK")
            .scalar()
        )
        return int(total or 0)

    @staticmethod
    def list_student_transactions(
        db: Session, student_id: str, offset: int = 0, limit: int = 20
    ) -> tuple[list[StudentClassTransaction], int]:
        query = db.query(StudentClassTransaction).filter(StudentClassTransaction.student_id == student_id)
        total = query.count()
        rows = (
            query.order_by(StudentClassTransaction.created_at.desc()).offset(offset).limit(limit).all()
        )
        return rows, total

    @staticmethod
    def list_hour_transactions(
        db: Session, professor_id: str, offset: int = 0, limit: int = 20
    ) -> tuple[list[HourTransaction], int]:
        query = db.query(HourTransaction).filter(HourTransaction.professor_id == professor_id)
        total = query.count()
        rows = query.order_by(HourTransaction.created_at.desc()).offset(offset).limit(limit).all()
        return rows, total
