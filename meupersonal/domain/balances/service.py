"""Balance service - Student class and professor hour ledgers

Every mutation writes a transaction row and then updates the balance counters.
Methods flush but never commit: callers (bookings, payments, credit grants,
the lock sweep) own the unit of work so a booking and its locks land together.

Student balance:   available  = total_purchased - total_consumed - locked_qty
Professor balance: free_hours = available_hours - locked_hours
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...database import utcnow
from ...models import HourTransaction, ProfHourBalance, StudentClassBalance, StudentClassTransaction
from .repository import BalanceRepository

logger = logging.getLogger(__name__)

STUDENT_TX_TYPES = ("PURCHASE", "CONSUME", "LOCK", "UNLOCK", "REFUND", "REVOKE")
HOUR_TX_TYPES = ("PURCHASE", "CONSUME", "BONUS_LOCK", "BONUS_UNLOCK", "REFUND", "REVOKE")
TX_SOURCES = ("ALUNO", "PROFESSOR", "SYSTEM")


class InsufficientBalanceError(Exception):
    """Raised when a ledger operation would drive a counter negative"""

    def __init__(self, message: str, available: int = 0, requested: int = 0):
        super().__init__(message)
        self.message = message
        self.available = available
        self.requested = requested


def _require_positive(qty: int, label: str = "Quantity") -> None:
    if qty is None or qty <= 0:
        raise ValueError(f"{label} must be positive")


def _merge_meta(current: Optional[dict], extra: Optional[dict]) -> dict:
    # JSON columns are not mutation-tracked, always assign a fresh dict
    merged = dict(current or {})
    merged.update(extra or {})
    return merged


class BalanceService:
    """Service layer for the credit/hour ledger"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BalanceRepository()

    # ========================================================================
    # STUDENT CLASSES
    # ========================================================================

    def get_student_balance(
        self, student_id: str, franqueadora_id: Optional[str] = None, unit_id: Optional[str] = None
    ) -> StudentClassBalance:
        """Get a student's balance, creating an empty one on first access"""
        balance = self.repo.get_student_balance(self.db, student_id)
        if balance is None:
            balance = self.repo.create_student_balance(self.db, student_id, franqueadora_id, unit_id)
            logger.info(f"📊 Created class balance for student {student_id}")
        return balance

    def purchase_student_classes(
        self,
        student_id: str,
        qty: int,
        franqueadora_id: Optional[str] = None,
        unit_id: Optional[str] = None,
        source: str = "ALUNO",
        meta: Optional[dict] = None,
    ) -> StudentClassTransaction:
        _require_positive(qty)
        balance = self.get_student_balance(student_id, franqueadora_id, unit_id)
        tx = self.repo.add_student_tx(
            self.db,
            student_id=student_id,
            franqueadora_id=franqueadora_id,
            unit_id=unit_id,
            type="PURCHASE",
            source=source,
            qty=qty,
            meta_json=meta or {},
        )
        balance.total_purchased += qty
        self.db.flush()
        logger.info(f"✅ Student {student_id} purchased {qty} class(es)")
        return tx

    def lock_student_classes(
        self,
        student_id: str,
        qty: int,
        booking_id: str,
        unlock_at: datetime,
        franqueadora_id: Optional[str] = None,
        unit_id: Optional[str] = None,
        source: str = "ALUNO",
    ) -> StudentClassTransaction:
        _require_positive(qty)
        balance = self.get_student_balance(student_id, franqueadora_id, unit_id)
        if balance.available < qty:
            raise InsufficientBalanceError(
                "Saldo insuficiente de aulas", available=balance.available, requested=qty
            )
        tx = self.repo.add_student_tx(
            self.db,
            student_id=student_id,
            franqueadora_id=franqueadora_id,
            unit_id=unit_id,
            type="LOCK",
            source=source,
            qty=qty,
            booking_id=booking_id,
            unlock_at=unlock_at,
            meta_json={},
        )
        balance.locked_qty += qty
        self.db.flush()
        return tx

    def unlock_student_classes(
        self,
        student_id: str,
        qty: int,
        booking_id: Optional[str] = None,
        franqueadora_id: Optional[str] = None,
        source: str = "SYSTEM",
        meta: Optional[dict] = None,
    ) -> StudentClassTransaction:
        _require_positive(qty)
        balance = self.get_student_balance(student_id, franqueadora_id)
        if balance.locked_qty < qty:
            raise InsufficientBalanceError(
                "Aulas bloqueadas insuficientes", available=balance.locked_qty, requested=qty
            )
        tx = self.repo.add_student_tx(
            self.db,
            student_id=student_id,
            franqueadora_id=franqueadora_id,
            unit_id=balance.unit_id,
            type="UNLOCK",
            source=source,
            qty=qty,
            booking_id=booking_id,
            meta_json=meta or {},
        )
        balance.locked_qty -= qty
        self.db.flush()
        return tx

    def consume_student_classes(
        self,
        student_id: str,
        qty: int,
        booking_id: Optional[str] = None,
        franqueadora_id: Optional[str] = None,
        source: str = "SYSTEM",
        meta: Optional[dict] = None,
    ) -> StudentClassTransaction:
        _require_positive(qty)
        balance = self.get_student_balance(student_id, franqueadora_id)
        if balance.locked_qty < qty:
            raise InsufficientBalanceError(
                "Aulas bloqueadas insuficientes", available=balance.locked_qty, requested=qty
            )
        tx = self.repo.add_student_tx(
            self.db,
            student_id=student_id,
            franqueadora_id=franqueadora_id,
            unit_id=balance.unit_id,
            type="CONSUME",
            source=source,
            qty=qty,
            booking_id=booking_id,
            meta_json=meta or {},
        )
        balance.total_consumed += qty
        balance.locked_qty -= qty
        self.db.flush()
        return tx

    def revoke_student_classes(
        self,
        student_id: str,
        qty: int,
        franqueadora_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Optional[StudentClassTransaction]:
        """Take back purchased classes, limited to what is still available"""
        _require_positive(qty)
        balance = self.get_student_balance(student_id, franqueadora_id)
        revoked = min(qty, max(balance.available, 0))
        if revoked == 0:
            logger.warning(f"⚠️ Nothing to revoke for student {student_id} (requested {qty})")
            return None
        tx = self.repo.add_student_tx(
            self.db,
            student_id=student_id,
            franqueadora_id=franqueadora_id,
            unit_id=balance.unit_id,
            type="REVOKE",
            source="SYSTEM",
            qty=revoked,
            meta_json=_merge_meta(meta, {"requested_qty": qty}),
        )
        balance.total_purchased -= revoked
        self.db.flush()
        return tx

    def release_student_lock(self, lock_tx: StudentClassTransaction, reason: str) -> StudentClassTransaction:
        """Release a booking's LOCK row back to available (cancellation path)"""
        unlock_tx = self.unlock_student_classes(
            lock_tx.student_id,
            lock_tx.qty,
            booking_id=lock_tx.booking_id,
            franqueadora_id=lock_tx.franqueadora_id,
            meta={"reason": reason, "lock_tx_id": lock_tx.id},
        )
        lock_tx.unlock_at = None
        lock_tx.meta_json = _merge_meta(lock_tx.meta_json, {"released_at": utcnow().isoformat(), "reason": reason})
        self.db.flush()
        return unlock_tx

    def settle_student_lock(
        self, lock_tx: StudentClassTransaction, processed_by: str, reason: str
    ) -> StudentClassTransaction:
        """Convert a LOCK row into CONSUME in place.

        Used by the expiry sweep and by booking completion. The row stops
        being a LOCK, so settling the same booking twice is impossible.
        """
        balance = self.get_student_balance(lock_tx.student_id, lock_tx.franqueadora_id)
        lock_tx.type = "CONSUME"
        lock_tx.source = "SYSTEM"
        lock_tx.meta_json = _merge_meta(
            lock_tx.meta_json,
            {"processed_by": processed_by, "processed_at": utcnow().isoformat(), "reason": reason},
        )
        balance.total_consumed += lock_tx.qty
        balance.locked_qty = max(balance.locked_qty - lock_tx.qty, 0)
        self.db.flush()
        return lock_tx

    def list_student_transactions(self, student_id: str, offset: int = 0, limit: int = 20):
        return self.repo.list_student_transactions(self.db, student_id, offset, limit)

    # ========================================================================
    # PROFESSOR HOURS
    # ========================================================================

    def get_professor_balance(
        self, professor_id: str, franqueadora_id: Optional[str] = None, unit_id: Optional[str] = None
    ) -> ProfHourBalance:
        """Get a professor's hour balance, creating an empty one on first access"""
        balance = self.repo.get_professor_balance(self.db, professor_id)
        if balance is None:
            balance = self.repo.create_professor_balance(self.db, professor_id, franqueadora_id, unit_id)
            logger.info(f"📊 Created hour balance for professor {professor_id}")
        return balance

    def purchase_professor_hours(
        self,
        professor_id: str,
        hours: int,
        franqueadora_id: Optional[str] = None,
        unit_id: Optional[str] = None,
        source: str = "PROFESSOR",
        meta: Optional[dict] = None,
    ) -> HourTransaction:
        _require_positive(hours, "Hours")
        balance = self.get_professor_balance(professor_id, franqueadora_id, unit_id)
        tx = self.repo.add_hour_tx(
            self.db,
            professor_id=professor_id,
            franqueadora_id=franqueadora_id,
            unit_id=unit_id,
            type="PURCHASE",
            source=source,
            hours=hours,
            meta_json=meta or {},
        )
        balance.available_hours += hours
        self.db.flush()
        logger.info(f"✅ Professor {professor_id} purchased {hours} hour(s)")
        return tx

    def lock_professor_hours(
        self,
        professor_id: str,
        hours: int,
        booking_id: str,
        unlock_at: datetime,
        franqueadora_id: Optional[str] = None,
        unit_id: Optional[str] = None,
        source: str = "PROFESSOR",
        require_free: bool = True,
    ) -> HourTransaction:
        """Place a BONUS_LOCK for a booking.

        Student-led bookings lock a pending bonus and pass require_free=False;
        professor-led bookings spend the professor's own hours and must have them.
        """
        _require_positive(hours, "Hours")
        balance = self.get_professor_balance(professor_id, franqueadora_id, unit_id)
        if require_free and balance.free_hours < hours:
            raise InsufficientBalanceError(
                "Saldo insuficiente de horas", available=balance.free_hours, requested=hours
            )
        tx = self.repo.add_hour_tx(
            self.db,
            professor_id=professor_id,
            franqueadora_id=franqueadora_id,
            unit_id=unit_id,
            type="BONUS_LOCK",
            source=source,
            hours=hours,
            booking_id=booking_id,
            unlock_at=unlock_at,
            meta_json={},
        )
        balance.locked_hours += hours
        self.db.flush()
        return tx

    def unlock_professor_hours(
        self,
        professor_id: str,
        hours: int,
        booking_id: Optional[str] = None,
        franqueadora_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> HourTransaction:
        _require_positive(hours, "Hours")
        balance = self.get_professor_balance(professor_id, franqueadora_id)
        if balance.locked_hours < hours:
            raise InsufficientBalanceError(
                "Horas bloqueadas insuficientes", available=balance.locked_hours, requested=hours
            )
        tx = self.repo.add_hour_tx(
            self.db,
            professor_id=professor_id,
            franqueadora_id=franqueadora_id,
            unit_id=balance.unit_id,
            type="REFUND",
            source="SYSTEM",
            hours=hours,
            booking_id=booking_id,
            meta_json=meta or {},
        )
        balance.locked_hours -= hours
        self.db.flush()
        return tx

    def consume_professor_hours(
        self,
        professor_id: str,
        hours: int,
        booking_id: Optional[str] = None,
        franqueadora_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> HourTransaction:
        _require_positive(hours, "Hours")
        balance = self.get_professor_balance(professor_id, franqueadora_id)
        if balance.locked_hours < hours:
            raise InsufficientBalanceError(
                "Horas bloqueadas insuficientes", available=balance.locked_hours, requested=hours
            )
        tx = self.repo.add_hour_tx(
            self.db,
            professor_id=professor_id,
            franqueadora_id=franqueadora_id,
            unit_id=balance.unit_id,
            type="CONSUME",
            source="SYSTEM",
            hours=hours,
            booking_id=booking_id,
            meta_json=meta or {},
        )
        balance.locked_hours -= hours
        balance.available_hours -= hours
        self.db.flush()
        return tx

    def credit_professor_hours(
        self,
        professor_id: str,
        hours: int,
        booking_id: Optional[str] = None,
        franqueadora_id: Optional[str] = None,
        unit_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> HourTransaction:
        """Credit hours worked at check-in"""
        _require_positive(hours, "Hours")
        balance = self.get_professor_balance(professor_id, franqueadora_id, unit_id)
        tx = self.repo.add_hour_tx(
            self.db,
            professor_id=professor_id,
            franqueadora_id=franqueadora_id,
            unit_id=unit_id,
            type="CONSUME",
            source="SYSTEM",
            hours=hours,
            booking_id=booking_id,
            meta_json=_merge_meta({"origin": "checkin"}, meta),
        )
        balance.available_hours += hours
        self.db.flush()
        return tx

    def revoke_professor_hours(
        self,
        professor_id: str,
        hours: int,
        franqueadora_id: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> Optional[HourTransaction]:
        _require_positive(hours, "Hours")
        balance = self.get_professor_balance(professor_id, franqueadora_id)
        revoked = min(hours, max(balance.free_hours, 0))
        if revoked == 0:
            logger.warning(f"⚠️ Nothing to revoke for professor {professor_id} (requested {hours})")
            return None
        tx = self.repo.add_hour_tx(
            self.db,
            professor_id=professor_id,
            franqueadora_id=franqueadora_id,
            unit_id=balance.unit_id,
            type="REVOKE",
            source="SYSTEM",
            hours=revoked,
            meta_json=_merge_meta(meta, {"requested_hours": hours}),
        )
        balance.available_hours -= revoked
        self.db.flush()
        return tx

    def release_professor_lock(self, lock_tx: HourTransaction, reason: str) -> HourTransaction:
        refund_tx = self.unlock_professor_hours(
            lock_tx.professor_id,
            lock_tx.hours,
            booking_id=lock_tx.booking_id,
            franqueadora_id=lock_tx.franqueadora_id,
            meta={"reason": reason, "lock_tx_id": lock_tx.id},
        )
        lock_tx.unlock_at = None
        lock_tx.meta_json = _merge_meta(lock_tx.meta_json, {"released_at": utcnow().isoformat(), "reason": reason})
        self.db.flush()
        return refund_tx

    def settle_professor_lock(
        self, lock_tx: HourTransaction, processed_by: str, reason: str, student_led: bool = True
    ) -> HourTransaction:
        """Convert a BONUS_LOCK row in place.

        Student-led: the professor earns the hour (BONUS_UNLOCK, available += h).
        Professor-led: the professor spends the hour (CONSUME, available -= h).
        """
        balance = self.get_professor_balance(lock_tx.professor_id, lock_tx.franqueadora_id)
        if student_led:
            lock_tx.type = "BONUS_UNLOCK"
            balance.available_hours += lock_tx.hours
        else:
            lock_tx.type = "CONSUME"
            balance.available_hours -= lock_tx.hours
        lock_tx.source = "SYSTEM"
        lock_tx.meta_json = _merge_meta(
            lock_tx.meta_json,
            {"processed_by": processed_by, "processed_at": utcnow().isoformat(), "reason": reason},
        )
        balance.locked_hours = max(balance.locked_hours - lock_tx.hours, 0)
        self.db.flush()
        return lock_tx

    def list_hour_transactions(self, professor_id: str, offset: int = 0, limit: int = 20):
        return self.repo.list_hour_transactions(self.db, professor_id, offset, limit)


# ============================================================================
# SERIALIZERS
# ============================================================================


def serialize_student_balance(balance: StudentClassBalance) -> dict:
    return {
        "student_id": balance.student_id,
        "franqueadora_id": balance.franqueadora_id,
        "total_purchased": balance.total_purchased,
        "total_consumed": balance.total_consumed,
        "locked_qty": balance.locked_qty,
        "available_classes": max(balance.available, 0),
        "updated_at": balance.updated_at.isoformat() if balance.updated_at else None,
    }


def serialize_professor_balance(balance: ProfHourBalance) -> dict:
    return {
        "professor_id": balance.professor_id,
        "franqueadora_id": balance.franqueadora_id,
        "available_hours": balance.available_hours,
        "locked_hours": balance.locked_hours,
        "free_hours": max(balance.free_hours, 0),
        "updated_at": balance.updated_at.isoformat() if balance.updated_at else None,
    }


def serialize_transaction(tx) -> dict:
    data = {
        "id": tx.id,
        "type": tx.type,
        "source": tx.source,
        "booking_id": tx.booking_id,
        "unit_id": tx.unit_id,
        "unlock_at": tx.unlock_at.isoformat() if tx.unlock_at else None,
        "meta": tx.meta_json or {},
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }
    if isinstance(tx, HourTransaction):
        data["hours"] = tx.hours
    else:
        data["qty"] = tx.qty
    return data
