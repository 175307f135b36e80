"""
Booking lock expiry sweep

Once a booking's cancellation window closes (unlock_at), its locks settle:
  1. student LOCK        -> CONSUME       (the class is spent)
  2. professor BONUS_LOCK -> BONUS_UNLOCK  (student-led: the teacher earns the hour)
                          -> CONSUME       (professor-led: the teacher spends the hour)
  3. locks of bookings canceled in the last 7 days are detached from them

Each step is retried as a whole on a fresh session; a failing row is logged and skipped.
Runs as an ARQ cron job (see worker.py) or as an in-process asyncio loop.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..config import (
    BOOKING_SCHEDULER_INTERVAL_MINUTES,
    SCHEDULER_MAX_RETRIES,
    SCHEDULER_RETRY_DELAY_SECONDS,
)
from ..database import SessionLocal, utcnow
from ..domain.balances.service import BalanceService
from ..models import Booking, HourTransaction, StudentClassTransaction
from ..services import notification_service
from ..services.booking_status import ACTIVE_STATUSES

logger = logging.getLogger(__name__)

PROCESSED_BY = "booking_scheduler"
CANCELED_LOOKBACK_DAYS = 7


class BookingScheduler:
    """Settles expired booking locks"""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        max_retries: int = SCHEDULER_MAX_RETRIES,
        retry_delay_seconds: float = SCHEDULER_RETRY_DELAY_SECONDS,
    ):
        self.session_factory = session_factory
        self.max_retries = max(1, max_retries)
        self.retry_delay_seconds = retry_delay_seconds

    async def execute_with_retry(self, name: str, operation: Callable[[], Any]) -> Any:
        """Run operation, retrying up to max_retries attempts with a fixed delay"""
        for attempt in range(1, self.max_retries + 1):
            try:
                return operation()
            except Exception as e:
                logger.error(f"❌ {name} failed (attempt {attempt}/{self.max_retries}): {e}")
                if attempt >= self.max_retries:
                    raise
                await asyncio.sleep(self.retry_delay_seconds)

    # ========================================================================
    # STEPS
    # ========================================================================

    def consume_expired_student_locks(self, db: Session) -> dict:
        now = utcnow()
        balances = BalanceService(db)
        summary = {"processed": 0, "errors": 0}

        locks = (
            db.query(StudentClassTransaction)
            .outerjoin(Booking, StudentClassTransaction.booking_id == Booking.id)
            .filter(
                StudentClassTransaction.type == "LOCK",
                StudentClassTransaction.unlock_at.isnot(None),
                StudentClassTransaction.unlock_at <= now,
                or_(Booking.id.is_(None), Booking.status_canonical.in_(ACTIVE_STATUSES)),
            )
            .all()
        )

        for lock in locks:
            try:
                with db.begin_nested():
                    balances.settle_student_lock(lock, PROCESSED_BY, reason="lock_expired")
                    notification_service.notify_lock_expired(db, lock.student_id, lock.qty, lock.booking_id)
                summary["processed"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"❌ Failed to consume expired lock {lock.id}: {e}")

        db.commit()
        return summary

    def release_expired_professor_locks(self, db: Session) -> dict:
        now = utcnow()
        balances = BalanceService(db)
        summary = {"processed": 0, "errors": 0}

        rows = (
            db.query(HourTransaction, Booking)
            .outerjoin(Booking, HourTransaction.booking_id == Booking.id)
            .filter(
                HourTransaction.type == "BONUS_LOCK",
                HourTransaction.unlock_at.isnot(None),
                HourTransaction.unlock_at <= now,
                or_(Booking.id.is_(None), Booking.status_canonical.in_(ACTIVE_STATUSES)),
            )
            .all()
        )

        for lock, booking in rows:
            student_led = booking is None or booking.source == "ALUNO"
            try:
                with db.begin_nested():
                    balances.settle_professor_lock(lock, PROCESSED_BY, reason="lock_expired", student_led=student_led)
                    if student_led:
                        notification_service.notify_bonus_earned(db, lock.professor_id, lock.hours, lock.booking_id)
                summary["processed"] += 1
            except Exception as e:
                summary["errors"] += 1
                logger.error(f"❌ Failed to release professor lock {lock.id}: {e}")

        db.commit()
        return summary

    def cleanup_canceled_booking_locks(self, db: Session) -> dict:
        since = utcnow() - timedelta(days=CANCELED_LOOKBACK_DAYS)
        summary = {"processed": 0, "errors": 0}

        canceled_ids = [
            booking_id
            for (booking_id,) in db.query(Booking.id).filter(
                Booking.status_canonical == "CANCELED",
                or_(Booking.canceled_at >= since, Booking.updated_at >= since),
            )
        ]
        if not canceled_ids:
            return summary

        student_locks = (
            db.query(StudentClassTransaction)
            .filter(
                StudentClassTransaction.booking_id.in_(canceled_ids),
                StudentClassTransaction.type == "LOCK",
            )
            .all()
        )
        hour_locks = (
            db.query(HourTransaction)
            .filter(HourTransaction.booking_id.in_(canceled_ids), HourTransaction.type == "BONUS_LOCK")
            .all()
        )

        for tx in [*student_locks, *hour_locks]:
            meta = dict(tx.meta_json or {})
            meta.update({"cleanup_reason": "booking_canceled", "original_booking_id": tx.booking_id})
            tx.meta_json = meta
            tx.booking_id = None
            tx.unlock_at = None
            summary["processed"] += 1

        db.commit()
        return summary

    # ========================================================================
    # SWEEP
    # ========================================================================

    def _run_in_session(self, step: Callable[[Session], dict]) -> dict:
        """One attempt of a step, on its own session"""
        db = self.session_factory()
        try:
            return step(db)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _run_step(self, name: str, step: Callable[[Session], dict], result: dict) -> None:
        try:
            summary = await self.execute_with_retry(name, lambda: self._run_in_session(step))
            result["steps"][name] = summary
            result["processed"] += summary["processed"]
            result["errors"] += summary["errors"]
        except Exception as e:
            result["steps"][name] = {"processed": 0, "errors": 1, "error": str(e)}
            result["errors"] += 1

    async def process_expired_locks(self) -> dict:
        started_at = utcnow()
        result: dict[str, Any] = {"processed": 0, "errors": 0, "steps": {}, "started_at": started_at.isoformat()}
        logger.info("🔄 Processing expired booking locks...")

        await self._run_step("student_locks", self.consume_expired_student_locks, result)
        await self._run_step("professor_locks", self.release_expired_professor_locks, result)
        await self._run_step("canceled_cleanup", self.cleanup_canceled_booking_locks, result)

        result["finished_at"] = utcnow().isoformat()
        logger.info(f"📊 Lock sweep done: processed={result['processed']} errors={result['errors']}")
        return result


async def process_expired_locks(session_factory: Optional[Callable[[], Session]] = None) -> dict:
    scheduler = BookingScheduler(session_factory or SessionLocal)
    return await scheduler.process_expired_locks()


async def run_scheduler_loop(
    interval_minutes: int = BOOKING_SCHEDULER_INTERVAL_MINUTES, scheduler: Optional[BookingScheduler] = None
) -> None:
    """Sweep immediately, then every interval_minutes until cancelled"""
    scheduler = scheduler or BookingScheduler()
    logger.info(f"⏰ Booking scheduler started (every {interval_minutes} min)")
    try:
        while True:
            try:
                await scheduler.process_expired_locks()
            except Exception as e:
                logger.error(f"❌ Booking scheduler sweep crashed: {e}")
            await asyncio.sleep(interval_minutes * 60)
    except asyncio.CancelledError:
        logger.info("⏹️ Booking scheduler stopped")
        raise


def start_scheduler(interval_minutes: int = BOOKING_SCHEDULER_INTERVAL_MINUTES) -> asyncio.Task:
    """Start the sweep loop on the running event loop; cancel the task to stop it"""
    return asyncio.create_task(run_scheduler_loop(interval_minutes))
