from datetime import timedelta

import pytest
from sqlalchemy import event
from sqlalchemy.orm import Session

from conftest import make_booking
from meupersonal import events
from meupersonal.database import utcnow
from meupersonal.domain.balances.service import BalanceService
from meupersonal.jobs.booking_scheduler import BookingScheduler
from meupersonal.models import HourTransaction, StudentClassTransaction, UserNotification


@pytest.fixture
def scheduler(session_factory):
    return BookingScheduler(session_factory=session_factory, retry_delay_seconds=0)


def _locked_booking(db, academy, teacher, student=None, unlock_at=None, **kwargs):
    """A booking whose locks were placed the way create_booking places them"""
    booking = make_booking(db, academy, teacher, student, **kwargs)
    unlock_at = unlock_at or utcnow() - timedelta(minutes=1)
    balances = BalanceService(db)
    if student:
        balances.purchase_student_classes(student.id, 2)
        balances.lock_student_classes(student.id, 1, booking.id, unlock_at, unit_id=academy.id)
        balances.lock_professor_hours(teacher.id, 1, booking.id, unlock_at, require_free=False)
    else:
        balances.purchase_professor_hours(teacher.id, 2)
        balances.lock_professor_hours(teacher.id, 1, booking.id, unlock_at)
    db.commit()
    return booking


async def test_expired_student_locks_are_consumed(db, scheduler, network, student, teacher):
    _, academy = network
    booking = _locked_booking(db, academy, teacher, student)

    result = await scheduler.process_expired_locks()

    assert result["errors"] == 0
    assert result["steps"]["student_locks"]["processed"] == 1
    assert result["steps"]["professor_locks"]["processed"] == 1
    assert "started_at" in result and "finished_at" in result

    db.expire_all()
    lock = db.query(StudentClassTransaction).filter_by(booking_id=booking.id).one()
    assert lock.type == "CONSUME"
    assert lock.source == "SYSTEM"
    assert lock.meta_json["processed_by"] == "booking_scheduler"
    balance = BalanceService(db).get_student_balance(student.id)
    assert balance.total_consumed == 1
    assert balance.locked_qty == 0
    assert db.query(UserNotification).filter_by(user_id=student.id, type="lock_expired").count() == 1


async def test_student_led_bonus_lock_becomes_earned_hour(db, scheduler, network, student, teacher):
    _, academy = network
    booking = _locked_booking(db, academy, teacher, student)

    await scheduler.process_expired_locks()

    db.expire_all()
    tx = db.query(HourTransaction).filter_by(booking_id=booking.id).one()
    assert tx.type == "BONUS_UNLOCK"
    balance = BalanceService(db).get_professor_balance(teacher.id)
    assert balance.available_hours == 1
    assert balance.locked_hours == 0
    assert db.query(UserNotification).filter_by(user_id=teacher.id, type="bonus_earned").count() == 1


async def test_professor_led_lock_is_consumed(db, scheduler, network, teacher):
    _, academy = network
    booking = _locked_booking(db, academy, teacher)

    await scheduler.process_expired_locks()

    db.expire_all()
    tx = db.query(HourTransaction).filter_by(booking_id=booking.id, type="CONSUME").one()
    assert tx.hours == 1
    balance = BalanceService(db).get_professor_balance(teacher.id)
    assert balance.available_hours == 1
    assert balance.locked_hours == 0


async def test_locks_not_yet_due_are_left_alone(db, scheduler, network, student, teacher):
    _, academy = network
    booking = _locked_booking(db, academy, teacher, student, unlock_at=utcnow() + timedelta(hours=2))

    result = await scheduler.process_expired_locks()

    assert result["processed"] == 0
    db.expire_all()
    assert db.query(StudentClassTransaction).filter_by(booking_id=booking.id, type="LOCK").count() == 1


async def test_sweep_is_idempotent(db, scheduler, network, student, teacher):
    _, academy = network
    _locked_booking(db, academy, teacher, student)

    await scheduler.process_expired_locks()
    second = await scheduler.process_expired_locks()

    assert second["steps"]["student_locks"]["processed"] == 0
    db.expire_all()
    assert BalanceService(db).get_student_balance(student.id).total_consumed == 1


async def test_canceled_booking_locks_are_detached(db, scheduler, network, student, teacher):
    _, academy = network
    booking = _locked_booking(
        db, academy, teacher, student,
        unlock_at=utcnow() + timedelta(hours=2),
        status="CANCELED", status_canonical="CANCELED", canceled_at=utcnow(),
    )

    result = await scheduler.process_expired_locks()

    assert result["steps"]["canceled_cleanup"]["processed"] == 2
    db.expire_all()
    assert db.query(StudentClassTransaction).filter_by(booking_id=booking.id).count() == 0
    detached = db.query(StudentClassTransaction).filter_by(type="LOCK").one()
    assert detached.booking_id is None
    assert detached.unlock_at is None
    assert detached.meta_json["cleanup_reason"] == "booking_canceled"


async def test_notifications_publish_after_commit(db, scheduler, network, student, teacher):
    _, academy = network
    _locked_booking(db, academy, teacher, student)
    received = []
    events.subscribe(events.user_topic(student.id), received.append)

    await scheduler.process_expired_locks()

    assert [p["notification"]["type"] for p in received] == ["lock_expired"]


async def test_execute_with_retry_retries_then_succeeds(scheduler):
    calls = []

    def flaky():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("transient")
        return "ok"

    assert await scheduler.execute_with_retry("flaky", flaky) == "ok"
    assert len(calls) == 2


async def test_execute_with_retry_gives_up(scheduler):
    calls = []

    def broken():
        calls.append(1)
        raise RuntimeError("down")

    with pytest.raises(RuntimeError):
        await scheduler.execute_with_retry("broken", broken)
    assert len(calls) == scheduler.max_retries


async def test_failing_step_is_reported_and_sweep_continues(scheduler, monkeypatch):
    def boom(db):
        raise RuntimeError("database gone")

    monkeypatch.setattr(scheduler, "consume_expired_student_locks", boom)
    result = await scheduler.process_expired_locks()

    assert result["steps"]["student_locks"]["error"] == "database gone"
    assert result["errors"] == 1
    assert "professor_locks" in result["steps"]


async def test_step_retry_recovers_from_failed_flush(db, scheduler, network, student, teacher):
    _, academy = network
    _locked_booking(
        db, academy, teacher, student,
        unlock_at=utcnow() + timedelta(hours=2),
        status="CANCELED", status_canonical="CANCELED", canceled_at=utcnow(),
    )
    failures = []

    def fail_first_lock_flush(session, flush_context):
        if not failures and any(isinstance(obj, StudentClassTransaction) for obj in session.dirty):
            failures.append(1)
            raise RuntimeError("disk I/O error")

    event.listen(Session, "after_flush", fail_first_lock_flush)
    try:
        result = await scheduler.process_expired_locks()
    finally:
        event.remove(Session, "after_flush", fail_first_lock_flush)

    assert failures == [1]
    assert result["errors"] == 0
    assert result["steps"]["canceled_cleanup"]["processed"] == 2
    db.expire_all()
    detached = db.query(StudentClassTransaction).filter_by(type="LOCK").one()
    assert detached.booking_id is None
