from datetime import timedelta

from conftest import auth_headers, make_booking, make_user
from meupersonal.database import utcnow
from meupersonal.domain.balances.service import BalanceService
from meupersonal.models import (
    ROLE_STUDENT,
    AuditLog,
    Booking,
    Checkin,
    HourTransaction,
    StudentClassTransaction,
    StudentUnit,
)


def _give_classes(db, student, qty=3):
    BalanceService(db).purchase_student_classes(student.id, qty)
    db.commit()


def _booking_payload(academy, teacher, student=None, start_in=timedelta(days=2), hours=1):
    start_at = utcnow() + start_in
    payload = {
        "source": "ALUNO" if student else "PROFESSOR",
        "professorId": teacher.id,
        "unitId": academy.id,
        "startAt": start_at.isoformat(),
        "endAt": (start_at + timedelta(hours=hours)).isoformat(),
    }
    if student:
        payload["studentId"] = student.id
    return payload


def _create_student_booking(client, academy, teacher, student, **kwargs):
    response = client.post(
        "/api/bookings", json=_booking_payload(academy, teacher, student, **kwargs), headers=auth_headers(student)
    )
    assert response.status_code == 201, response.text
    return response.json()["booking"]


# ============================================================================
# CREATE
# ============================================================================


def test_student_booking_locks_class_and_bonus_hour(client, db, network, student, teacher):
    _, academy = network
    _give_classes(db, student)

    booking = _create_student_booking(client, academy, teacher, student)

    assert booking["status"] == "RESERVED"
    db.expire_all()
    balances = BalanceService(db)
    assert balances.get_student_balance(student.id).locked_qty == 1
    assert balances.get_student_balance(student.id).available == 2
    assert balances.get_professor_balance(teacher.id).locked_hours == 1

    lock = db.query(StudentClassTransaction).filter_by(booking_id=booking["id"], type="LOCK").one()
    stored = db.get(Booking, booking["id"])
    assert lock.unlock_at == stored.cancellable_until
    assert stored.cancellable_until == stored.start_at - timedelta(hours=4)
    assert db.query(StudentUnit).filter_by(student_id=student.id, unit_id=academy.id).one().total_bookings == 1
    assert db.query(AuditLog).filter_by(entity_id=booking["id"], action="BOOKING_CREATE").count() == 1


def test_student_booking_without_classes_is_refused(client, network, student, teacher):
    _, academy = network
    response = client.post(
        "/api/bookings", json=_booking_payload(academy, teacher, student), headers=auth_headers(student)
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INSUFFICIENT_BALANCE"


def test_professor_booking_needs_free_hours(client, db, network, teacher):
    _, academy = network
    response = client.post("/api/bookings", json=_booking_payload(academy, teacher), headers=auth_headers(teacher))
    assert response.status_code == 400
    assert response.json()["code"] == "INSUFFICIENT_BALANCE"

    BalanceService(db).purchase_professor_hours(teacher.id, 2)
    db.commit()
    response = client.post("/api/bookings", json=_booking_payload(academy, teacher), headers=auth_headers(teacher))
    assert response.status_code == 201
    db.expire_all()
    assert BalanceService(db).get_professor_balance(teacher.id).free_hours == 1


def test_overlapping_slot_is_refused(client, db, network, student, teacher):
    _, academy = network
    _give_classes(db, student)
    _create_student_booking(client, academy, teacher, student)

    response = client.post(
        "/api/bookings", json=_booking_payload(academy, teacher, student), headers=auth_headers(student)
    )
    assert response.status_code == 409
    assert response.json()["code"] == "SLOT_UNAVAILABLE"


def test_student_cannot_book_for_someone_else(client, db, network, student, teacher):
    _, academy = network
    other = make_user(db, role=ROLE_STUDENT)
    response = client.post(
        "/api/bookings", json=_booking_payload(academy, teacher, other), headers=auth_headers(student)
    )
    assert response.status_code == 403


def test_booking_in_the_past_is_refused(client, db, network, student, teacher):
    _, academy = network
    _give_classes(db, student)
    response = client.post(
        "/api/bookings",
        json=_booking_payload(academy, teacher, student, start_in=-timedelta(hours=1)),
        headers=auth_headers(student),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_START"


def test_end_before_start_is_a_validation_error(client, network, student, teacher):
    _, academy = network
    payload = _booking_payload(academy, teacher, student)
    payload["endAt"], payload["startAt"] = payload["startAt"], payload["endAt"]
    response = client.post("/api/bookings", json=payload, headers=auth_headers(student))
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


# ============================================================================
# CANCEL / COMPLETE
# ============================================================================


def test_cancel_releases_both_locks(client, db, network, student, teacher):
    _, academy = network
    _give_classes(db, student)
    booking = _create_student_booking(client, academy, teacher, student)

    response = client.delete(f"/api/bookings/{booking['id']}", headers=auth_headers(student))
    assert response.status_code == 200
    assert response.json()["booking"]["status_canonical"] == "CANCELED"

    db.expire_all()
    balances = BalanceService(db)
    assert balances.get_student_balance(student.id).available == 3
    assert balances.get_professor_balance(teacher.id).locked_hours == 0
    lock = db.query(StudentClassTransaction).filter_by(booking_id=booking["id"], type="LOCK").one()
    assert lock.unlock_at is None
    assert db.query(StudentClassTransaction).filter_by(booking_id=booking["id"], type="UNLOCK").count() == 1
    assert db.query(HourTransaction).filter_by(booking_id=booking["id"], type="REFUND").count() == 1

    again = client.delete(f"/api/bookings/{booking['id']}", headers=auth_headers(student))
    assert again.status_code == 400
    assert again.json()["code"] == "ALREADY_CANCELED"


def test_cancel_after_window_is_refused(client, db, network, student, teacher):
    _, academy = network
    booking = make_booking(db, academy, teacher, student, start_in=timedelta(hours=2))
    response = client.delete(f"/api/bookings/{booking.id}", headers=auth_headers(student))
    assert response.status_code == 400
    assert response.json()["code"] == "CANCELLATION_WINDOW_CLOSED"


def test_complete_settles_locks(client, db, network, student, teacher):
    _, academy = network
    _give_classes(db, student)
    booking = _create_student_booking(client, academy, teacher, student)

    response = client.patch(
        f"/api/bookings/{booking['id']}", json={"status": "DONE"}, headers=auth_headers(teacher)
    )
    assert response.status_code == 200
    assert response.json()["booking"]["status_canonical"] == "COMPLETED"

    db.expire_all()
    balances = BalanceService(db)
    student_balance = balances.get_student_balance(student.id)
    assert student_balance.total_consumed == 1
    assert student_balance.locked_qty == 0
    teacher_balance = balances.get_professor_balance(teacher.id)
    assert teacher_balance.available_hours == 1
    assert teacher_balance.locked_hours == 0


def test_student_cannot_mark_paid(client, db, network, student, teacher):
    _, academy = network
    _give_classes(db, student)
    booking = _create_student_booking(client, academy, teacher, student)
    response = client.patch(
        f"/api/bookings/{booking['id']}", json={"status": "PAID"}, headers=auth_headers(student)
    )
    assert response.status_code == 403


def test_outsider_cannot_read_booking(client, db, network, student, teacher):
    _, academy = network
    booking = make_booking(db, academy, teacher, student)
    outsider = make_user(db, role=ROLE_STUDENT)
    assert client.get(f"/api/bookings/{booking.id}", headers=auth_headers(outsider)).status_code == 403
    assert client.get(f"/api/bookings/{booking.id}", headers=auth_headers(teacher)).status_code == 200


def test_list_requires_unit_access(client, db, network, student, teacher):
    _, academy = network
    make_booking(db, academy, teacher, student)
    response = client.get("/api/bookings", params={"unit_id": academy.id}, headers=auth_headers(student))
    assert response.status_code == 200
    assert len(response.json()["bookings"]) == 1

    outsider = make_user(db, role=ROLE_STUDENT)
    response = client.get("/api/bookings", params={"unit_id": academy.id}, headers=auth_headers(outsider))
    assert response.status_code == 403


# ============================================================================
# CHECK-IN
# ============================================================================


def _paid_student_booking(client, db, academy, teacher, student):
    _give_classes(db, student)
    booking = _create_student_booking(client, academy, teacher, student)
    response = client.patch(
        f"/api/bookings/{booking['id']}", json={"status": "PAID"}, headers=auth_headers(teacher)
    )
    assert response.status_code == 200
    return booking


def test_checkin_grants_and_pays_the_teacher_once(client, db, network, student, teacher):
    _, academy = network
    booking = _paid_student_booking(client, db, academy, teacher, student)

    response = client.post(
        f"/api/bookings/{booking['id']}/checkin", json={"method": "QRCODE"}, headers=auth_headers(teacher)
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "GRANTED"
    assert body["hours_credited"] == 1
    assert body["booking"]["status_canonical"] == "COMPLETED"

    db.expire_all()
    teacher_balance = BalanceService(db).get_professor_balance(teacher.id)
    assert teacher_balance.available_hours == 1
    assert teacher_balance.locked_hours == 0
    assert BalanceService(db).get_student_balance(student.id).total_consumed == 1
    checkin = db.query(Checkin).filter_by(booking_id=booking["id"]).one()
    assert checkin.status == "GRANTED"
    assert checkin.method == "QRCODE"


def test_checkin_twice_is_already_completed(client, db, network, student, teacher):
    _, academy = network
    booking = _paid_student_booking(client, db, academy, teacher, student)
    client.post(f"/api/bookings/{booking['id']}/checkin", headers=auth_headers(teacher))

    response = client.post(f"/api/bookings/{booking['id']}/checkin", headers=auth_headers(teacher))
    assert response.status_code == 200
    assert response.json()["status"] == "ALREADY_COMPLETED"
    db.expire_all()
    assert BalanceService(db).get_professor_balance(teacher.id).available_hours == 1
    assert db.query(Checkin).filter_by(booking_id=booking["id"]).count() == 1


def test_checkin_on_unpaid_booking_is_denied_and_recorded(client, db, network, student, teacher):
    _, academy = network
    booking = make_booking(db, academy, teacher, student)
    response = client.post(f"/api/bookings/{booking.id}/checkin", headers=auth_headers(teacher))
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_STATUS"
    checkin = db.query(Checkin).filter_by(booking_id=booking.id).one()
    assert checkin.status == "DENIED"
    assert checkin.reason == "INVALID_STATUS"


def test_checkin_by_outsider_is_denied_and_recorded(client, db, network, student, teacher):
    _, academy = network
    booking = make_booking(db, academy, teacher, student, status="PAID", status_canonical="PAID")
    outsider = make_user(db, role=ROLE_STUDENT)
    response = client.post(f"/api/bookings/{booking.id}/checkin", headers=auth_headers(outsider))
    assert response.status_code == 403
    assert response.json()["code"] == "UNAUTHORIZED"
    assert db.query(Checkin).filter_by(booking_id=booking.id, status="DENIED").count() == 1


def test_checkin_of_long_professor_session_credits_duration(client, db, network, teacher):
    _, academy = network
    BalanceService(db).purchase_professor_hours(teacher.id, 2)
    db.commit()
    response = client.post(
        "/api/bookings", json=_booking_payload(academy, teacher, hours=2), headers=auth_headers(teacher)
    )
    booking_id = response.json()["booking"]["id"]
    client.patch(f"/api/bookings/{booking_id}", json={"status": "PAID"}, headers=auth_headers(teacher))

    response = client.post(f"/api/bookings/{booking_id}/checkin", headers=auth_headers(teacher))
    assert response.json()["hours_credited"] == 2

    db.expire_all()
    balance = BalanceService(db).get_professor_balance(teacher.id)
    # 2 purchased - 1 spent on the booking + 2 worked
    assert balance.available_hours == 3
    assert balance.locked_hours == 0
