from datetime import timedelta

import pytest

from conftest import auth_headers, make_user
from meupersonal.auth import canonicalize_role
from meupersonal.models import ROLE_STUDENT, AuditLog, StudentClassTransaction, User
from meupersonal.security_utils import (
    create_jwt_token,
    generate_password_reset_token,
    hash_password,
    verify_password,
)


def _register(client, email="ana@example.com", role="STUDENT", password="segredo123"):
    return client.post(
        "/api/auth/register",
        json={"name": "Ana Souza", "email": email, "password": password, "role": role},
    )


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("ALUNO", "STUDENT"),
        ("professor", "TEACHER"),
        ("FRANQUEADORA", "FRANCHISOR"),
        ("FRANQUIA", "FRANCHISE_ADMIN"),
        ("super_admin", "SUPER_ADMIN"),
        (None, ""),
    ],
)
def test_canonicalize_role(raw, expected):
    assert canonicalize_role(raw) == expected


def test_register_student_gets_welcome_credits(client, db):
    response = _register(client, email="Ana@Example.com")
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["user"]["email"] == "ana@example.com"
    assert body["user"]["role"] == "STUDENT"
    assert body["token"]
    assert "auth-token" in response.cookies

    user = db.query(User).filter_by(email="ana@example.com").one()
    tx = db.query(StudentClassTransaction).filter_by(student_id=user.id).one()
    assert tx.qty == 5
    assert tx.source == "SYSTEM"
    assert db.query(AuditLog).filter_by(entity_id=user.id, action="CREATE").count() == 1


def test_register_legacy_teacher_role(client, db):
    response = _register(client, email="prof@example.com", role="PROFESSOR")
    assert response.json()["user"]["role"] == "TEACHER"
    assert db.query(StudentClassTransaction).count() == 0


def test_register_duplicate_email_is_409(client):
    _register(client)
    response = _register(client)
    assert response.status_code == 409
    assert response.json()["code"] == "EMAIL_IN_USE"


def test_register_rejects_short_password_and_admin_roles(client):
    assert _register(client, password="123").status_code == 400
    assert _register(client, role="SUPER_ADMIN").status_code == 400


def test_login_and_me(client, db):
    make_user(db, email="bia@example.com", password_hash=hash_password("segredo123"))

    response = client.post("/api/auth/login", json={"email": "bia@example.com", "password": "segredo123"})
    assert response.status_code == 200
    token = response.json()["token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["user"]["email"] == "bia@example.com"
    assert me.json()["balance"]["available_classes"] == 0


def test_login_with_wrong_password(client, db):
    make_user(db, email="bia@example.com", password_hash=hash_password("segredo123"))
    response = client.post("/api/auth/login", json={"email": "bia@example.com", "password": "errada"})
    assert response.status_code == 401
    assert response.json()["code"] == "INVALID_CREDENTIALS"


def test_cookie_authenticates(client, db):
    user = make_user(db)
    token = create_jwt_token({"userId": user.id, "email": user.email, "role": user.role})
    client.cookies.set("auth-token", token)
    assert client.get("/api/auth/me").status_code == 200


def test_missing_expired_and_bad_tokens(client, db):
    user = make_user(db)
    assert client.get("/api/auth/me").json()["code"] == "MISSING_TOKEN"

    expired = create_jwt_token({"userId": user.id}, expires_delta=timedelta(seconds=-10))
    response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {expired}"})
    assert response.status_code == 401
    assert response.json()["code"] == "TOKEN_EXPIRED"

    response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.json()["code"] == "INVALID_TOKEN"


def test_inactive_user_is_rejected(client, db):
    user = make_user(db, is_active=False)
    response = client.get("/api/auth/me", headers=auth_headers(user))
    assert response.status_code == 401


def test_logout_clears_cookie(client, db):
    user = make_user(db)
    response = client.post("/api/auth/logout", headers=auth_headers(user))
    assert response.status_code == 200
    assert db.query(AuditLog).filter_by(entity_id=user.id, action="LOGOUT").count() == 1
    # Without a session it still succeeds
    assert client.post("/api/auth/logout").status_code == 200


def test_forgot_password_never_reveals_accounts(client, db):
    make_user(db, email="bia@example.com")
    known = client.post("/api/auth/forgot-password", json={"email": "bia@example.com"})
    unknown = client.post("/api/auth/forgot-password", json={"email": "x@example.com"})
    assert known.status_code == unknown.status_code == 200
    assert known.json() == unknown.json()


def test_reset_password(client, db):
    user = make_user(db, email="bia@example.com", password_hash=hash_password("antiga123"))
    token = generate_password_reset_token(user.id, user.email)

    response = client.post("/api/auth/reset-password", json={"token": token, "password": "nova12345"})
    assert response.status_code == 200
    db.expire_all()
    assert verify_password("nova12345", db.get(User, user.id).password_hash)

    response = client.post("/api/auth/reset-password", json={"token": "garbage", "password": "nova12345"})
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_TOKEN"


def test_auth_routes_are_rate_limited(client):
    statuses = [
        client.post("/api/auth/login", json={"email": "z@example.com", "password": "x"}).status_code
        for _ in range(11)
    ]
    assert statuses[:10] == [401] * 10
    assert statuses[10] == 429


def test_update_profile(client, db):
    user = make_user(db, role=ROLE_STUDENT)
    response = client.put("/api/users/me", json={"name": "Novo Nome"}, headers=auth_headers(user))
    assert response.status_code == 200
    db.expire_all()
    assert db.get(User, user.id).name == "Novo Nome"


def test_legacy_role_is_read_canonically_but_stored_as_is(client, db):
    user = make_user(db, role="ALUNO", email="legado@example.com", password_hash=hash_password("segredo123"))

    response = client.put("/api/users/me", json={"name": "Aluna Antiga"}, headers=auth_headers(user))
    assert response.status_code == 200
    assert response.json()["user"]["role"] == "STUDENT"

    login = client.post("/api/auth/login", json={"email": "legado@example.com", "password": "segredo123"})
    assert login.json()["user"]["role"] == "STUDENT"

    db.expire_all()
    stored = db.get(User, user.id)
    assert stored.name == "Aluna Antiga"
    assert stored.role == "ALUNO"
