import os

# Must be set before the app modules read their configuration
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-long-enough-0123456789")
os.environ.pop("REDIS_URL", None)
os.environ.pop("ASAAS_WEBHOOK_TOKEN", None)
os.environ.pop("RESEND_API_KEY", None)

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from meupersonal import events
from meupersonal.cache import cache
from meupersonal.database import Base, get_db, utcnow
from meupersonal.main import app
from meupersonal.models import (
    ROLE_FRANCHISE_ADMIN,
    ROLE_FRANCHISOR,
    ROLE_STUDENT,
    ROLE_TEACHER,
    Academy,
    AcademyStudent,
    AcademyTeacher,
    Booking,
    FranchiseAdmin,
    Franqueadora,
    User,
)
from meupersonal.rate_limiter import reset_rate_limits
from meupersonal.security_utils import create_jwt_token


def _enable_sqlite_savepoints(engine):
    # pysqlite defers BEGIN on its own; SAVEPOINT needs SQLAlchemy to emit it
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_sqlite_savepoints(engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def isolated_state():
    cache.use_redis = False
    cache.clear()
    events.reset()
    reset_rate_limits()
    yield
    cache.clear()
    events.reset()


@pytest.fixture
def client(db):
    # Requests share the test session so fixtures and routes see one transaction
    def override_get_db():
        try:
            yield db
        finally:
            db.rollback()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


# ============================================================================
# FACTORIES
# ============================================================================


def make_user(db, role=ROLE_STUDENT, email=None, name="Test User", **kwargs):
    kwargs.setdefault("is_active", True)
    user = User(
        name=name,
        email=email or f"{role.lower()}-{os.urandom(4).hex()}@example.com",
        role=role,
        **kwargs,
    )
    db.add(user)
    db.commit()
    return user


def make_network(db, settings=None):
    """A franqueadora with one active academy"""
    franqueadora = Franqueadora(name="Rede Teste", email="rede@example.com")
    db.add(franqueadora)
    db.flush()
    academy = Academy(
        franqueadora_id=franqueadora.id,
        name="Unidade Centro",
        city="São Paulo",
        state="SP",
        settings=settings or {},
    )
    db.add(academy)
    db.commit()
    return franqueadora, academy


def link_student(db, student, academy):
    db.add(AcademyStudent(student_id=student.id, academy_id=academy.id))
    db.commit()


def link_teacher(db, teacher, academy):
    db.add(AcademyTeacher(teacher_id=teacher.id, academy_id=academy.id))
    db.commit()


def make_franchise_admin(db, academy):
    admin = make_user(db, role=ROLE_FRANCHISE_ADMIN, name="Admin Unidade")
    db.add(FranchiseAdmin(user_id=admin.id, academy_id=academy.id))
    db.commit()
    return admin


def make_franchisor(db, franqueadora):
    return make_user(db, role=ROLE_FRANCHISOR, name="Admin Rede", franchisor_id=franqueadora.id)


def make_booking(db, academy, teacher, student=None, start_in=timedelta(days=1), **kwargs):
    start_at = utcnow() + start_in
    booking = Booking(
        source="ALUNO" if student else "PROFESSOR",
        student_id=student.id if student else None,
        teacher_id=teacher.id,
        unit_id=academy.id,
        start_at=start_at,
        end_at=start_at + timedelta(hours=1),
        status=kwargs.pop("status", "RESERVED"),
        status_canonical=kwargs.pop("status_canonical", "RESERVED"),
        cancellable_until=start_at - timedelta(hours=4),
        **kwargs,
    )
    db.add(booking)
    db.commit()
    return booking


def auth_headers(user):
    token = create_jwt_token({"userId": user.id, "email": user.email, "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def network(db):
    return make_network(db)


@pytest.fixture
def student(db, network):
    _, academy = network
    user = make_user(db, role=ROLE_STUDENT, name="Aluno Teste")
    link_student(db, user, academy)
    return user


@pytest.fixture
def teacher(db, network):
    _, academy = network
    user = make_user(db, role=ROLE_TEACHER, name="Professor Teste")
    link_teacher(db, user, academy)
    return user
