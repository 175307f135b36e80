from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .database import Base, generate_id, utcnow

# Canonical roles; legacy Portuguese names are mapped in auth.canonicalize_role
ROLE_STUDENT = "STUDENT"
ROLE_TEACHER = "TEACHER"
ROLE_FRANCHISE_ADMIN = "FRANCHISE_ADMIN"
ROLE_FRANCHISOR = "FRANCHISOR"
ROLE_ADMIN = "ADMIN"
ROLE_SUPER_ADMIN = "SUPER_ADMIN"

ADMIN_ROLES = (ROLE_FRANCHISE_ADMIN, ROLE_FRANCHISOR, ROLE_ADMIN, ROLE_SUPER_ADMIN)


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=True)
    role = Column(String(30), nullable=False, default=ROLE_STUDENT, index=True)
    phone = Column(String(30), nullable=True)
    cpf = Column(String(14), nullable=True)  # Required by Asaas to create customers
    is_active = Column(Boolean, default=True, nullable=False)
    franchisor_id = Column(String(36), ForeignKey("franqueadoras.id"), nullable=True)
    franchise_id = Column(String(36), ForeignKey("academies.id"), nullable=True)
    asaas_customer_id = Column(String(100), nullable=True)
    last_login_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Franqueadora(Base):
    __tablename__ = "franqueadoras"

    id = Column(String(36), primary_key=True, default=generate_id)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    academies = relationship("Academy", back_populates="franqueadora")


class Academy(Base):
    """A franchise unit. Bookings, packages and check-ins are scoped to one."""

    __tablename__ = "academies"

    id = Column(String(36), primary_key=True, default=generate_id)
    franqueadora_id = Column(String(36), ForeignKey("franqueadoras.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    phone = Column(String(30), nullable=True)
    address = Column(String(500), nullable=True)
    city = Column(String(100), nullable=True)
    state = Column(String(2), nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    settings = Column(JSON, default=dict, nullable=True)  # e.g. {"manualCreditReleaseEnabled": true}
    monthly_revenue = Column(Float, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    franqueadora = relationship("Franqueadora", back_populates="academies")


class FranchiseAdmin(Base):
    __tablename__ = "franchise_admins"
    __table_args__ = (UniqueConstraint("user_id", "academy_id", name="uq_franchise_admin"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    academy_id = Column(String(36), ForeignKey("academies.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class FranqueadoraAdmin(Base):
    __tablename__ = "franqueadora_admins"
    __table_args__ = (UniqueConstraint("user_id", "franqueadora_id", name="uq_franqueadora_admin"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    franqueadora_id = Column(String(36), ForeignKey("franqueadoras.id"), nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class AcademyStudent(Base):
    __tablename__ = "academy_students"
    __table_args__ = (UniqueConstraint("student_id", "academy_id", name="uq_academy_student"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    student_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    academy_id = Column(String(36), ForeignKey("academies.id"), nullable=False, index=True)
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class AcademyTeacher(Base):
    __tablename__ = "academy_teachers"
    __table_args__ = (UniqueConstraint("teacher_id", "academy_id", name="uq_academy_teacher"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    teacher_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    academy_id = Column(String(36), ForeignKey("academies.id"), nullable=False, index=True)
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class StudentUnit(Base):
    """Tracks which units a student actually trains at, fed by bookings."""

    __tablename__ = "student_units"
    __table_args__ = (UniqueConstraint("student_id", "unit_id", name="uq_student_unit"),)

    id = Column(String(36), primary_key=True, default=generate_id)
    student_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    unit_id = Column(String(36), ForeignKey("academies.id"), nullable=False)
    first_booking_date = Column(DateTime, nullable=True)
    last_booking_date = Column(DateTime, nullable=True)
    total_bookings = Column(Integer, default=0, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=generate_id)
    source = Column(String(20), nullable=False)  # ALUNO, PROFESSOR
    student_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    teacher_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    unit_id = Column(String(36), ForeignKey("academies.id"), nullable=False, index=True)
    start_at = Column(DateTime, nullable=False, index=True)
    end_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default="RESERVED")
    status_canonical = Column(String(20), nullable=False, default="RESERVED", index=True)
    cancellable_until = Column(DateTime, nullable=True)
    canceled_at = Column(DateTime, nullable=True, index=True)
    canceled_by = Column(String(36), nullable=True)
    completed_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    student = relationship("User", foreign_keys=[student_id])
    teacher = relationship("User", foreign_keys=[teacher_id])
    unit = relationship("Academy")


class StudentClassBalance(Base):
    __tablename__ = "student_class_balance"

    id = Column(String(36), primary_key=True, default=generate_id)
    student_id = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    franqueadora_id = Column(String(36), ForeignKey("franqueadoras.id"), nullable=True)  # home network
    unit_id = Column(String(36), ForeignKey("academies.id"), nullable=True)
    total_purchased = Column(Integer, default=0, nullable=False)
    total_consumed = Column(Integer, default=0, nullable=False)
    locked_qty = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def available(self) -> int:
        return self.total_purchased - self.total_consumed - self.locked_qty


class StudentClassTransaction(Base):
    __tablename__ = "student_class_tx"

    id = Column(String(36), primary_key=True, default=generate_id)
    student_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    franqueadora_id = Column(String(36), ForeignKey("franqueadoras.id"), nullable=True)
    unit_id = Column(String(36), ForeignKey("academies.id"), nullable=True)
    type = Column(String(20), nullable=False, index=True)  # PURCHASE, CONSUME, LOCK, UNLOCK, REFUND, REVOKE
    source = Column(String(20), nullable=False)  # ALUNO, PROFESSOR, SYSTEM
    qty = Column(Integer, nullable=False)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=True, index=True)
    unlock_at = Column(DateTime, nullable=True, index=True)
    meta_json = Column(JSON, default=dict, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class ProfHourBalance(Base):
    __tablename__ = "prof_hour_balance"

    id = Column(String(36), primary_key=True, default=generate_id)
    professor_id = Column(String(36), ForeignKey("users.id"), nullable=False, unique=True, index=True)
    franqueadora_id = Column(String(36), ForeignKey("franqueadoras.id"), nullable=True)  # home network
    unit_id = Column(String(36), ForeignKey("academies.id"), nullable=True)
    available_hours = Column(Integer, default=0, nullable=False)
    locked_hours = Column(Integer, default=0, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    @property
    def free_hours(self) -> int:
        return self.available_hours - self.locked_hours


class HourTransaction(Base):
    __tablename__ = "hour_tx"

    id = Column(String(36), primary_key=True, default=generate_id)
    professor_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    franqueadora_id = Column(String(36), ForeignKey("franqueadoras.id"), nullable=True)
    unit_id = Column(String(36), ForeignKey("academies.id"), nullable=True)
    type = Column(String(20), nullable=False, index=True)  # PURCHASE, CONSUME, BONUS_LOCK, BONUS_UNLOCK, REFUND, REVOKE
    source = Column(String(20), nullable=False)
    hours = Column(Integer, nullable=False)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=True, index=True)
    unlock_at = Column(DateTime, nullable=True, index=True)
    meta_json = Column(JSON, default=dict, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class StudentPackage(Base):
    __tablename__ = "student_packages"

    id = Column(String(36), primary_key=True, default=generate_id)
    unit_id = Column(String(36), ForeignKey("academies.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    classes_qty = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)
    status = Column(String(20), default="active", nullable=False)  # active, inactive
    created_at = Column(DateTime, default=utcnow, nullable=False)


class HourPackage(Base):
    __tablename__ = "hour_packages"

    id = Column(String(36), primary_key=True, default=generate_id)
    unit_id = Column(String(36), ForeignKey("academies.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    hours_qty = Column(Integer, nullable=False)
    price_cents = Column(Integer, nullable=False)
    status = Column(String(20), default="active", nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class PaymentIntent(Base):
    __tablename__ = "payment_intents"

    id = Column(String(36), primary_key=True, default=generate_id)
    type = Column(String(20), nullable=False)  # STUDENT_PACKAGE, PROF_HOURS
    provider = Column(String(20), default="ASAAS", nullable=False)
    provider_id = Column(String(100), nullable=True, index=True)
    amount_cents = Column(Integer, nullable=False)
    status = Column(String(20), default="PENDING", nullable=False)  # PENDING, PAID, FAILED, CANCELED, REFUNDED
    checkout_url = Column(String(500), nullable=True)
    actor_user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    unit_id = Column(String(36), ForeignKey("academies.id"), nullable=True, index=True)
    franqueadora_id = Column(String(36), ForeignKey("franqueadoras.id"), nullable=True)
    payload_json = Column(JSON, default=dict, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UserNotification(Base):
    __tablename__ = "user_notifications"

    id = Column(String(36), primary_key=True, default=generate_id)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    data = Column(JSON, default=dict, nullable=True)
    link = Column(String(500), nullable=True)
    actor_id = Column(String(36), nullable=True)
    role_scope = Column(String(30), nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Checkin(Base):
    __tablename__ = "checkins"

    id = Column(String(36), primary_key=True, default=generate_id)
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=True, index=True)
    academy_id = Column(String(36), ForeignKey("academies.id"), nullable=False, index=True)
    teacher_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    actor_id = Column(String(36), nullable=True)
    status = Column(String(20), nullable=False)  # GRANTED, DENIED
    reason = Column(String(100), nullable=True)
    method = Column(String(20), default="MANUAL", nullable=False)  # QRCODE, MANUAL
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class CreditGrant(Base):
    __tablename__ = "credit_grants"

    id = Column(String(36), primary_key=True, default=generate_id)
    recipient_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    recipient_email = Column(String(255), nullable=False)
    credit_type = Column(String(20), nullable=False)  # STUDENT_CLASS, PROFESSOR_HOUR
    quantity = Column(Integer, nullable=False)
    reason = Column(String(500), nullable=False)
    granted_by_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    granted_by_email = Column(String(255), nullable=False)
    franqueadora_id = Column(String(36), ForeignKey("franqueadoras.id"), nullable=True)
    franchise_id = Column(String(36), ForeignKey("academies.id"), nullable=True)
    transaction_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=generate_id)
    entity = Column(String(50), nullable=False, index=True)
    entity_id = Column(String(36), nullable=True, index=True)
    action = Column(String(30), nullable=False)
    actor_user_id = Column(String(36), nullable=True, index=True)
    diff_json = Column(JSON, nullable=True)  # {"old": ..., "new": ...}
    metadata_json = Column(JSON, nullable=True)  # actor_role, ip, user_agent
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class FranchisorPolicy(Base):
    __tablename__ = "franchisor_policies"

    id = Column(String(36), primary_key=True, default=generate_id)
    franqueadora_id = Column(String(36), ForeignKey("franqueadoras.id"), nullable=False, index=True)
    status = Column(String(20), default="draft", nullable=False)  # draft, published
    version = Column(Integer, default=0, nullable=False)
    effective_from = Column(DateTime, nullable=True)
    rules = Column(JSON, default=dict, nullable=False)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class AcademyPolicyOverride(Base):
    __tablename__ = "academy_policy_overrides"

    id = Column(String(36), primary_key=True, default=generate_id)
    academy_id = Column(String(36), ForeignKey("academies.id"), nullable=False, unique=True)
    rules = Column(JSON, default=dict, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
