"""Payment repository - Database operations for packages and payment intents"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import HourPackage, PaymentIntent, StudentPackage


class PaymentRepository:
    """Repository for package catalog and payment intent rows"""

    @staticmethod
    def list_student_packages(db: Session, unit_id: str, active_only: bool = True) -> list[StudentPackage]:
        query = db.query(StudentPackage).filter(StudentPackage.unit_id == unit_id)
        if active_only:
            query = query.filter(StudentPackage.status == "active")
        return query.order_by(StudentPackage.price_cents.asc()).all()

    @staticmethod
    def list_hour_packages(db: Session, unit_id: str, active_only: bool = True) -> list[HourPackage]:
        query = db.query(HourPackage).filter(HourPackage.unit_id == unit_id)
        if active_only:
            query = query.filter(HourPackage.status == "active")
        return query.order_by(HourPackage.price_cents.asc()).all()

    @staticmethod
    def get_student_package(db: Session, package_id: str) -> Optional[StudentPackage]:
        return db.query(StudentPackage).filter(StudentPackage.id == package_id).first()

    @staticmethod
    def get_hour_package(db: Session, package_id: str) -> Optional[HourPackage]:
        return db.query(HourPackage).filter(HourPackage.id == package_id).first()

    @staticmethod
    def get_intent(db: Session, intent_id: str) -> Optional[PaymentIntent]:
        return db.query(PaymentIntent).filter(PaymentIntent.id == intent_id).first()

    @staticmethod
    def get_intent_by_provider_id(db: Session, provider_id: str) -> Optional[PaymentIntent]:
        return db.query(PaymentIntent).filter(PaymentIntent.provider_id == provider_id).first()

    @staticmethod
    def create_intent(db: Session, **intent_data) -> PaymentIntent:
        intent = PaymentIntent(**intent_data)
        db.add(intent)
        db.flush()
        return intent

    @staticmethod
    def list_intents(
        db: Session,
        user_id: Optional[str] = None,
        unit_id: Optional[str] = None,
        status: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[PaymentIntent], int]:
        query = db.query(PaymentIntent)
        if user_id:
            query = query.filter(PaymentIntent.actor_user_id == user_id)
        if unit_id:
            query = query.filter(PaymentIntent.unit_id == unit_id)
        if status:
            query = query.filter(PaymentIntent.status == status)
        total = query.count()
        rows = query.order_by(PaymentIntent.created_at.desc()).offset(offset).limit(limit).all()
        return rows, total
