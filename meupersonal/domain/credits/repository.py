"""Credit grant repository - Database operations for manual credit releases"""

from datetime import datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models import AcademyStudent, AcademyTeacher, CreditGrant, User


class CreditGrantRepository:
    """Repository for credit_grants rows and recipient lookups"""

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        return db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()

    @staticmethod
    def is_user_in_academy(db: Session, user_id: str, academy_id: str) -> bool:
        home = db.query(User.id).filter(User.id == user_id, User.franchise_id == academy_id).first()
        if home:
            return True
        student_link = (
            db.query(AcademyStudent.id)
            .filter(AcademyStudent.student_id == user_id, AcademyStudent.academy_id == academy_id)
            .first()
        )
        if student_link:
            return True
        teacher_link = (
            db.query(AcademyTeacher.id)
            .filter(AcademyTeacher.teacher_id == user_id, AcademyTeacher.academy_id == academy_id)
            .first()
        )
        return teacher_link is not None

    @staticmethod
    def create_grant(db: Session, **grant_data) -> CreditGrant:
        grant = CreditGrant(**grant_data)
        db.add(grant)
        db.flush()
        return grant

    @staticmethod
    def list_grants(
        db: Session,
        franqueadora_id: Optional[str] = None,
        franchise_ids: Optional[list[str]] = None,
        recipient_email: Optional[str] = None,
        credit_type: Optional[str] = None,
        granted_by: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[CreditGrant], int]:
        query = db.query(CreditGrant)
        if franqueadora_id:
            query = query.filter(CreditGrant.franqueadora_id == franqueadora_id)
        if franchise_ids is not None:
            query = query.filter(CreditGrant.franchise_id.in_(franchise_ids))
        if recipient_email:
            query = query.filter(CreditGrant.recipient_email.ilike(f"%{recipient_email}%"))
        if credit_type:
            query = query.filter(CreditGrant.credit_type == credit_type)
        if granted_by:
            query = query.filter(CreditGrant.granted_by_email.ilike(f"%{granted_by}%"))
        if start_date:
            query = query.filter(CreditGrant.created_at >= start_date)
        if end_date:
            query = query.filter(CreditGrant.created_at <= end_date)
        total = query.count()
        rows = query.order_by(CreditGrant.created_at.desc()).offset(offset).limit(limit).all()
        return rows, total
