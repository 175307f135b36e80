"""Credit grant service - manual release of classes and hours by admins

Franchisor admins may grant to anyone in their network. Franchise admins
need the academy setting `manualCreditReleaseEnabled` and may only grant to
users linked to their academy.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from ...auth import FranchiseScope, canonicalize_role
from ...config import HIGH_QUANTITY_GRANT_THRESHOLD
from ...models import ROLE_FRANCHISE_ADMIN, ROLE_STUDENT, ROLE_TEACHER, Academy, CreditGrant
from ...services import notification_service
from ...services.audit_service import create_audit_log
from ..balances.service import BalanceService
from .repository import CreditGrantRepository
from .schemas import CreditGrantRequest

logger = logging.getLogger(__name__)

_ROLE_FOR_CREDIT_TYPE = {
    "STUDENT_CLASS": ROLE_STUDENT,
    "PROFESSOR_HOUR": ROLE_TEACHER,
}


def credit_error(status_code: int, message: str, code: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": message, "code": code})


def serialize_grant(grant: CreditGrant) -> dict:
    return {
        "id": grant.id,
        "recipient_id": grant.recipient_id,
        "recipient_email": grant.recipient_email,
        "credit_type": grant.credit_type,
        "quantity": grant.quantity,
        "reason": grant.reason,
        "granted_by_id": grant.granted_by_id,
        "granted_by_email": grant.granted_by_email,
        "franqueadora_id": grant.franqueadora_id,
        "franchise_id": grant.franchise_id,
        "transaction_id": grant.transaction_id,
        "created_at": grant.created_at.isoformat() if grant.created_at else None,
    }


class CreditGrantService:
    """Service layer for manual credit grants"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = CreditGrantRepository()
        self.balances = BalanceService(db)

    def _franchise_admin_academy(self, scope: FranchiseScope, unit_id: Optional[str]) -> Optional[Academy]:
        """The academy a franchise admin acts for; None for network-wide admins"""
        if canonicalize_role(scope.user.role) != ROLE_FRANCHISE_ADMIN:
            return None
        if not scope.academy_ids:
            raise credit_error(403, "Franquia não encontrada para este admin", "FRANCHISE_NOT_FOUND")
        academy_id = unit_id if unit_id in scope.academy_ids else scope.academy_ids[0]
        academy = self.db.query(Academy).filter(Academy.id == academy_id).first()
        if not academy:
            raise credit_error(403, "Academia não encontrada", "ACADEMY_NOT_FOUND")
        if not (academy.settings or {}).get("manualCreditReleaseEnabled"):
            raise credit_error(
                403,
                "Liberação manual de créditos não está habilitada para esta franquia",
                "FEATURE_DISABLED",
            )
        return academy

    def grant_credits(
        self, data: CreditGrantRequest, scope: FranchiseScope, request: Optional[Request] = None
    ) -> dict:
        admin = scope.user
        academy = self._franchise_admin_academy(scope, data.unitId)
        franqueadora_id = scope.franqueadora_id or (academy.franqueadora_id if academy else None)
        if not franqueadora_id:
            raise credit_error(400, "Franqueadora não identificada", "FRANQUEADORA_REQUIRED")

        if data.quantity > HIGH_QUANTITY_GRANT_THRESHOLD and not data.confirmHighQuantity:
            raise credit_error(
                400,
                f"Liberação de mais de {HIGH_QUANTITY_GRANT_THRESHOLD} créditos requer confirmação explícita",
                "HIGH_QUANTITY_NOT_CONFIRMED",
            )

        recipient = self.repo.get_user_by_email(self.db, data.userEmail)
        if not recipient:
            raise credit_error(404, "Usuário não encontrado com este email", "USER_NOT_FOUND")

        if academy and not self.repo.is_user_in_academy(self.db, recipient.id, academy.id):
            raise credit_error(403, "Usuário não pertence à sua franquia", "UNAUTHORIZED_FRANCHISE")

        if canonicalize_role(recipient.role) != _ROLE_FOR_CREDIT_TYPE[data.creditType]:
            target = "alunos" if data.creditType == "STUDENT_CLASS" else "professores"
            raise credit_error(
                400, f"Tipo {data.creditType} só pode ser liberado para {target}", "INVALID_CREDIT_TYPE"
            )

        meta = {"granted_by": admin.id, "reason": data.reason, "origin": "manual_grant"}
        unit_id = academy.id if academy else data.unitId
        try:
            if data.creditType == "STUDENT_CLASS":
                tx = self.balances.purchase_student_classes(
                    recipient.id, data.quantity, franqueadora_id, unit_id, source="SYSTEM", meta=meta
                )
                balance = self.balances.get_student_balance(recipient.id)
                new_balance = {"available_classes": max(balance.available, 0)}
            else:
                tx = self.balances.purchase_professor_hours(
                    recipient.id, data.quantity, franqueadora_id, unit_id, source="SYSTEM", meta=meta
                )
                balance = self.balances.get_professor_balance(recipient.id)
                new_balance = {"available_hours": balance.available_hours}

            grant = self.repo.create_grant(
                self.db,
                recipient_id=recipient.id,
                recipient_email=recipient.email,
                credit_type=data.creditType,
                quantity=data.quantity,
                reason=data.reason,
                granted_by_id=admin.id,
                granted_by_email=admin.email,
                franqueadora_id=franqueadora_id,
                franchise_id=unit_id,
                transaction_id=tx.id,
            )
            create_audit_log(
                self.db, "credit_grant", grant.id, "CREATE", actor=admin, request=request,
                new={"recipient_id": recipient.id, "credit_type": data.creditType, "quantity": data.quantity},
            )
            notification_service.notify_credits_granted(
                self.db, recipient.id, data.creditType, data.quantity, actor_id=admin.id
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"✅ {admin.email} granted {data.quantity} {data.creditType} to {recipient.email} (grant {grant.id})"
        )
        return {"grant": serialize_grant(grant), "balance": new_balance}

    def get_history(
        self,
        scope: FranchiseScope,
        recipient_email: Optional[str] = None,
        credit_type: Optional[str] = None,
        granted_by: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[CreditGrant], int]:
        franchise_ids = None
        if canonicalize_role(scope.user.role) == ROLE_FRANCHISE_ADMIN:
            franchise_ids = scope.academy_ids
        return self.repo.list_grants(
            self.db,
            franqueadora_id=None if scope.is_super_admin else scope.franqueadora_id,
            franchise_ids=franchise_ids,
            recipient_email=recipient_email,
            credit_type=credit_type,
            granted_by=granted_by,
            start_date=start_date,
            end_date=end_date,
            offset=offset,
            limit=limit,
        )

    def search_user(self, email: str, scope: FranchiseScope) -> dict:
        user = self.repo.get_user_by_email(self.db, email)
        if not user:
            raise credit_error(404, "Usuário não encontrado com este email", "USER_NOT_FOUND")
        if canonicalize_role(scope.user.role) == ROLE_FRANCHISE_ADMIN and not any(
            self.repo.is_user_in_academy(self.db, user.id, academy_id) for academy_id in scope.academy_ids
        ):
            raise credit_error(403, "Usuário não pertence à sua franquia", "UNAUTHORIZED_FRANCHISE")

        role = canonicalize_role(user.role)
        result = {"id": user.id, "name": user.name, "email": user.email, "role": role}
        if role == ROLE_STUDENT:
            balance = self.balances.get_student_balance(user.id)
            result["balance"] = {"available_classes": max(balance.available, 0)}
        elif role == ROLE_TEACHER:
            balance = self.balances.get_professor_balance(user.id)
            result["balance"] = {"available_hours": balance.available_hours}
        self.db.commit()
        return result
