"""Payment intent service - Package checkout through Asaas and webhook settlement

An intent is created PENDING, then charged at Asaas. The webhook moves it to
PAID (crediting the package to the buyer's ledger exactly once), FAILED,
CANCELED or REFUNDED (revoking what was credited).
"""

import logging
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...cache import cache, package_cache_key
from ...database import utcnow
from ...models import Academy, PaymentIntent, StudentPackage, User
from ...services import notification_service
from ...services.asaas_service import AsaasService
from ...services.audit_service import create_audit_log
from ..balances.service import BalanceService
from .repository import PaymentRepository

logger = logging.getLogger(__name__)

INTENT_TYPES = ("STUDENT_PACKAGE", "PROF_HOURS")
INTENT_STATUSES = ("PENDING", "PAID", "FAILED", "CANCELED", "REFUNDED")

_PROVIDER_STATUS_MAP = {
    "CONFIRMED": "PAID",
    "RECEIVED": "PAID",
    "RECEIVED_IN_CASH": "PAID",
    "OVERDUE": "FAILED",
    "FAILED": "FAILED",
    "DELETED": "CANCELED",
    "CANCELED": "CANCELED",
    "REFUNDED": "REFUNDED",
}


def map_provider_status(provider_status: Optional[str]) -> str:
    return _PROVIDER_STATUS_MAP.get((provider_status or "").upper(), "PENDING")


def payment_error(status_code: int, message: str, code: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": message, "code": code})


def serialize_package(package) -> dict:
    data = {
        "id": package.id,
        "unit_id": package.unit_id,
        "title": package.title,
        "description": package.description,
        "price_cents": package.price_cents,
        "status": package.status,
    }
    if isinstance(package, StudentPackage):
        data["classes_qty"] = package.classes_qty
    else:
        data["hours_qty"] = package.hours_qty
    return data


def serialize_intent(intent: PaymentIntent) -> dict:
    return {
        "id": intent.id,
        "type": intent.type,
        "provider": intent.provider,
        "provider_id": intent.provider_id,
        "amount_cents": intent.amount_cents,
        "status": intent.status,
        "checkout_url": intent.checkout_url,
        "unit_id": intent.unit_id,
        "payload": intent.payload_json or {},
        "paid_at": intent.paid_at.isoformat() if intent.paid_at else None,
        "created_at": intent.created_at.isoformat() if intent.created_at else None,
    }


class PaymentIntentService:
    """Service layer for package checkout and payment settlement"""

    def __init__(self, db: Session, asaas: Optional[AsaasService] = None):
        self.db = db
        self.repo = PaymentRepository()
        self.asaas = asaas or AsaasService()
        self.balances = BalanceService(db)

    # ========================================================================
    # CATALOG
    # ========================================================================

    def list_student_packages(self, unit_id: str) -> list[dict]:
        key = package_cache_key("student", unit_id)
        cached_packages = cache.get(key)
        if cached_packages is not None:
            return cached_packages
        packages = [serialize_package(p) for p in self.repo.list_student_packages(self.db, unit_id)]
        cache.set(key, packages)
        return packages

    def list_hour_packages(self, unit_id: str) -> list[dict]:
        key = package_cache_key("professor", unit_id)
        cached_packages = cache.get(key)
        if cached_packages is not None:
            return cached_packages
        packages = [serialize_package(p) for p in self.repo.list_hour_packages(self.db, unit_id)]
        cache.set(key, packages)
        return packages

    # ========================================================================
    # CHECKOUT
    # ========================================================================

    def _load_package(self, intent_type: str, package_id: str, unit_id: str):
        if intent_type == "STUDENT_PACKAGE":
            package = self.repo.get_student_package(self.db, package_id)
        else:
            package = self.repo.get_hour_package(self.db, package_id)
        if not package or package.status != "active" or package.unit_id != unit_id:
            raise payment_error(404, "Pacote não encontrado", "PACKAGE_NOT_FOUND")
        return package

    async def _ensure_customer(self, user: User) -> Optional[str]:
        if user.asaas_customer_id:
            return user.asaas_customer_id
        result = await self.asaas.create_customer(user.name, user.email, cpf_cnpj=user.cpf, phone=user.phone)
        if not result["success"]:
            return None
        user.asaas_customer_id = result["data"]["id"]
        self.db.flush()
        return user.asaas_customer_id

    def _fail_intent(self, intent: PaymentIntent, error: str) -> None:
        intent.status = "FAILED"
        intent.payload_json = {**(intent.payload_json or {}), "error": error}
        self.db.commit()

    async def create_payment_intent(
        self, user: User, intent_type: str, package_id: str, unit_id: str, billing_type: str = "PIX"
    ) -> PaymentIntent:
        if intent_type not in INTENT_TYPES:
            raise payment_error(400, "Tipo de pagamento inválido", "INVALID_INTENT_TYPE")

        package = self._load_package(intent_type, package_id, unit_id)
        academy = self.db.query(Academy).filter(Academy.id == unit_id).first()
        franqueadora_id = academy.franqueadora_id if academy else None
        is_student = isinstance(package, StudentPackage)
        qty = package.classes_qty if is_student else package.hours_qty

        intent = self.repo.create_intent(
            self.db,
            type=intent_type,
            provider="ASAAS",
            amount_cents=package.price_cents,
            status="PENDING",
            actor_user_id=user.id,
            unit_id=unit_id,
            franqueadora_id=franqueadora_id,
            payload_json={
                "package_id": package.id,
                "package_title": package.title,
                "classes_qty" if is_student else "hours_qty": qty,
                "billing_type": billing_type,
            },
        )
        self.db.commit()
        logger.info(f"📥 Payment intent {intent.id} created for user {user.id} ({intent_type})")

        customer_id = await self._ensure_customer(user)
        if not customer_id:
            self._fail_intent(intent, "customer_creation_failed")
            raise payment_error(502, "Falha ao registrar cliente no gateway de pagamento", "PAYMENT_GATEWAY_ERROR")

        unit_label = "aulas" if is_student else "horas"
        due_date = (utcnow() + timedelta(days=1)).date()
        result = await self.asaas.create_payment(
            customer_id=customer_id,
            value=package.price_cents / 100,
            due_date=due_date,
            description=f"{package.title} - {qty} {unit_label}",
            external_reference=f"{intent_type}_{intent.id}",
            billing_type=billing_type,
        )
        if not result["success"]:
            self._fail_intent(intent, result.get("error", "payment_creation_failed"))
            raise payment_error(502, "Falha ao criar cobrança", "PAYMENT_GATEWAY_ERROR")

        payment = result["data"]
        intent.provider_id = payment.get("id")
        intent.checkout_url = payment.get("invoiceUrl") or payment.get("bankSlipUrl")
        intent.payload_json = {**(intent.payload_json or {}), "asaas_payment": payment}
        self.db.commit()
        self.db.refresh(intent)
        return intent

    def list_intents(self, user: User, status: Optional[str] = None, offset: int = 0, limit: int = 20):
        return self.repo.list_intents(self.db, user_id=user.id, status=status, offset=offset, limit=limit)

    def list_unit_intents(self, unit_id: str, status: Optional[str] = None, offset: int = 0, limit: int = 20):
        return self.repo.list_intents(self.db, unit_id=unit_id, status=status, offset=offset, limit=limit)

    # ========================================================================
    # WEBHOOK SETTLEMENT
    # ========================================================================

    def _find_intent(self, provider_id: str, external_reference: Optional[str]) -> Optional[PaymentIntent]:
        intent = self.repo.get_intent_by_provider_id(self.db, provider_id)
        if intent is None and external_reference and "_" in external_reference:
            # "{type}_{intent_id}", type itself contains an underscore
            intent = self.repo.get_intent(self.db, external_reference.rsplit("_", 1)[1])
        return intent

    def _credit_intent(self, intent: PaymentIntent) -> None:
        payload = intent.payload_json or {}
        meta = {"payment_intent_id": intent.id, "package_id": payload.get("package_id")}
        if intent.type == "STUDENT_PACKAGE":
            self.balances.purchase_student_classes(
                intent.actor_user_id,
                int(payload["classes_qty"]),
                franqueadora_id=intent.franqueadora_id,
                unit_id=intent.unit_id,
                source="ALUNO",
                meta=meta,
            )
        else:
            self.balances.purchase_professor_hours(
                intent.actor_user_id,
                int(payload["hours_qty"]),
                franqueadora_id=intent.franqueadora_id,
                unit_id=intent.unit_id,
                source="PROFESSOR",
                meta=meta,
            )

    def _revoke_intent(self, intent: PaymentIntent) -> None:
        payload = intent.payload_json or {}
        meta = {"payment_intent_id": intent.id, "reason": "payment_refunded"}
        if intent.type == "STUDENT_PACKAGE":
            self.balances.revoke_student_classes(intent.actor_user_id, int(payload["classes_qty"]), meta=meta)
        else:
            self.balances.revoke_professor_hours(intent.actor_user_id, int(payload["hours_qty"]), meta=meta)

    def process_webhook(
        self, provider_id: str, provider_status: str, external_reference: Optional[str] = None
    ) -> dict:
        """
        Apply a gateway status to its intent.

        Returns a summary dict. Unknown intents are skipped. A PAID intent only
        moves on to REFUNDED, and an intent is credited once (paid_at is set).
        """
        intent = self._find_intent(provider_id, external_reference)
        if intent is None:
            logger.warning(f"⚠️ Webhook for unknown payment {provider_id}, skipping")
            return {"processed": False, "reason": "intent_not_found"}

        new_status = map_provider_status(provider_status)
        previous = intent.status
        if previous == new_status or (previous == "PAID" and new_status != "REFUNDED"):
            logger.info(f"🔄 Intent {intent.id} already {previous}, ignoring {provider_status}")
            return {"processed": False, "reason": "already_processed", "status": previous}
        if previous == "REFUNDED":
            return {"processed": False, "reason": "already_refunded", "status": previous}

        try:
            if intent.provider_id is None:
                intent.provider_id = provider_id
            intent.status = new_status
            if new_status == "PAID" and intent.paid_at is None:
                intent.paid_at = utcnow()
                self._credit_intent(intent)
                payload = intent.payload_json or {}
                notification_service.notify_payment_confirmed(
                    self.db, intent.actor_user_id, intent.id, payload.get("package_title", intent.type)
                )
            elif new_status == "REFUNDED" and previous == "PAID":
                self._revoke_intent(intent)
            create_audit_log(
                self.db, "payment_intent", intent.id, "PAYMENT",
                old={"status": previous}, new={"status": new_status, "provider_status": provider_status},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"✅ Intent {intent.id}: {previous} -> {new_status}")
        return {"processed": True, "intent_id": intent.id, "status": new_status}
