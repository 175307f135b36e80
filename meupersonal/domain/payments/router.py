"""Payments router - package catalog, checkout, balances and ledger history"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from ...auth import canonicalize_role, get_current_user, require_roles
from ...database import get_db
from ...models import ADMIN_ROLES, ROLE_STUDENT, ROLE_TEACHER, User
from ...services.asaas_service import AsaasService, get_asaas_service
from ...shared.pagination import PageParams, build_paginated_response, page_params
from ..balances.service import (
    BalanceService,
    serialize_professor_balance,
    serialize_student_balance,
    serialize_transaction,
)
from .schemas import CheckoutRequest
from .service import PaymentIntentService, serialize_intent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/packages", tags=["Packages"])


def get_payment_service(
    db: Session = Depends(get_db), asaas: AsaasService = Depends(get_asaas_service)
) -> PaymentIntentService:
    """Dependency injection for PaymentIntentService"""
    return PaymentIntentService(db, asaas)


def get_balance_service(db: Session = Depends(get_db)) -> BalanceService:
    return BalanceService(db)


# ============================================================================
# CATALOG
# ============================================================================


@router.get("/student")
async def list_student_packages(
    unit_id: str = Query(...),
    current_user: User = Depends(get_current_user),
    service: PaymentIntentService = Depends(get_payment_service),
):
    return {"packages": service.list_student_packages(unit_id)}


@router.get("/professor")
async def list_professor_packages(
    unit_id: str = Query(...),
    current_user: User = Depends(get_current_user),
    service: PaymentIntentService = Depends(get_payment_service),
):
    return {"packages": service.list_hour_packages(unit_id)}


# ============================================================================
# CHECKOUT
# ============================================================================


@router.post("/student/checkout", status_code=201)
async def student_checkout(
    data: CheckoutRequest,
    current_user: User = Depends(require_roles(ROLE_STUDENT)),
    service: PaymentIntentService = Depends(get_payment_service),
):
    """Start a PIX/boleto/card payment for a class package"""
    intent = await service.create_payment_intent(
        current_user, "STUDENT_PACKAGE", data.package_id, data.unit_id, data.payment_method
    )
    return {
        "message": "Pagamento criado",
        "payment_intent": serialize_intent(intent),
        "checkout_url": intent.checkout_url,
    }


@router.post("/professor/checkout", status_code=201)
async def professor_checkout(
    data: CheckoutRequest,
    current_user: User = Depends(require_roles(ROLE_TEACHER)),
    service: PaymentIntentService = Depends(get_payment_service),
):
    intent = await service.create_payment_intent(
        current_user, "PROF_HOURS", data.package_id, data.unit_id, data.payment_method
    )
    return {
        "message": "Pagamento criado",
        "payment_intent": serialize_intent(intent),
        "checkout_url": intent.checkout_url,
    }


@router.get("/payment-intents")
async def list_payment_intents(
    response: Response,
    status: Optional[str] = Query(None),
    unit_id: Optional[str] = Query(None),
    params: PageParams = Depends(page_params),
    current_user: User = Depends(get_current_user),
    service: PaymentIntentService = Depends(get_payment_service),
):
    """The caller's intents; admins may list a whole unit instead"""
    if unit_id and canonicalize_role(current_user.role) in ADMIN_ROLES:
        rows, total = service.list_unit_intents(unit_id, status, params.offset, params.limit)
    else:
        rows, total = service.list_intents(current_user, status, params.offset, params.limit)
    response.headers["X-Total-Count"] = str(total)
    return build_paginated_response([serialize_intent(i) for i in rows], total, params)


# ============================================================================
# BALANCES
# ============================================================================


@router.get("/student/balance")
async def student_balance(
    current_user: User = Depends(require_roles(ROLE_STUDENT)),
    db: Session = Depends(get_db),
    balances: BalanceService = Depends(get_balance_service),
):
    balance = balances.get_student_balance(current_user.id, current_user.franchisor_id)
    db.commit()
    return {"balance": serialize_student_balance(balance)}


@router.get("/professor/balance")
async def professor_balance(
    current_user: User = Depends(require_roles(ROLE_TEACHER)),
    db: Session = Depends(get_db),
    balances: BalanceService = Depends(get_balance_service),
):
    balance = balances.get_professor_balance(current_user.id, current_user.franchisor_id)
    db.commit()
    return {"balance": serialize_professor_balance(balance)}


@router.get("/student/transactions")
async def student_transactions(
    response: Response,
    params: PageParams = Depends(page_params),
    current_user: User = Depends(require_roles(ROLE_STUDENT)),
    balances: BalanceService = Depends(get_balance_service),
):
    rows, total = balances.list_student_transactions(current_user.id, params.offset, params.limit)
    response.headers["X-Total-Count"] = str(total)
    return build_paginated_response([serialize_transaction(tx) for tx in rows], total, params)


@router.get("/professor/transactions")
async def professor_transactions(
    response: Response,
    params: PageParams = Depends(page_params),
    current_user: User = Depends(require_roles(ROLE_TEACHER)),
    balances: BalanceService = Depends(get_balance_service),
):
    rows, total = balances.list_hour_transactions(current_user.id, params.offset, params.limit)
    response.headers["X-Total-Count"] = str(total)
    return build_paginated_response([serialize_transaction(tx) for tx in rows], total, params)


__all__ = ["router"]
