"""Credit grant router - admin endpoints for manual credit releases"""

import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import EmailStr
from sqlalchemy.orm import Session

from ...auth import FranchiseScope, require_franchise_scope
from ...database import get_db
from ...shared.pagination import PageParams, build_paginated_response, page_params
from .schemas import CreditGrantRequest
from .service import CreditGrantService, serialize_grant

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/credits", tags=["Credits"])


def get_credit_grant_service(db: Session = Depends(get_db)) -> CreditGrantService:
    """Dependency injection for CreditGrantService"""
    return CreditGrantService(db)


@router.post("/grant", status_code=201)
async def grant_credits(
    data: CreditGrantRequest,
    request: Request,
    scope: FranchiseScope = Depends(require_franchise_scope()),
    service: CreditGrantService = Depends(get_credit_grant_service),
):
    """Release classes to a student or hours to a teacher"""
    result = service.grant_credits(data, scope, request)
    return {"message": "Créditos liberados com sucesso", **result}


@router.get("/history")
async def grant_history(
    recipientEmail: Optional[str] = Query(None),
    creditType: Optional[Literal["STUDENT_CLASS", "PROFESSOR_HOUR"]] = Query(None),
    grantedBy: Optional[str] = Query(None),
    startDate: Optional[datetime] = Query(None),
    endDate: Optional[datetime] = Query(None),
    params: PageParams = Depends(page_params),
    scope: FranchiseScope = Depends(require_franchise_scope()),
    service: CreditGrantService = Depends(get_credit_grant_service),
):
    rows, total = service.get_history(
        scope,
        recipient_email=recipientEmail,
        credit_type=creditType,
        granted_by=grantedBy,
        start_date=startDate,
        end_date=endDate,
        offset=params.offset,
        limit=params.limit,
    )
    return build_paginated_response([serialize_grant(g) for g in rows], total, params)


@router.get("/search-user")
async def search_user(
    email: EmailStr = Query(...),
    scope: FranchiseScope = Depends(require_franchise_scope()),
    service: CreditGrantService = Depends(get_credit_grant_service),
):
    return {"user": service.search_user(email, scope)}


__all__ = ["router"]
