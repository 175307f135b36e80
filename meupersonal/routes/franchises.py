"""
Franchise management - academies (units), their members and their package catalogs.

Admin endpoints live under /api/franchises and are limited to the caller's
FranchiseScope; /api/academies is the public listing of active units.
"""

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..auth import FranchiseScope, canonicalize_role, require_franchise_scope
from ..cache import invalidate_package_cache
from ..database import get_db
from ..domain.payments.repository import PaymentRepository
from ..domain.payments.schemas import HourPackageCreate, HourPackageUpdate, StudentPackageCreate, StudentPackageUpdate
from ..domain.payments.service import serialize_package
from ..models import (
    ROLE_ADMIN,
    ROLE_FRANCHISOR,
    ROLE_STUDENT,
    ROLE_SUPER_ADMIN,
    Academy,
    AcademyStudent,
    AcademyTeacher,
    Booking,
    HourPackage,
    PaymentIntent,
    StudentPackage,
    User,
)
from ..services.audit_service import create_audit_log
from ..shared.pagination import PageParams, build_paginated_response, page_params
from ..shared.validators import validate_br_phone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/franchises", tags=["Franchises"])
public_router = APIRouter(prefix="/api/academies", tags=["Academies"])

network_scope = require_franchise_scope(ROLE_FRANCHISOR, ROLE_ADMIN, ROLE_SUPER_ADMIN)
any_admin_scope = require_franchise_scope()


class AcademyCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = Field(None, max_length=500)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, min_length=2, max_length=2)
    settings: dict = Field(default_factory=dict)

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v):
        return validate_br_phone(v)


class AcademyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = Field(None, max_length=500)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, min_length=2, max_length=2)
    settings: Optional[dict] = None
    is_active: Optional[bool] = None

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v):
        return validate_br_phone(v)


class MemberLink(BaseModel):
    email: EmailStr
    role: Literal["STUDENT", "TEACHER"]


def serialize_academy(academy: Academy, public: bool = False) -> dict:
    data = {
        "id": academy.id,
        "name": academy.name,
        "email": academy.email,
        "phone": academy.phone,
        "address": academy.address,
        "city": academy.city,
        "state": academy.state,
        "is_active": academy.is_active,
    }
    if not public:
        data.update(
            {
                "franqueadora_id": academy.franqueadora_id,
                "settings": academy.settings or {},
                "monthly_revenue": academy.monthly_revenue,
                "created_at": academy.created_at.isoformat() if academy.created_at else None,
            }
        )
    return data


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"error": "Academia não encontrada", "code": "ACADEMY_NOT_FOUND"})


def get_scoped_academy(db: Session, academy_id: str, scope: FranchiseScope) -> Academy:
    academy = db.query(Academy).filter(Academy.id == academy_id).first()
    if not academy:
        raise _not_found()
    if not scope.can_access_academy(academy):
        logger.warning(f"🚫 User {scope.user.id} tried to access academy {academy_id} outside scope")
        raise HTTPException(status_code=403, detail={"error": "Acesso negado a esta academia", "code": "FORBIDDEN"})
    return academy


# ============================================================================
# ACADEMIES
# ============================================================================


@router.post("/academies", status_code=201)
async def create_academy(
    data: AcademyCreate,
    request: Request,
    scope: FranchiseScope = Depends(network_scope),
    db: Session = Depends(get_db),
):
    if not scope.franqueadora_id:
        raise HTTPException(
            status_code=400, detail={"error": "Franqueadora não identificada", "code": "FRANQUEADORA_REQUIRED"}
        )
    academy = Academy(franqueadora_id=scope.franqueadora_id, is_active=True, **data.model_dump())
    db.add(academy)
    db.flush()
    create_audit_log(db, "academy", academy.id, "CREATE", actor=scope.user, new={"name": academy.name}, request=request)
    db.commit()
    logger.info(f"✅ Academy {academy.id} created in network {scope.franqueadora_id}")
    return {"academy": serialize_academy(academy)}


@router.get("/academies")
async def list_academies(
    include_inactive: bool = Query(False),
    search: Optional[str] = Query(None),
    params: PageParams = Depends(page_params),
    scope: FranchiseScope = Depends(any_admin_scope),
    db: Session = Depends(get_db),
):
    query = db.query(Academy)
    if scope.academy_ids and canonicalize_role(scope.user.role) not in (ROLE_FRANCHISOR, ROLE_ADMIN, ROLE_SUPER_ADMIN):
        query = query.filter(Academy.id.in_(scope.academy_ids))
    elif not scope.is_super_admin:
        query = query.filter(Academy.franqueadora_id == scope.franqueadora_id)
    if not include_inactive:
        query = query.filter(Academy.is_active.is_(True))
    if search:
        query = query.filter(Academy.name.ilike(f"%{search}%"))

    total = query.count()
    order = Academy.created_at.asc() if params.sort_order == "asc" else Academy.created_at.desc()
    academies = query.order_by(order).offset(params.offset).limit(params.limit).all()
    return build_paginated_response([serialize_academy(a) for a in academies], total, params)


@router.get("/academies/{academy_id}")
async def get_academy(academy_id: str, scope: FranchiseScope = Depends(any_admin_scope), db: Session = Depends(get_db)):
    return {"academy": serialize_academy(get_scoped_academy(db, academy_id, scope))}


@router.put("/academies/{academy_id}")
async def update_academy(
    academy_id: str,
    data: AcademyUpdate,
    request: Request,
    scope: FranchiseScope = Depends(any_admin_scope),
    db: Session = Depends(get_db),
):
    academy = get_scoped_academy(db, academy_id, scope)
    changes = data.model_dump(exclude_unset=True)
    if "settings" in changes:
        changes["settings"] = {**(academy.settings or {}), **(changes["settings"] or {})}
    old = {field: getattr(academy, field) for field in changes}
    for field, value in changes.items():
        setattr(academy, field, value)
    action = "SENSITIVE_CHANGE" if "settings" in changes else "UPDATE"
    create_audit_log(db, "academy", academy.id, action, actor=scope.user, old=old, new=changes, request=request)
    db.commit()
    db.refresh(academy)
    return {"academy": serialize_academy(academy)}


@router.delete("/academies/{academy_id}")
async def deactivate_academy(
    academy_id: str,
    request: Request,
    scope: FranchiseScope = Depends(network_scope),
    db: Session = Depends(get_db),
):
    """Soft delete: the academy keeps its history but leaves the listings"""
    academy = get_scoped_academy(db, academy_id, scope)
    academy.is_active = False
    create_audit_log(db, "academy", academy.id, "DELETE", actor=scope.user, request=request)
    db.commit()
    logger.info(f"🗑️ Academy {academy_id} deactivated by {scope.user.id}")
    return {"message": "Academia desativada", "academy": serialize_academy(academy)}


@router.get("/academies/{academy_id}/stats")
async def academy_stats(
    academy_id: str, scope: FranchiseScope = Depends(any_admin_scope), db: Session = Depends(get_db)
):
    academy = get_scoped_academy(db, academy_id, scope)
    by_status = dict(
        db.query(Booking.status_canonical, func.count(Booking.id))
        .filter(Booking.unit_id == academy.id)
        .group_by(Booking.status_canonical)
        .all()
    )
    active_students = (
        db.query(func.count(AcademyStudent.id))
        .filter(AcademyStudent.academy_id == academy.id, AcademyStudent.status == "active")
        .scalar()
    )
    active_teachers = (
        db.query(func.count(AcademyTeacher.id))
        .filter(AcademyTeacher.academy_id == academy.id, AcademyTeacher.status == "active")
        .scalar()
    )
    revenue_cents = (
        db.query(func.coalesce(func.sum(PaymentIntent.amount_cents), 0))
        .filter(PaymentIntent.unit_id == academy.id, PaymentIntent.status == "PAID")
        .scalar()
    )
    return {
        "stats": {
            "total_bookings": sum(by_status.values()),
            "bookings_by_status": by_status,
            "active_students": active_students,
            "active_teachers": active_teachers,
            "revenue_cents": int(revenue_cents),
        }
    }


@router.post("/academies/{academy_id}/members", status_code=201)
async def link_member(
    academy_id: str,
    data: MemberLink,
    request: Request,
    scope: FranchiseScope = Depends(any_admin_scope),
    db: Session = Depends(get_db),
):
    """Attach an existing student or teacher to an academy"""
    academy = get_scoped_academy(db, academy_id, scope)
    user = db.query(User).filter(func.lower(User.email) == data.email.lower()).first()
    if not user:
        raise HTTPException(status_code=404, detail={"error": "Usuário não encontrado", "code": "USER_NOT_FOUND"})
    if canonicalize_role(user.role) != data.role:
        raise HTTPException(status_code=400, detail={"error": "Papel do usuário não confere", "code": "ROLE_MISMATCH"})

    if data.role == ROLE_STUDENT:
        model, user_column = AcademyStudent, AcademyStudent.student_id
    else:
        model, user_column = AcademyTeacher, AcademyTeacher.teacher_id
    link = db.query(model).filter(user_column == user.id, model.academy_id == academy.id).first()
    if link is None:
        link = model(academy_id=academy.id, **{user_column.key: user.id})
        db.add(link)
    link.status = "active"
    create_audit_log(
        db, "academy", academy.id, "UPDATE", actor=scope.user, request=request,
        new={"member_id": user.id, "member_role": data.role},
    )
    db.commit()
    return {"message": "Membro vinculado", "member": {"id": user.id, "email": user.email, "role": data.role}}


# ============================================================================
# PACKAGES
# ============================================================================


def _get_package(db: Session, model, academy_id: str, package_id: str):
    package = db.query(model).filter(model.id == package_id, model.unit_id == academy_id).first()
    if not package:
        raise HTTPException(status_code=404, detail={"error": "Pacote não encontrado", "code": "PACKAGE_NOT_FOUND"})
    return package


@router.get("/academies/{academy_id}/packages")
async def list_academy_packages(
    academy_id: str, scope: FranchiseScope = Depends(any_admin_scope), db: Session = Depends(get_db)
):
    """Both catalogs of an academy, inactive packages included"""
    academy = get_scoped_academy(db, academy_id, scope)
    repo = PaymentRepository()
    return {
        "student_packages": [serialize_package(p) for p in repo.list_student_packages(db, academy.id, active_only=False)],
        "hour_packages": [serialize_package(p) for p in repo.list_hour_packages(db, academy.id, active_only=False)],
    }


@router.post("/academies/{academy_id}/packages/student", status_code=201)
async def create_student_package(
    academy_id: str,
    data: StudentPackageCreate,
    request: Request,
    scope: FranchiseScope = Depends(any_admin_scope),
    db: Session = Depends(get_db),
):
    academy = get_scoped_academy(db, academy_id, scope)
    package = StudentPackage(unit_id=academy.id, **data.model_dump())
    db.add(package)
    db.flush()
    create_audit_log(db, "student_package", package.id, "CREATE", actor=scope.user, new=data.model_dump(), request=request)
    db.commit()
    invalidate_package_cache(academy.id)
    return {"package": serialize_package(package)}


@router.put("/academies/{academy_id}/packages/student/{package_id}")
async def update_student_package(
    academy_id: str,
    package_id: str,
    data: StudentPackageUpdate,
    request: Request,
    scope: FranchiseScope = Depends(any_admin_scope),
    db: Session = Depends(get_db),
):
    academy = get_scoped_academy(db, academy_id, scope)
    package = _get_package(db, StudentPackage, academy.id, package_id)
    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(package, field, value)
    create_audit_log(db, "student_package", package.id, "UPDATE", actor=scope.user, new=changes, request=request)
    db.commit()
    invalidate_package_cache(academy.id)
    return {"package": serialize_package(package)}


@router.delete("/academies/{academy_id}/packages/student/{package_id}")
async def deactivate_student_package(
    academy_id: str,
    package_id: str,
    request: Request,
    scope: FranchiseScope = Depends(any_admin_scope),
    db: Session = Depends(get_db),
):
    academy = get_scoped_academy(db, academy_id, scope)
    package = _get_package(db, StudentPackage, academy.id, package_id)
    package.status = "inactive"
    create_audit_log(db, "student_package", package.id, "DELETE", actor=scope.user, request=request)
    db.commit()
    invalidate_package_cache(academy.id)
    return {"message": "Pacote desativado", "package": serialize_package(package)}


@router.post("/academies/{academy_id}/packages/professor", status_code=201)
async def create_hour_package(
    academy_id: str,
    data: HourPackageCreate,
    request: Request,
    scope: FranchiseScope = Depends(any_admin_scope),
    db: Session = Depends(get_db),
):
    academy = get_scoped_academy(db, academy_id, scope)
    package = HourPackage(unit_id=academy.id, **data.model_dump())
    db.add(package)
    db.flush()
    create_audit_log(db, "hour_package", package.id, "CREATE", actor=scope.user, new=data.model_dump(), request=request)
    db.commit()
    invalidate_package_cache(academy.id)
    return {"package": serialize_package(package)}


@router.put("/academies/{academy_id}/packages/professor/{package_id}")
async def update_hour_package(
    academy_id: str,
    package_id: str,
    data: HourPackageUpdate,
    request: Request,
    scope: FranchiseScope = Depends(any_admin_scope),
    db: Session = Depends(get_db),
):
    academy = get_scoped_academy(db, academy_id, scope)
    package = _get_package(db, HourPackage, academy.id, package_id)
    changes = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(package, field, value)
    create_audit_log(db, "hour_package", package.id, "UPDATE", actor=scope.user, new=changes, request=request)
    db.commit()
    invalidate_package_cache(academy.id)
    return {"package": serialize_package(package)}


@router.delete("/academies/{academy_id}/packages/professor/{package_id}")
async def deactivate_hour_package(
    academy_id: str,
    package_id: str,
    request: Request,
    scope: FranchiseScope = Depends(any_admin_scope),
    db: Session = Depends(get_db),
):
    academy = get_scoped_academy(db, academy_id, scope)
    package = _get_package(db, HourPackage, academy.id, package_id)
    package.status = "inactive"
    create_audit_log(db, "hour_package", package.id, "DELETE", actor=scope.user, request=request)
    db.commit()
    invalidate_package_cache(academy.id)
    return {"message": "Pacote desativado", "package": serialize_package(package)}


# ============================================================================
# PUBLIC LISTING
# ============================================================================


@public_router.get("")
async def list_public_academies(
    city: Optional[str] = Query(None),
    state: Optional[str] = Query(None, min_length=2, max_length=2),
    db: Session = Depends(get_db),
):
    query = db.query(Academy).filter(Academy.is_active.is_(True))
    if city:
        query = query.filter(Academy.city.ilike(f"%{city}%"))
    if state:
        query = query.filter(Academy.state == state.upper())
    academies = query.order_by(Academy.name.asc()).all()
    return {"academies": [serialize_academy(a, public=True) for a in academies]}


@public_router.get("/{academy_id}")
async def get_public_academy(academy_id: str, db: Session = Depends(get_db)):
    academy = db.query(Academy).filter(Academy.id == academy_id, Academy.is_active.is_(True)).first()
    if not academy:
        raise _not_found()
    return {"academy": serialize_academy(academy, public=True)}
