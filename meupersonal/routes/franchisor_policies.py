import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import FranchiseScope, require_franchise_scope
from ..cache import cache, invalidate_policy_cache, policy_cache_key
from ..database import get_db
from ..models import ROLE_ADMIN, ROLE_FRANCHISOR, ROLE_SUPER_ADMIN, Academy
from ..services import policy_service
from ..services.audit_service import create_audit_log

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/franchisor/policies", tags=["Policies"])

franchisor_scope = require_franchise_scope(ROLE_FRANCHISOR, ROLE_ADMIN, ROLE_SUPER_ADMIN)


class PolicyRulesUpdate(BaseModel):
    rules: dict[str, Any]


def _require_franqueadora(scope: FranchiseScope) -> str:
    if not scope.franqueadora_id:
        raise HTTPException(
            status_code=400, detail={"error": "Franqueadora não identificada", "code": "FRANQUEADORA_REQUIRED"}
        )
    return scope.franqueadora_id


def _validate_rules(rules: dict[str, Any]) -> None:
    errors = policy_service.validate_policy_rules(rules)
    if errors:
        raise HTTPException(
            status_code=400,
            detail={"error": "Política inválida", "code": "INVALID_POLICY", "details": errors},
        )


@router.get("")
async def get_policies(scope: FranchiseScope = Depends(franchisor_scope), db: Session = Depends(get_db)):
    """Published and draft policies of the caller's network"""
    franqueadora_id = _require_franqueadora(scope)
    return {
        "published": policy_service.serialize_policy(policy_service.get_published_policy(db, franqueadora_id)),
        "draft": policy_service.serialize_policy(policy_service.get_draft_policy(db, franqueadora_id)),
        "defaults": policy_service.DEFAULT_POLICY,
        "bounds": {k: list(v) for k, v in policy_service.POLICY_BOUNDS.items()},
    }


@router.get("/history")
async def get_policy_history(scope: FranchiseScope = Depends(franchisor_scope), db: Session = Depends(get_db)):
    franqueadora_id = _require_franqueadora(scope)
    history = policy_service.list_policy_history(db, franqueadora_id)
    return {"history": [policy_service.serialize_policy(p) for p in history]}


@router.put("")
async def save_draft(
    data: PolicyRulesUpdate,
    request: Request,
    scope: FranchiseScope = Depends(franchisor_scope),
    db: Session = Depends(get_db),
):
    franqueadora_id = _require_franqueadora(scope)
    _validate_rules(data.rules)
    draft = policy_service.save_draft_policy(db, franqueadora_id, data.rules, scope.user.id)
    create_audit_log(db, "franchisor_policy", draft.id, "UPDATE", actor=scope.user, new=data.rules, request=request)
    db.commit()
    return {"message": "Rascunho salvo", "draft": policy_service.serialize_policy(draft)}


@router.post("/publish")
async def publish(request: Request, scope: FranchiseScope = Depends(franchisor_scope), db: Session = Depends(get_db)):
    franqueadora_id = _require_franqueadora(scope)
    policy = policy_service.publish_draft_policy(db, franqueadora_id, scope.user.id)
    if policy is None:
        raise HTTPException(status_code=404, detail={"error": "Nenhum rascunho para publicar", "code": "NO_DRAFT"})
    create_audit_log(
        db, "franchisor_policy", policy.id, "SENSITIVE_CHANGE", actor=scope.user, request=request,
        new={"version": policy.version, "status": "published"},
    )
    db.commit()
    invalidate_policy_cache()
    return {"message": f"Política v{policy.version} publicada", "policy": policy_service.serialize_policy(policy)}


@router.get("/academies/{academy_id}")
async def get_academy_policy(
    academy_id: str, scope: FranchiseScope = Depends(franchisor_scope), db: Session = Depends(get_db)
):
    """Effective rules of one academy"""
    academy = db.query(Academy).filter(Academy.id == academy_id).first()
    if not academy or not scope.can_access_academy(academy):
        raise HTTPException(status_code=404, detail={"error": "Academia não encontrada", "code": "ACADEMY_NOT_FOUND"})
    return {"academy_id": academy_id, "policy": policy_service.get_effective_policy(db, academy_id)}


@router.put("/academies/{academy_id}/override")
async def save_academy_override(
    academy_id: str,
    data: PolicyRulesUpdate,
    request: Request,
    scope: FranchiseScope = Depends(franchisor_scope),
    db: Session = Depends(get_db),
):
    academy = db.query(Academy).filter(Academy.id == academy_id).first()
    if not academy or not scope.can_access_academy(academy):
        raise HTTPException(status_code=404, detail={"error": "Academia não encontrada", "code": "ACADEMY_NOT_FOUND"})
    _validate_rules(data.rules)
    override = policy_service.save_academy_override(db, academy_id, data.rules)
    create_audit_log(db, "academy_policy_override", override.id, "UPDATE", actor=scope.user, new=data.rules, request=request)
    db.commit()
    cache.delete(policy_cache_key(academy_id))
    return {"academy_id": academy_id, "rules": override.rules, "policy": policy_service.get_effective_policy(db, academy_id)}
