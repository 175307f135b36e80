import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..models import User
from ..schemas import UserUpdate
from ..services.audit_service import create_audit_log
from .auth import serialize_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/users", tags=["Users"])


@router.get("/me")
async def get_me(current_user: User = Depends(get_current_user)):
    return {"user": serialize_user(current_user)}


@router.put("/me")
async def update_me(
    data: UserUpdate,
    request: Request,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update the caller's profile (name, phone, CPF)"""
    changes = data.model_dump(exclude_unset=True)
    old = {field: getattr(current_user, field) for field in changes}
    for field, value in changes.items():
        setattr(current_user, field, value)

    if changes:
        action = "SENSITIVE_CHANGE" if "cpf" in changes else "UPDATE"
        create_audit_log(db, "user", current_user.id, action, actor=current_user, old=old, new=changes, request=request)
        db.commit()
        db.refresh(current_user)
        logger.info(f"✅ User {current_user.id} updated {sorted(changes)}")

    return {"message": "Perfil atualizado", "user": serialize_user(current_user)}
