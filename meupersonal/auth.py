import logging
from dataclasses import dataclass, field
from typing import Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from .config import AUTH_COOKIE_NAME
from .database import get_db
from .models import (
    ROLE_ADMIN,
    ROLE_FRANCHISE_ADMIN,
    ROLE_FRANCHISOR,
    ROLE_STUDENT,
    ROLE_SUPER_ADMIN,
    ROLE_TEACHER,
    Academy,
    AcademyStudent,
    AcademyTeacher,
    FranchiseAdmin,
    FranqueadoraAdmin,
    Franqueadora,
    StudentUnit,
    User,
)
from .security_utils import InvalidTokenError, TokenExpiredError, decode_jwt_token

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)

_ROLE_ALIASES = {
    "ALUNO": ROLE_STUDENT,
    "PROFESSOR": ROLE_TEACHER,
    "FRANQUEADORA": ROLE_FRANCHISOR,
    "FRANQUIA": ROLE_FRANCHISE_ADMIN,
}


def canonicalize_role(role: Optional[str]) -> str:
    """Map legacy Portuguese role names onto the canonical ones"""
    if not role:
        return ""
    upper = role.strip().upper()
    return _ROLE_ALIASES.get(upper, upper)


def apply_canonical_role(user: User) -> None:
    """Expose the canonical role on a loaded user without marking the row dirty"""
    set_committed_value(user, "role", canonicalize_role(user.role))


def auth_error(status_code: int, message: str, code: str) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"error": message, "code": code})


def extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(AUTH_COOKIE_NAME)


def authenticate_token(db: Session, token: Optional[str]) -> User:
    """Resolve a session token to an active user or raise 401"""
    if not token:
        raise auth_error(401, "Token de acesso requerido", "MISSING_TOKEN")

    try:
        payload = decode_jwt_token(token)
    except TokenExpiredError as e:
        raise auth_error(401, "Token expirado", "TOKEN_EXPIRED") from e
    except InvalidTokenError as e:
        raise auth_error(401, "Token inválido", "INVALID_TOKEN") from e

    user_id = payload.get("userId")
    if not user_id:
        raise auth_error(401, "Token inválido", "INVALID_TOKEN")

    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        logger.warning(f"⚠️ Token for missing or inactive user {user_id}")
        raise auth_error(401, "Usuário não encontrado ou inativo", "USER_INACTIVE")

    apply_canonical_role(user)
    return user


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """Get current user from the Bearer header or the auth cookie"""
    return authenticate_token(db, extract_token(request, credentials))


def require_roles(*roles: str):
    """
    Dependency factory restricting an endpoint to the given canonical roles

    Example:
        @router.get("/stats")
        async def stats(user: User = Depends(require_roles("FRANCHISOR", "SUPER_ADMIN"))):
            ...
    """
    allowed = {canonicalize_role(r) for r in roles}

    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        if canonicalize_role(current_user.role) not in allowed:
            logger.warning(f"🚫 User {current_user.id} ({current_user.role}) denied; requires {sorted(allowed)}")
            raise auth_error(403, "Permissões insuficientes", "INSUFFICIENT_PERMISSIONS")
        return current_user

    return dependency


# ============================================================================
# FRANCHISE SCOPE
# ============================================================================


@dataclass
class FranchiseScope:
    """What slice of the network an admin user may act on"""

    user: User
    franqueadora_id: Optional[str] = None
    academy_ids: list[str] = field(default_factory=list)
    is_super_admin: bool = False

    @property
    def franchise_id(self) -> Optional[str]:
        return self.academy_ids[0] if len(self.academy_ids) == 1 else None

    def can_access_academy(self, academy: Academy) -> bool:
        if self.is_super_admin:
            return True
        if self.academy_ids and academy.id in self.academy_ids:
            return True
        return canonicalize_role(self.user.role) != ROLE_FRANCHISE_ADMIN and (
            self.franqueadora_id is not None and academy.franqueadora_id == self.franqueadora_id
        )


def resolve_franchise_scope(db: Session, user: User) -> FranchiseScope:
    """
    Resolve the franqueadora an admin belongs to.
    Order: franqueadora_admins, users.franchisor_id, franchise_admins -> academies,
    and for SUPER_ADMIN the first franqueadora as a default.
    """
    role = canonicalize_role(user.role)
    scope = FranchiseScope(user=user, is_super_admin=role == ROLE_SUPER_ADMIN)

    if role == ROLE_FRANCHISE_ADMIN:
        links = db.query(FranchiseAdmin).filter(FranchiseAdmin.user_id == user.id).all()
        scope.academy_ids = [link.academy_id for link in links]
        if not scope.academy_ids and user.franchise_id:
            scope.academy_ids = [user.franchise_id]

    admin_link = db.query(FranqueadoraAdmin).filter(FranqueadoraAdmin.user_id == user.id).first()
    if admin_link:
        scope.franqueadora_id = admin_link.franqueadora_id
    elif user.franchisor_id:
        scope.franqueadora_id = user.franchisor_id
    elif scope.academy_ids:
        academy = db.query(Academy).filter(Academy.id == scope.academy_ids[0]).first()
        scope.franqueadora_id = academy.franqueadora_id if academy else None
    elif scope.is_super_admin:
        default = db.query(Franqueadora).order_by(Franqueadora.created_at.asc()).first()
        scope.franqueadora_id = default.id if default else None

    return scope


def require_franchise_scope(*roles: str):
    """Like require_roles, but also resolves the caller's FranchiseScope"""
    role_dependency = require_roles(*(roles or (ROLE_FRANCHISE_ADMIN, ROLE_FRANCHISOR, ROLE_ADMIN, ROLE_SUPER_ADMIN)))

    async def dependency(
        current_user: User = Depends(role_dependency), db: Session = Depends(get_db)
    ) -> FranchiseScope:
        scope = resolve_franchise_scope(db, current_user)
        if not scope.is_super_admin and not scope.franqueadora_id and not scope.academy_ids:
            raise auth_error(403, "Usuário sem franquia vinculada", "NO_FRANCHISE_SCOPE")
        return scope

    return dependency


def user_academy_ids(db: Session, user: User) -> set[str]:
    """Units a student or teacher is linked to"""
    role = canonicalize_role(user.role)
    ids: set[str] = set()
    if role == ROLE_STUDENT:
        ids.update(r.academy_id for r in db.query(AcademyStudent).filter(AcademyStudent.student_id == user.id))
        ids.update(r.unit_id for r in db.query(StudentUnit).filter(StudentUnit.student_id == user.id))
    elif role == ROLE_TEACHER:
        ids.update(r.academy_id for r in db.query(AcademyTeacher).filter(AcademyTeacher.teacher_id == user.id))
    if user.franchise_id:
        ids.add(user.franchise_id)
    return ids
