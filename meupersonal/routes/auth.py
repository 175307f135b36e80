import logging
from datetime import timedelta
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, Response
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from ..auth import (
    apply_canonical_role,
    auth_error,
    authenticate_token,
    canonicalize_role,
    extract_token,
    get_current_user,
    security,
)
from ..config import AUTH_COOKIE_NAME, IS_PRODUCTION, JWT_EXPIRE_DAYS, WELCOME_STUDENT_CREDITS
from ..database import get_db, utcnow
from ..domain.balances.service import BalanceService, serialize_professor_balance, serialize_student_balance
from ..email_service import build_reset_link, send_in_background, send_password_reset_email, send_welcome_email
from ..models import ROLE_STUDENT, ROLE_TEACHER, User
from ..rate_limiter import create_rate_limiter
from ..schemas import ForgotPasswordRequest, LoginRequest, RegisterRequest, ResetPasswordRequest, UserResponse
from ..security_utils import (
    create_jwt_token,
    generate_password_reset_token,
    hash_password,
    mask_email,
    verify_password,
    verify_password_reset_token,
)
from ..services.audit_service import create_audit_log

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["Authentication"])

# 10 requests per 15 minutes per IP
auth_rate_limit = create_rate_limiter(limit=10, window_seconds=900, key_prefix="auth", use_ip=True)

FORGOT_PASSWORD_MESSAGE = "Se existir uma conta com este e-mail, você receberá um link para redefinir a senha."


def serialize_user(user: User) -> dict:
    return UserResponse.model_validate(user).model_dump(mode="json")


def issue_token(user: User) -> str:
    return create_jwt_token({"userId": user.id, "email": user.email, "role": canonicalize_role(user.role)})


def set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        key=AUTH_COOKIE_NAME,
        value=token,
        max_age=int(timedelta(days=JWT_EXPIRE_DAYS).total_seconds()),
        httponly=True,
        secure=IS_PRODUCTION,
        samesite="lax",
        path="/",
    )


# ============================================================================
# REGISTRATION & SESSION
# ============================================================================


@router.post("/register", status_code=201)
async def register(
    data: RegisterRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    _: None = Depends(auth_rate_limit),
):
    """Create a student or teacher account. Students start with welcome credits."""
    if db.query(User).filter(User.email == data.email).first():
        raise HTTPException(status_code=409, detail={"error": "E-mail já cadastrado", "code": "EMAIL_IN_USE"})

    role = canonicalize_role(data.role)
    try:
        user = User(
            name=data.name,
            email=data.email,
            password_hash=hash_password(data.password),
            role=role,
            phone=data.phone,
            cpf=data.cpf,
            is_active=True,
        )
        db.add(user)
        db.flush()

        welcome_credits = 0
        if role == ROLE_STUDENT and WELCOME_STUDENT_CREDITS > 0:
            BalanceService(db).purchase_student_classes(
                user.id, WELCOME_STUDENT_CREDITS, source="SYSTEM", meta={"origin": "welcome_bonus"}
            )
            welcome_credits = WELCOME_STUDENT_CREDITS

        create_audit_log(db, "user", user.id, "CREATE", actor=user, request=request, new={"role": role})
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"✅ Registered {role} {mask_email(user.email)} ({user.id})")
    background_tasks.add_task(send_in_background, send_welcome_email, user.email, user.name, welcome_credits)

    token = issue_token(user)
    set_auth_cookie(response, token)
    return {"message": "Conta criada com sucesso", "token": token, "user": serialize_user(user)}


@router.post("/login")
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    _: None = Depends(auth_rate_limit),
):
    user = db.query(User).filter(User.email == data.email).first()
    if not user or not verify_password(data.password, user.password_hash):
        logger.warning(f"🚫 Failed login for {mask_email(data.email)}")
        raise auth_error(401, "E-mail ou senha inválidos", "INVALID_CREDENTIALS")
    if not user.is_active:
        raise auth_error(401, "Conta desativada", "USER_INACTIVE")

    apply_canonical_role(user)
    user.last_login_at = utcnow()
    create_audit_log(db, "user", user.id, "LOGIN", actor=user, request=request)
    db.commit()

    token = issue_token(user)
    set_auth_cookie(response, token)
    logger.info(f"✅ Login {mask_email(user.email)}")
    return {"message": "Login realizado com sucesso", "token": token, "user": serialize_user(user)}


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
):
    """Clear the session cookie; audited when the caller still has a valid token"""
    token = extract_token(request, credentials)
    if token:
        try:
            user = authenticate_token(db, token)
            create_audit_log(db, "user", user.id, "LOGOUT", actor=user, request=request)
            db.commit()
        except HTTPException:
            logger.info("Logout with an invalid or expired token")
    response.delete_cookie(AUTH_COOKIE_NAME, path="/")
    return {"message": "Logout realizado com sucesso"}


@router.get("/me")
async def me(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    data = {"user": serialize_user(current_user)}
    balances = BalanceService(db)
    if current_user.role == ROLE_STUDENT:
        data["balance"] = serialize_student_balance(balances.get_student_balance(current_user.id))
    elif current_user.role == ROLE_TEACHER:
        data["balance"] = serialize_professor_balance(balances.get_professor_balance(current_user.id))
    db.commit()
    return data


# ============================================================================
# PASSWORD RESET
# ============================================================================


@router.post("/forgot-password")
async def forgot_password(
    data: ForgotPasswordRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    _: None = Depends(auth_rate_limit),
):
    """Always answers the same message so the endpoint cannot be used to enumerate accounts"""
    user = db.query(User).filter(User.email == data.email.lower()).first()
    if user and user.is_active:
        token = generate_password_reset_token(user.id, user.email)
        background_tasks.add_task(
            send_in_background, send_password_reset_email, user.email, user.name, build_reset_link(token)
        )
        logger.info(f"📧 Password reset requested for {mask_email(user.email)}")
    else:
        logger.info(f"Password reset requested for unknown {mask_email(data.email)}")
    return {"message": FORGOT_PASSWORD_MESSAGE}


@router.post("/reset-password")
async def reset_password(
    data: ResetPasswordRequest,
    request: Request,
    db: Session = Depends(get_db),
    _: None = Depends(auth_rate_limit),
):
    payload = verify_password_reset_token(data.token)
    if not payload:
        raise HTTPException(status_code=400, detail={"error": "Link inválido ou expirado", "code": "INVALID_TOKEN"})

    user = db.query(User).filter(User.id == payload.get("user_id")).first()
    if not user or user.email != payload.get("email"):
        raise HTTPException(status_code=400, detail={"error": "Link inválido ou expirado", "code": "INVALID_TOKEN"})

    user.password_hash = hash_password(data.password)
    create_audit_log(db, "user", user.id, "SENSITIVE_CHANGE", actor=user, request=request, extra={"field": "password"})
    db.commit()
    logger.info(f"✅ Password reset for {mask_email(user.email)}")
    return {"message": "Senha redefinida com sucesso"}
