from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from .auth import canonicalize_role
from .shared.validators import validate_br_phone, validate_cpf


class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=128)
    role: Literal["STUDENT", "TEACHER", "ALUNO", "PROFESSOR"] = "STUDENT"
    phone: Optional[str] = None
    cpf: Optional[str] = None

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if len(v) < 2:
            raise ValueError("Nome deve ter pelo menos 2 caracteres")
        return v

    @field_validator("email")
    @classmethod
    def lower_email(cls, v):
        return v.lower()

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v):
        return validate_br_phone(v)

    @field_validator("cpf")
    @classmethod
    def check_cpf(cls, v):
        return validate_cpf(v)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def lower_email(cls, v):
        return v.lower()


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6, max_length=128)


class UserUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone: Optional[str] = None
    cpf: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v):
        return validate_br_phone(v)

    @field_validator("cpf")
    @classmethod
    def check_cpf(cls, v):
        return validate_cpf(v)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    role: str
    phone: Optional[str]
    cpf: Optional[str]
    is_active: bool
    franchisor_id: Optional[str]
    franchise_id: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True

    @field_validator("role")
    @classmethod
    def canonical_role(cls, v):
        return canonicalize_role(v)


class MessageResponse(BaseModel):
    message: str
