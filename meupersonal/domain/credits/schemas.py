"""Credit grant schemas - Pydantic models for validation"""

from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from ...shared.validators import validate_uuid

CreditType = Literal["STUDENT_CLASS", "PROFESSOR_HOUR"]


class CreditGrantRequest(BaseModel):
    """Schema for a manual credit release"""

    userEmail: EmailStr
    creditType: CreditType
    quantity: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)
    confirmHighQuantity: bool = False
    unitId: Optional[str] = None

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Motivo é obrigatório")
        return v

    @field_validator("unitId")
    @classmethod
    def validate_unit_id(cls, v):
        if v is not None and not validate_uuid(v):
            raise ValueError("unitId inválido")
        return v
