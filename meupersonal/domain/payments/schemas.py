"""Payment domain schemas - Pydantic models for validation"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ...shared.validators import validate_uuid


class CheckoutRequest(BaseModel):
    """Schema for buying a package"""

    package_id: str
    unit_id: str
    payment_method: Literal["PIX", "BOLETO", "CREDIT_CARD"] = "PIX"

    @field_validator("package_id", "unit_id")
    @classmethod
    def validate_ids(cls, v):
        if not validate_uuid(v):
            raise ValueError("Identificador inválido")
        return v


class StudentPackageCreate(BaseModel):
    title: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = None
    classes_qty: int = Field(..., gt=0, le=1000)
    price_cents: int = Field(..., ge=0)
    status: Literal["active", "inactive"] = "active"


class HourPackageCreate(BaseModel):
    title: str = Field(..., min_length=2, max_length=255)
    description: Optional[str] = None
    hours_qty: int = Field(..., gt=0, le=1000)
    price_cents: int = Field(..., ge=0)
    status: Literal["active", "inactive"] = "active"


class StudentPackageUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=2, max_length=255)
    description: Optional[str] = None
    classes_qty: Optional[int] = Field(None, gt=0, le=1000)
    price_cents: Optional[int] = Field(None, ge=0)
    status: Optional[Literal["active", "inactive"]] = None


class HourPackageUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=2, max_length=255)
    description: Optional[str] = None
    hours_qty: Optional[int] = Field(None, gt=0, le=1000)
    price_cents: Optional[int] = Field(None, ge=0)
    status: Optional[Literal["active", "inactive"]] = None
