"""Booking domain schemas - Pydantic models for validation"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ...shared.validators import validate_uuid


def _to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class BookingCreate(BaseModel):
    """Schema for creating a booking"""

    source: Literal["ALUNO", "PROFESSOR"]
    professorId: str
    unitId: str
    studentId: Optional[str] = None
    startAt: datetime
    endAt: datetime
    studentNotes: Optional[str] = Field(None, max_length=1000)
    professorNotes: Optional[str] = Field(None, max_length=1000)

    @field_validator("professorId", "unitId", "studentId")
    @classmethod
    def validate_ids(cls, v):
        if v is not None and not validate_uuid(v):
            raise ValueError("Identificador inválido")
        return v

    @field_validator("startAt", "endAt")
    @classmethod
    def normalize_datetimes(cls, v):
        return _to_naive_utc(v)

    @model_validator(mode="after")
    def check_interval(self):
        if self.endAt <= self.startAt:
            raise ValueError("endAt deve ser posterior a startAt")
        if self.source == "ALUNO" and not self.studentId:
            raise ValueError("studentId é obrigatório para agendamentos de aluno")
        return self


class BookingStatusUpdate(BaseModel):
    status: Literal["CANCELED", "PAID", "DONE"]


class CheckinRequest(BaseModel):
    method: Literal["QRCODE", "MANUAL"] = "MANUAL"


class BookingResponse(BaseModel):
    id: str
    source: str
    student_id: Optional[str] = None
    teacher_id: str
    unit_id: str
    start_at: datetime
    end_at: datetime
    status: str
    status_canonical: str
    cancellable_until: Optional[datetime] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
