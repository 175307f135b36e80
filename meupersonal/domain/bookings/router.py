"""Booking router - FastAPI endpoints for booking operations"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from ...auth import get_current_user
from ...database import get_db
from ...models import User
from .schemas import BookingCreate, BookingStatusUpdate, CheckinRequest
from .service import BookingService, serialize_booking

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["Bookings"])


def get_booking_service(db: Session = Depends(get_db)) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db)


# ============================================================================
# QUERIES
# ============================================================================


@router.get("")
async def list_bookings(
    unit_id: str = Query(...),
    status: Optional[str] = Query(None),
    teacher_id: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    """List bookings of a unit; students only see their own"""
    bookings = service.list_bookings(
        unit_id, current_user, status=status, teacher_id=teacher_id, date_from=date_from, date_to=date_to
    )
    return {"bookings": [serialize_booking(b) for b in bookings]}


@router.get("/{booking_id}")
async def get_booking(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    return {"booking": serialize_booking(service.get_booking(booking_id, current_user))}


# ============================================================================
# LIFECYCLE
# ============================================================================


@router.post("", status_code=201)
async def create_booking(
    data: BookingCreate,
    request: Request,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.create_booking(data, current_user, request)
    return {"message": "Agendamento criado com sucesso", "booking": serialize_booking(booking)}


@router.patch("/{booking_id}")
async def update_booking_status(
    booking_id: str,
    data: BookingStatusUpdate,
    request: Request,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.update_status(booking_id, data.status, current_user, request)
    return {"message": "Agendamento atualizado", "booking": serialize_booking(booking)}


@router.delete("/{booking_id}")
async def cancel_booking(
    booking_id: str,
    request: Request,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    booking = service.cancel_booking(booking_id, current_user, request)
    return {"message": "Agendamento cancelado", "booking": serialize_booking(booking)}


@router.post("/{booking_id}/checkin")
async def checkin_booking(
    booking_id: str,
    data: Optional[CheckinRequest] = None,
    current_user: User = Depends(get_current_user),
    service: BookingService = Depends(get_booking_service),
):
    method = data.method if data else "MANUAL"
    return service.check_in(booking_id, current_user, method)


__all__ = ["router"]
