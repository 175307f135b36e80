"""Booking status normalization

Bookings written by older clients carry legacy status names (DONE, CONFIRMED,
CANCELLED). Everything is compared on the canonical value.
"""

from typing import Optional

CANONICAL_STATUSES = ("AVAILABLE", "BLOCKED", "PENDING", "RESERVED", "PAID", "COMPLETED", "CANCELED")
ACTIVE_STATUSES = ("PENDING", "RESERVED", "PAID")

_ALIASES = {
    "DONE": "COMPLETED",
    "COMPLETED": "COMPLETED",
    "CANCELED": "CANCELED",
    "CANCELLED": "CANCELED",
    "PAID": "PAID",
    "CONFIRMED": "PAID",
    "RESERVED": "RESERVED",
    "PENDING": "PENDING",
    "BLOCKED": "BLOCKED",
    "AVAILABLE": "AVAILABLE",
}


def normalize_booking_status(status: Optional[str]) -> str:
    if not status:
        return "PENDING"
    return _ALIASES.get(status.strip().upper(), "PENDING")


def is_active_booking(status: Optional[str]) -> bool:
    return normalize_booking_status(status) in ACTIVE_STATUSES


def is_completed_booking(status: Optional[str]) -> bool:
    return normalize_booking_status(status) == "COMPLETED"


def is_canceled_booking(status: Optional[str]) -> bool:
    return normalize_booking_status(status) == "CANCELED"
