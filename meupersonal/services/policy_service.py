"""
Operational policies for bookings.

A franqueadora publishes one set of rules for its whole network; an academy may
override individual rules. The effective policy is the default, overlaid by the
latest published franchisor policy, overlaid by the academy override.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ..cache import cache, policy_cache_key
from ..database import utcnow
from ..models import Academy, AcademyPolicyOverride, Booking, FranchisorPolicy
from .booking_status import ACTIVE_STATUSES

logger = logging.getLogger(__name__)

DEFAULT_POLICY: dict[str, int] = {
    "credits_per_class": 1,
    "class_duration_minutes": 60,
    "checkin_tolerance_minutes": 30,
    "student_min_booking_notice_minutes": 0,
    "student_reschedule_min_notice_minutes": 0,
    "late_cancel_threshold_minutes": 120,
    "late_cancel_penalty_credits": 1,
    "no_show_penalty_credits": 1,
    "teacher_minutes_per_class": 60,
    "teacher_rest_minutes_between_classes": 10,
    "teacher_max_daily_classes": 12,
    "max_future_booking_days": 30,
    "max_cancel_per_month": 0,  # 0 = unlimited
}

# Inclusive bounds enforced when a franchisor saves a draft
POLICY_BOUNDS: dict[str, tuple[int, int]] = {
    "credits_per_class": (1, 10),
    "class_duration_minutes": (15, 240),
    "checkin_tolerance_minutes": (0, 180),
    "student_min_booking_notice_minutes": (0, 10080),
    "student_reschedule_min_notice_minutes": (0, 10080),
    "late_cancel_threshold_minutes": (0, 2880),
    "late_cancel_penalty_credits": (0, 10),
    "no_show_penalty_credits": (0, 10),
    "teacher_minutes_per_class": (15, 240),
    "teacher_rest_minutes_between_classes": (0, 180),
    "teacher_max_daily_classes": (1, 24),
    "max_future_booking_days": (1, 365),
    "max_cancel_per_month": (0, 100),
}


def validate_policy_rules(rules: dict[str, Any]) -> list[str]:
    """Return a list of problems; empty when the rules are acceptable"""
    errors = []
    for key, value in rules.items():
        if key not in POLICY_BOUNDS:
            errors.append(f"Regra desconhecida: {key}")
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"{key} deve ser um número inteiro")
            continue
        low, high = POLICY_BOUNDS[key]
        if not low <= value <= high:
            errors.append(f"{key} deve estar entre {low} e {high}")
    return errors


def _merge(base: dict, overrides: Optional[dict]) -> dict:
    merged = dict(base)
    for key, value in (overrides or {}).items():
        if key in DEFAULT_POLICY and value is not None:
            merged[key] = value
    return merged


def get_published_policy(db: Session, franqueadora_id: str) -> Optional[FranchisorPolicy]:
    return (
        db.query(FranchisorPolicy)
        .filter(
            FranchisorPolicy.franqueadora_id == franqueadora_id,
            FranchisorPolicy.status == "published",
        )
        .order_by(FranchisorPolicy.effective_from.desc(), FranchisorPolicy.version.desc())
        .first()
    )


def get_effective_policy(db: Session, academy_id: Optional[str]) -> dict[str, int]:
    """Effective rules for an academy, cached for the default cache TTL"""
    key = policy_cache_key(academy_id)
    cached_policy = cache.get(key)
    if cached_policy is not None:
        return cached_policy

    policy = dict(DEFAULT_POLICY)
    if academy_id:
        academy = db.query(Academy).filter(Academy.id == academy_id).first()
        if academy:
            published = get_published_policy(db, academy.franqueadora_id)
            if published:
                policy = _merge(policy, published.rules)
            override = (
                db.query(AcademyPolicyOverride).filter(AcademyPolicyOverride.academy_id == academy_id).first()
            )
            if override:
                policy = _merge(policy, override.rules)
        else:
            logger.warning(f"⚠️ Academy {academy_id} not found, using default policy")

    cache.set(key, policy)
    return policy


def count_cancellations_this_month(
    db: Session, student_id: str, unit_id: Optional[str], now: Optional[datetime] = None
) -> int:
    """Student cancellations in one academy since the start of the month"""
    now = now or utcnow()
    month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    return (
        db.query(func.count(Booking.id))
        .filter(
            Booking.student_id == student_id,
            Booking.unit_id == unit_id,
            Booking.status_canonical == "CANCELED",
            Booking.canceled_at >= month_start,
        )
        .scalar()
        or 0
    )


def validate_booking_creation(
    policy: dict[str, int], start_at: datetime, now: Optional[datetime] = None
) -> tuple[bool, Optional[str]]:
    """Check minimum notice and how far ahead a booking may be made"""
    now = now or utcnow()
    min_notice = policy["student_min_booking_notice_minutes"]
    if min_notice and start_at < now + timedelta(minutes=min_notice):
        return False, f"Agendamentos exigem antecedência mínima de {min_notice} minutos"

    max_days = policy["max_future_booking_days"]
    if start_at > now + timedelta(days=max_days):
        return False, f"Agendamentos só podem ser feitos com até {max_days} dias de antecedência"

    return True, None


def validate_cancellation(
    policy: dict[str, int], start_at: datetime, now: Optional[datetime] = None
) -> dict[str, Any]:
    """Classify a cancellation as late or not and report the penalty it carries"""
    now = now or utcnow()
    minutes_before = (start_at - now).total_seconds() / 60
    is_late = minutes_before < policy["late_cancel_threshold_minutes"]
    return {
        "is_late_cancel": is_late,
        "penalty_credits": policy["late_cancel_penalty_credits"] if is_late else 0,
        "minutes_before_start": int(minutes_before),
    }


def validate_monthly_cancel_limit(
    db: Session,
    policy: dict[str, int],
    student_id: str,
    unit_id: Optional[str],
    now: Optional[datetime] = None,
) -> tuple[bool, Optional[str]]:
    limit = policy["max_cancel_per_month"]
    if not limit:
        return True, None
    if count_cancellations_this_month(db, student_id, unit_id, now) >= limit:
        return False, f"Limite de {limit} cancelamentos por mês atingido"
    return True, None


def validate_teacher_daily_limit(
    db: Session, policy: dict[str, int], teacher_id: str, start_at: datetime
) -> tuple[bool, Optional[str]]:
    day_start = start_at.replace(hour=0, minute=0, second=0, microsecond=0)
    day_end = day_start + timedelta(days=1)
    booked = (
        db.query(func.count(Booking.id))
        .filter(
            Booking.teacher_id == teacher_id,
            Booking.status_canonical.in_(ACTIVE_STATUSES),
            Booking.start_at >= day_start,
            Booking.start_at < day_end,
        )
        .scalar()
        or 0
    )
    limit = policy["teacher_max_daily_classes"]
    if booked >= limit:
        return False, f"Professor atingiu o limite de {limit} aulas no dia"
    return True, None


# ============================================================================
# FRANCHISOR POLICY LIFECYCLE
# ============================================================================


def get_draft_policy(db: Session, franqueadora_id: str) -> Optional[FranchisorPolicy]:
    return (
        db.query(FranchisorPolicy)
        .filter(FranchisorPolicy.franqueadora_id == franqueadora_id, FranchisorPolicy.status == "draft")
        .first()
    )


def save_draft_policy(db: Session, franqueadora_id: str, rules: dict[str, Any], user_id: str) -> FranchisorPolicy:
    draft = get_draft_policy(db, franqueadora_id)
    if draft is None:
        published = get_published_policy(db, franqueadora_id)
        base = published.rules if published else DEFAULT_POLICY
        draft = FranchisorPolicy(franqueadora_id=franqueadora_id, status="draft", rules=_merge(base, {}))
        db.add(draft)
    draft.rules = _merge(draft.rules or DEFAULT_POLICY, rules)
    draft.created_by = user_id
    db.flush()
    return draft


def publish_draft_policy(db: Session, franqueadora_id: str, user_id: str) -> Optional[FranchisorPolicy]:
    """Turn the draft into the next published version; returns None without a draft"""
    draft = get_draft_policy(db, franqueadora_id)
    if draft is None:
        return None
    last_version = (
        db.query(func.max(FranchisorPolicy.version))
        .filter(FranchisorPolicy.franqueadora_id == franqueadora_id, FranchisorPolicy.status == "published")
        .scalar()
        or 0
    )
    draft.status = "published"
    draft.version = last_version + 1
    draft.effective_from = utcnow()
    draft.created_by = user_id
    db.flush()
    logger.info(f"✅ Published policy v{draft.version} for franqueadora {franqueadora_id}")
    return draft


def list_policy_history(db: Session, franqueadora_id: str, limit: int = 20) -> list[FranchisorPolicy]:
    return (
        db.query(FranchisorPolicy)
        .filter(FranchisorPolicy.franqueadora_id == franqueadora_id, FranchisorPolicy.status == "published")
        .order_by(FranchisorPolicy.version.desc())
        .limit(limit)
        .all()
    )


def serialize_policy(policy: Optional[FranchisorPolicy]) -> Optional[dict]:
    if policy is None:
        return None
    return {
        "id": policy.id,
        "franqueadora_id": policy.franqueadora_id,
        "status": policy.status,
        "version": policy.version,
        "effective_from": policy.effective_from.isoformat() if policy.effective_from else None,
        "rules": policy.rules,
        "created_by": policy.created_by,
        "updated_at": policy.updated_at.isoformat() if policy.updated_at else None,
    }


def save_academy_override(db: Session, academy_id: str, rules: dict[str, Any]) -> AcademyPolicyOverride:
    """Replace an academy's overrides; an empty dict clears them"""
    override = db.query(AcademyPolicyOverride).filter(AcademyPolicyOverride.academy_id == academy_id).first()
    if override is None:
        override = AcademyPolicyOverride(academy_id=academy_id, rules={})
        db.add(override)
    override.rules = {k: v for k, v in rules.items() if k in DEFAULT_POLICY}
    db.flush()
    return override
