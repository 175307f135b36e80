from datetime import timedelta

from conftest import auth_headers, make_booking, make_franchise_admin, make_franchisor, make_network, make_user
from meupersonal.cache import cache, invalidate_policy_cache, policy_cache_key
from meupersonal.database import utcnow
from meupersonal.models import ROLE_STUDENT, AcademyPolicyOverride, FranchisorPolicy
from meupersonal.services import policy_service
from meupersonal.services.policy_service import DEFAULT_POLICY


def _publish(db, franqueadora, rules, version=1):
    policy = FranchisorPolicy(
        franqueadora_id=franqueadora.id, status="published", version=version, effective_from=utcnow(), rules=rules
    )
    db.add(policy)
    db.commit()
    return policy


# ============================================================================
# EFFECTIVE POLICY
# ============================================================================


def test_defaults_when_nothing_is_configured(db, network):
    _, academy = network
    assert policy_service.get_effective_policy(db, academy.id) == DEFAULT_POLICY
    assert policy_service.get_effective_policy(db, None) == DEFAULT_POLICY


def test_published_policy_then_academy_override(db, network):
    franqueadora, academy = network
    _publish(db, franqueadora, {"max_future_booking_days": 60, "teacher_max_daily_classes": 8})
    db.add(AcademyPolicyOverride(academy_id=academy.id, rules={"teacher_max_daily_classes": 4}))
    db.commit()

    policy = policy_service.get_effective_policy(db, academy.id)
    assert policy["max_future_booking_days"] == 60
    assert policy["teacher_max_daily_classes"] == 4
    assert policy["credits_per_class"] == DEFAULT_POLICY["credits_per_class"]


def test_latest_published_version_wins(db, network):
    franqueadora, academy = network
    _publish(db, franqueadora, {"max_cancel_per_month": 2}, version=1)
    _publish(db, franqueadora, {"max_cancel_per_month": 5}, version=2)
    assert policy_service.get_effective_policy(db, academy.id)["max_cancel_per_month"] == 5


def test_effective_policy_is_cached_until_invalidated(db, network):
    franqueadora, academy = network
    policy_service.get_effective_policy(db, academy.id)
    assert cache.get(policy_cache_key(academy.id)) == DEFAULT_POLICY

    _publish(db, franqueadora, {"max_future_booking_days": 90})
    # Still the cached copy
    assert policy_service.get_effective_policy(db, academy.id)["max_future_booking_days"] == 30

    invalidate_policy_cache()
    assert policy_service.get_effective_policy(db, academy.id)["max_future_booking_days"] == 90


def test_unknown_keys_are_ignored_in_overrides(db, network):
    _, academy = network
    override = policy_service.save_academy_override(db, academy.id, {"bogus": 1, "credits_per_class": 2})
    assert override.rules == {"credits_per_class": 2}


# ============================================================================
# VALIDATORS
# ============================================================================


def test_validate_policy_rules():
    assert policy_service.validate_policy_rules({"credits_per_class": 2}) == []
    errors = policy_service.validate_policy_rules(
        {"credits_per_class": 0, "teacher_max_daily_classes": "5", "unknown": 1, "max_cancel_per_month": True}
    )
    assert len(errors) == 4


def test_validate_booking_creation_windows():
    now = utcnow()
    policy = dict(DEFAULT_POLICY, student_min_booking_notice_minutes=120)

    ok, _ = policy_service.validate_booking_creation(policy, now + timedelta(hours=3), now)
    assert ok
    ok, message = policy_service.validate_booking_creation(policy, now + timedelta(minutes=30), now)
    assert not ok and "120" in message
    ok, message = policy_service.validate_booking_creation(policy, now + timedelta(days=31), now)
    assert not ok and "30 dias" in message


def test_validate_cancellation_flags_late_cancels():
    now = utcnow()
    late = policy_service.validate_cancellation(DEFAULT_POLICY, now + timedelta(minutes=60), now)
    assert late["is_late_cancel"] is True
    assert late["penalty_credits"] == 1

    early = policy_service.validate_cancellation(DEFAULT_POLICY, now + timedelta(hours=5), now)
    assert early == {"is_late_cancel": False, "penalty_credits": 0, "minutes_before_start": 300}


def test_monthly_cancel_limit(db, network, student, teacher):
    _, academy = network
    policy = dict(DEFAULT_POLICY, max_cancel_per_month=1)
    assert policy_service.validate_monthly_cancel_limit(db, policy, student.id, academy.id) == (True, None)

    make_booking(db, academy, teacher, student, status="CANCELED", status_canonical="CANCELED", canceled_at=utcnow())
    ok, message = policy_service.validate_monthly_cancel_limit(db, policy, student.id, academy.id)
    assert not ok
    assert "1 cancelamentos" in message
    # 0 means unlimited
    assert policy_service.validate_monthly_cancel_limit(db, DEFAULT_POLICY, student.id, academy.id)[0]


def test_monthly_cancel_limit_is_per_academy(db, network, student, teacher):
    _, academy = network
    _, other_academy = make_network(db)
    policy = dict(DEFAULT_POLICY, max_cancel_per_month=1)
    make_booking(
        db, other_academy, teacher, student, status="CANCELED", status_canonical="CANCELED", canceled_at=utcnow()
    )

    assert policy_service.count_cancellations_this_month(db, student.id, other_academy.id) == 1
    assert policy_service.count_cancellations_this_month(db, student.id, academy.id) == 0
    assert policy_service.validate_monthly_cancel_limit(db, policy, student.id, academy.id) == (True, None)


def test_teacher_daily_limit(db, network, teacher):
    _, academy = network
    booking = make_booking(db, academy, teacher)
    policy = dict(DEFAULT_POLICY, teacher_max_daily_classes=1)

    ok, _ = policy_service.validate_teacher_daily_limit(db, policy, teacher.id, booking.start_at)
    assert not ok
    ok, _ = policy_service.validate_teacher_daily_limit(
        db, policy, teacher.id, booking.start_at + timedelta(days=1)
    )
    assert ok


# ============================================================================
# ROUTES
# ============================================================================


def test_draft_then_publish(client, db, network):
    franqueadora, academy = network
    admin = make_franchisor(db, franqueadora)
    headers = auth_headers(admin)

    response = client.put("/api/franchisor/policies", json={"rules": {"max_cancel_per_month": 3}}, headers=headers)
    assert response.status_code == 200
    assert response.json()["draft"]["rules"]["max_cancel_per_month"] == 3
    assert response.json()["draft"]["rules"]["credits_per_class"] == 1

    response = client.post("/api/franchisor/policies/publish", headers=headers)
    assert response.status_code == 200
    assert response.json()["policy"]["version"] == 1

    body = client.get("/api/franchisor/policies", headers=headers).json()
    assert body["published"]["rules"]["max_cancel_per_month"] == 3
    assert body["draft"] is None

    history = client.get("/api/franchisor/policies/history", headers=headers).json()["history"]
    assert [p["version"] for p in history] == [1]

    effective = client.get(f"/api/franchisor/policies/academies/{academy.id}", headers=headers).json()
    assert effective["policy"]["max_cancel_per_month"] == 3


def test_invalid_rules_are_rejected(client, db, network):
    franqueadora, _ = network
    admin = make_franchisor(db, franqueadora)
    response = client.put(
        "/api/franchisor/policies", json={"rules": {"credits_per_class": 50}}, headers=auth_headers(admin)
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_POLICY"
    assert response.json()["details"]


def test_publish_without_draft_is_404(client, db, network):
    franqueadora, _ = network
    admin = make_franchisor(db, franqueadora)
    response = client.post("/api/franchisor/policies/publish", headers=auth_headers(admin))
    assert response.status_code == 404
    assert response.json()["code"] == "NO_DRAFT"


def test_academy_override_route(client, db, network):
    franqueadora, academy = network
    admin = make_franchisor(db, franqueadora)
    response = client.put(
        f"/api/franchisor/policies/academies/{academy.id}/override",
        json={"rules": {"teacher_max_daily_classes": 6}},
        headers=auth_headers(admin),
    )
    assert response.status_code == 200
    assert response.json()["policy"]["teacher_max_daily_classes"] == 6


def test_only_franchisors_manage_policies(client, db, network):
    _, academy = network
    for user in (make_user(db, role=ROLE_STUDENT), make_franchise_admin(db, academy)):
        assert client.get("/api/franchisor/policies", headers=auth_headers(user)).status_code == 403


def test_route_changes_refresh_the_cached_policy(client, db, network):
    franqueadora, academy = network
    admin = make_franchisor(db, franqueadora)
    headers = auth_headers(admin)
    assert policy_service.get_effective_policy(db, academy.id)["max_cancel_per_month"] == 0

    client.put("/api/franchisor/policies", json={"rules": {"max_cancel_per_month": 4}}, headers=headers)
    # A draft does not touch the effective policy
    assert cache.get(policy_cache_key(academy.id))["max_cancel_per_month"] == 0

    client.post("/api/franchisor/policies/publish", headers=headers)
    assert cache.get(policy_cache_key(academy.id)) is None
    assert policy_service.get_effective_policy(db, academy.id)["max_cancel_per_month"] == 4

    client.put(
        f"/api/franchisor/policies/academies/{academy.id}/override",
        json={"rules": {"max_cancel_per_month": 2}},
        headers=headers,
    )
    assert policy_service.get_effective_policy(db, academy.id)["max_cancel_per_month"] == 2
