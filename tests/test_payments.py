import httpx
import pytest

from conftest import auth_headers
from meupersonal.domain.balances.service import BalanceService
from meupersonal.domain.payments.service import PaymentIntentService, map_provider_status
from meupersonal.main import app
from meupersonal.models import HourPackage, PaymentIntent, StudentClassTransaction, StudentPackage, UserNotification
from meupersonal.services.asaas_service import ASAAS_SANDBOX_URL, AsaasService, get_asaas_service


class FakeAsaas:
    """Stands in for the gateway; records the charges it was asked to create"""

    def __init__(self, fail_payment=False):
        self.fail_payment = fail_payment
        self.payments = []

    async def create_customer(self, name, email, cpf_cnpj=None, phone=None):
        return {"success": True, "data": {"id": "cus_test_1"}}

    async def create_payment(self, **kwargs):
        if self.fail_payment:
            return {"success": False, "error": "gateway down"}
        self.payments.append(kwargs)
        return {
            "success": True,
            "data": {"id": f"pay_{len(self.payments)}", "invoiceUrl": "https://sandbox.asaas.com/i/abc"},
        }


@pytest.fixture
def fake_asaas():
    fake = FakeAsaas()
    app.dependency_overrides[get_asaas_service] = lambda: fake
    return fake


@pytest.fixture
def student_package(db, network):
    _, academy = network
    package = StudentPackage(unit_id=academy.id, title="Pacote 10 aulas", classes_qty=10, price_cents=45000)
    db.add(package)
    db.commit()
    return package


@pytest.fixture
def hour_package(db, network):
    _, academy = network
    package = HourPackage(unit_id=academy.id, title="Pacote 5 horas", hours_qty=5, price_cents=20000)
    db.add(package)
    db.commit()
    return package


def _checkout(client, user, package, academy, kind="student"):
    return client.post(
        f"/api/packages/{kind}/checkout",
        json={"package_id": package.id, "unit_id": academy.id, "payment_method": "PIX"},
        headers=auth_headers(user),
    )


def _webhook(client, payment_id, status, event="PAYMENT_CONFIRMED", external_reference=None):
    return client.post(
        "/api/webhooks/asaas",
        json={
            "event": event,
            "payment": {"id": payment_id, "status": status, "externalReference": external_reference},
        },
    )


# ============================================================================
# STATUS MAPPING
# ============================================================================


@pytest.mark.parametrize(
    "provider_status,expected",
    [
        ("CONFIRMED", "PAID"),
        ("RECEIVED", "PAID"),
        ("RECEIVED_IN_CASH", "PAID"),
        ("OVERDUE", "FAILED"),
        ("DELETED", "CANCELED"),
        ("REFUNDED", "REFUNDED"),
        ("AWAITING_RISK_ANALYSIS", "PENDING"),
        (None, "PENDING"),
    ],
)
def test_map_provider_status(provider_status, expected):
    assert map_provider_status(provider_status) == expected


# ============================================================================
# CATALOG & CHECKOUT
# ============================================================================


def test_catalog_lists_active_packages(client, db, network, student, student_package):
    _, academy = network
    db.add(StudentPackage(unit_id=academy.id, title="Inativo", classes_qty=1, price_cents=100, status="inactive"))
    db.commit()

    response = client.get("/api/packages/student", params={"unit_id": academy.id}, headers=auth_headers(student))
    assert response.status_code == 200
    titles = [p["title"] for p in response.json()["packages"]]
    assert titles == ["Pacote 10 aulas"]


def test_student_checkout_creates_pending_intent(client, db, network, student, student_package, fake_asaas):
    _, academy = network
    response = _checkout(client, student, student_package, academy)
    assert response.status_code == 201, response.text
    body = response.json()
    assert body["checkout_url"] == "https://sandbox.asaas.com/i/abc"
    intent = body["payment_intent"]
    assert intent["status"] == "PENDING"
    assert intent["provider_id"] == "pay_1"
    assert intent["amount_cents"] == 45000

    charge = fake_asaas.payments[0]
    assert charge["value"] == 450.0
    assert charge["description"] == "Pacote 10 aulas - 10 aulas"
    assert charge["external_reference"] == f"STUDENT_PACKAGE_{intent['id']}"


def test_teacher_cannot_use_student_checkout(client, network, teacher, student_package, fake_asaas):
    _, academy = network
    assert _checkout(client, teacher, student_package, academy).status_code == 403


def test_gateway_failure_marks_intent_failed(client, db, network, student, student_package):
    _, academy = network
    app.dependency_overrides[get_asaas_service] = lambda: FakeAsaas(fail_payment=True)

    response = _checkout(client, student, student_package, academy)
    assert response.status_code == 502
    assert response.json()["code"] == "PAYMENT_GATEWAY_ERROR"
    assert db.query(PaymentIntent).one().status == "FAILED"


def test_unknown_package_is_404(client, network, student, student_package, fake_asaas):
    _, academy = network
    response = client.post(
        "/api/packages/student/checkout",
        json={"package_id": academy.id, "unit_id": academy.id},
        headers=auth_headers(student),
    )
    assert response.status_code == 404
    assert response.json()["code"] == "PACKAGE_NOT_FOUND"


# ============================================================================
# WEBHOOK
# ============================================================================


def test_confirmed_webhook_credits_once(client, db, network, student, student_package, fake_asaas):
    _, academy = network
    _checkout(client, student, student_package, academy)

    first = _webhook(client, "pay_1", "CONFIRMED")
    assert first.status_code == 200
    assert first.json()["received"] is True
    assert first.json()["status"] == "PAID"

    second = _webhook(client, "pay_1", "RECEIVED", event="PAYMENT_RECEIVED")
    assert second.json()["processed"] is False
    assert second.json()["reason"] == "already_processed"

    db.expire_all()
    assert BalanceService(db).get_student_balance(student.id).total_purchased == 10
    assert db.query(StudentClassTransaction).filter_by(type="PURCHASE").count() == 1
    assert db.query(UserNotification).filter_by(user_id=student.id, type="payment_confirmed").count() == 1


def test_late_delete_does_not_reopen_a_paid_intent(client, db, network, student, student_package, fake_asaas):
    _, academy = network
    _checkout(client, student, student_package, academy)
    _webhook(client, "pay_1", "CONFIRMED")

    deleted = _webhook(client, "pay_1", "DELETED", event="PAYMENT_DELETED")
    assert deleted.json()["processed"] is False
    replayed = _webhook(client, "pay_1", "RECEIVED", event="PAYMENT_RECEIVED")
    assert replayed.json()["processed"] is False

    db.expire_all()
    assert db.query(PaymentIntent).one().status == "PAID"
    assert BalanceService(db).get_student_balance(student.id).total_purchased == 10
    assert db.query(StudentClassTransaction).filter_by(type="PURCHASE").count() == 1


def test_intent_is_credited_once_even_if_it_returns_to_paid(db, network, student, student_package):
    _, academy = network
    intent = PaymentIntent(
        type="STUDENT_PACKAGE",
        provider_id="pay_9",
        actor_user_id=student.id,
        unit_id=academy.id,
        amount_cents=student_package.price_cents,
        status="PENDING",
        payload_json={"package_id": student_package.id, "classes_qty": 10},
    )
    db.add(intent)
    db.commit()
    service = PaymentIntentService(db)

    assert service.process_webhook("pay_9", "CONFIRMED")["processed"] is True
    intent.status = "CANCELED"
    db.commit()
    assert service.process_webhook("pay_9", "RECEIVED")["processed"] is True

    db.expire_all()
    assert BalanceService(db).get_student_balance(student.id).total_purchased == 10


def test_professor_hours_are_credited(client, db, network, teacher, hour_package, fake_asaas):
    _, academy = network
    response = _checkout(client, teacher, hour_package, academy, kind="professor")
    assert response.status_code == 201

    _webhook(client, "pay_1", "RECEIVED", event="PAYMENT_RECEIVED")
    db.expire_all()
    assert BalanceService(db).get_professor_balance(teacher.id).available_hours == 5


def test_refund_after_payment_revokes(client, db, network, student, student_package, fake_asaas):
    _, academy = network
    _checkout(client, student, student_package, academy)
    _webhook(client, "pay_1", "CONFIRMED")

    response = _webhook(client, "pay_1", "REFUNDED", event="PAYMENT_REFUNDED")
    assert response.json()["status"] == "REFUNDED"

    db.expire_all()
    assert BalanceService(db).get_student_balance(student.id).available == 0
    assert db.query(StudentClassTransaction).filter_by(type="REVOKE").one().qty == 10
    late = _webhook(client, "pay_1", "CONFIRMED")
    assert late.json()["processed"] is False


def test_webhook_matches_by_external_reference(client, db, network, student, student_package, fake_asaas):
    _, academy = network
    intent_id = _checkout(client, student, student_package, academy).json()["payment_intent"]["id"]

    response = _webhook(client, "pay_other", "CONFIRMED", external_reference=f"STUDENT_PACKAGE_{intent_id}")
    assert response.json()["intent_id"] == intent_id


def test_unknown_payment_is_skipped(client):
    response = _webhook(client, "pay_missing", "CONFIRMED")
    assert response.status_code == 200
    assert response.json() == {"received": True, "processed": False, "reason": "intent_not_found"}


def test_malformed_webhook_is_400(client):
    response = client.post("/api/webhooks/asaas", content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    response = client.post("/api/webhooks/asaas", json={"event": "PAYMENT_CONFIRMED"})
    assert response.status_code == 400


def test_webhook_token_is_enforced_when_configured(client, monkeypatch):
    monkeypatch.setattr("meupersonal.webhook_security.ASAAS_WEBHOOK_TOKEN", "s3cret")
    response = _webhook(client, "pay_1", "CONFIRMED")
    assert response.status_code == 401
    response = client.post(
        "/api/webhooks/asaas",
        json={"event": "PAYMENT_CONFIRMED", "payment": {"id": "pay_1", "status": "CONFIRMED"}},
        headers={"asaas-access-token": "s3cret"},
    )
    assert response.status_code == 200


def test_balance_and_transactions_endpoints(client, db, network, student):
    BalanceService(db).purchase_student_classes(student.id, 3)
    db.commit()

    balance = client.get("/api/packages/student/balance", headers=auth_headers(student))
    assert balance.json()["balance"]["available_classes"] == 3

    transactions = client.get("/api/packages/student/transactions", headers=auth_headers(student))
    assert transactions.headers["X-Total-Count"] == "1"
    assert transactions.json()["data"][0]["qty"] == 3


# ============================================================================
# GATEWAY CLIENT
# ============================================================================


async def test_asaas_client_sends_access_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["token"] = request.headers.get("access_token")
        return httpx.Response(200, json={"id": "cus_9"})

    service = AsaasService(api_key="key-123", transport=httpx.MockTransport(handler))
    result = await service.create_customer("Ana", "ana@example.com")

    assert result == {"success": True, "data": {"id": "cus_9"}}
    assert seen["token"] == "key-123"
    assert seen["url"].startswith(ASAAS_SANDBOX_URL)


async def test_asaas_client_reports_errors():
    def handler(request):
        return httpx.Response(400, json={"errors": [{"description": "CPF inválido"}]})

    service = AsaasService(api_key="key", transport=httpx.MockTransport(handler))
    result = await service.get_payment("pay_1")
    assert result["success"] is False
    assert result["error"] == "CPF inválido"


async def test_asaas_client_without_key_does_not_call_out():
    result = await AsaasService(api_key=None).get_customer("cus_1")
    assert result["success"] is False


def test_service_skips_unknown_intent(db):
    assert PaymentIntentService(db, asaas=FakeAsaas()).process_webhook("nope", "CONFIRMED") == {
        "processed": False,
        "reason": "intent_not_found",
    }
