"""
Asaas payment gateway client
Every call returns {"success": True, "data": ...} or {"success": False, "error": ...}
so callers decide how a gateway failure maps onto their own state.
"""

import logging
from datetime import date
from typing import Any, Optional

import httpx

from ..config import ASAAS_API_KEY, ASAAS_ENV, ASAAS_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

ASAAS_PRODUCTION_URL = "https://api.asaas.com/v3"
ASAAS_SANDBOX_URL = "https://sandbox.asaas.com/api/v3"

BILLING_TYPES = ("PIX", "BOLETO", "CREDIT_CARD")


def get_asaas_base_url(env: str = ASAAS_ENV) -> str:
    return ASAAS_PRODUCTION_URL if env == "production" else ASAAS_SANDBOX_URL


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    errors = body.get("errors") if isinstance(body, dict) else None
    if errors:
        return "; ".join(e.get("description", str(e)) for e in errors)
    return f"HTTP {response.status_code}"


class AsaasService:
    """Thin async client over the Asaas REST API"""

    def __init__(
        self,
        api_key: Optional[str] = ASAAS_API_KEY,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = ASAAS_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key
        self.base_url = base_url or get_asaas_base_url()
        self.transport = transport
        self.timeout = timeout

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> dict[str, Any]:
        if not self.api_key:
            logger.error("❌ ASAAS_API_KEY not configured")
            return {"success": False, "error": "Asaas não configurado"}

        headers = {"access_token": self.api_key, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"❌ Asaas {method} {path} failed: {e}")
            return {"success": False, "error": str(e)}

        if response.status_code >= 400:
            message = _error_message(response)
            logger.error(f"❌ Asaas {method} {path} returned {response.status_code}: {message}")
            return {"success": False, "error": message, "status_code": response.status_code}

        return {"success": True, "data": response.json()}

    # ========================================================================
    # CUSTOMERS
    # ========================================================================

    async def create_customer(
        self, name: str, email: str, cpf_cnpj: Optional[str] = None, phone: Optional[str] = None
    ) -> dict[str, Any]:
        payload = {"name": name, "email": email}
        if cpf_cnpj:
            payload["cpfCnpj"] = cpf_cnpj
        if phone:
            payload["mobilePhone"] = phone
        result = await self._request("POST", "/customers", json=payload)
        if result["success"]:
            logger.info(f"✅ Asaas customer created: {result['data'].get('id')}")
        return result

    async def get_customer(self, customer_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/customers/{customer_id}")

    # ========================================================================
    # PAYMENTS
    # ========================================================================

    async def create_payment(
        self,
        customer_id: str,
        value: float,
        due_date: date,
        description: str,
        external_reference: str,
        billing_type: str = "PIX",
    ) -> dict[str, Any]:
        if billing_type not in BILLING_TYPES:
            return {"success": False, "error": f"Forma de pagamento inválida: {billing_type}"}
        payload = {
            "customer": customer_id,
            "billingType": billing_type,
            "value": round(value, 2),
            "dueDate": due_date.isoformat(),
            "description": description,
            "externalReference": external_reference,
        }
        result = await self._request("POST", "/payments", json=payload)
        if result["success"]:
            logger.info(f"✅ Asaas payment created: {result['data'].get('id')} ({billing_type} R$ {value:.2f})")
        return result

    async def get_payment(self, payment_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/payments/{payment_id}")

    async def refund_payment(self, payment_id: str, value: Optional[float] = None) -> dict[str, Any]:
        payload = {"value": round(value, 2)} if value is not None else {}
        return await self._request("POST", f"/payments/{payment_id}/refund", json=payload)

    # ========================================================================
    # SUBSCRIPTIONS
    # ========================================================================

    async def create_subscription(
        self,
        customer_id: str,
        value: float,
        next_due_date: date,
        description: str,
        cycle: str = "MONTHLY",
        billing_type: str = "PIX",
    ) -> dict[str, Any]:
        payload = {
            "customer": customer_id,
            "billingType": billing_type,
            "value": round(value, 2),
            "nextDueDate": next_due_date.isoformat(),
            "cycle": cycle,
            "description": description,
        }
        return await self._request("POST", "/subscriptions", json=payload)

    async def cancel_subscription(self, subscription_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/subscriptions/{subscription_id}")

    # ========================================================================
    # WEBHOOKS
    # ========================================================================

    @staticmethod
    def parse_webhook(payload: dict[str, Any]) -> dict[str, Any]:
        """Extract the fields the payment flow needs from a webhook body"""
        payment = payload.get("payment") or {}
        if not payload.get("event") or not payment.get("id"):
            return {"success": False, "error": "Payload de webhook inválido"}
        return {
            "success": True,
            "data": {
                "event": payload["event"],
                "payment_id": payment["id"],
                "status": payment.get("status"),
                "value": payment.get("value"),
                "customer": payment.get("customer"),
                "external_reference": payment.get("externalReference"),
            },
        }


def get_asaas_service() -> AsaasService:
    return AsaasService()
