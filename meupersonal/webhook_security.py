"""
Webhook Security Module

Asaas authenticates its webhook calls with a shared token sent in the
`asaas-access-token` header. The comparison is constant-time and every
rejection is logged for auditing.
"""

import hmac
import logging
from typing import Optional

from fastapi import HTTPException, Request

from .config import ASAAS_WEBHOOK_TOKEN, IS_PRODUCTION

logger = logging.getLogger(__name__)

ASAAS_TOKEN_HEADER = "asaas-access-token"


class WebhookSignatureError(Exception):
    """Raised when webhook authentication fails"""

    pass


def constant_time_compare(a: Optional[str], b: Optional[str]) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def verify_asaas_token(received: Optional[str], expected: Optional[str] = None) -> None:
    """
    Raises:
        WebhookSignatureError: token missing or different from the configured one
    """
    expected = expected or ASAAS_WEBHOOK_TOKEN
    if not expected:
        if IS_PRODUCTION:
            raise WebhookSignatureError("ASAAS_WEBHOOK_TOKEN not configured")
        logger.warning("⚠️ ASAAS_WEBHOOK_TOKEN not set - accepting unauthenticated webhook (dev only)")
        return
    if not received:
        raise WebhookSignatureError("Missing webhook token")
    if not constant_time_compare(received, expected):
        raise WebhookSignatureError("Invalid webhook token")


async def require_asaas_webhook_token(request: Request) -> None:
    """FastAPI dependency guarding the Asaas webhook endpoint"""
    try:
        verify_asaas_token(request.headers.get(ASAAS_TOKEN_HEADER))
    except WebhookSignatureError as e:
        client_ip = request.client.host if request.client else "unknown"
        logger.warning(f"🚫 Asaas webhook rejected from {client_ip}: {e}")
        raise HTTPException(status_code=401, detail={"error": "Webhook não autorizado", "code": "INVALID_WEBHOOK_TOKEN"}) from e
