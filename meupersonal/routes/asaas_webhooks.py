"""
Asaas Webhook Handler
Settles payment intents when Asaas reports a payment status change
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ..database import get_db
from ..domain.payments.service import PaymentIntentService
from ..services.asaas_service import AsaasService
from ..webhook_security import require_asaas_webhook_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/asaas", dependencies=[Depends(require_asaas_webhook_token)])
async def handle_asaas_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Handle Asaas payment webhook events

    Events handled (any PAYMENT_* event carries the payment status):
    - PAYMENT_CONFIRMED / PAYMENT_RECEIVED - credit the package
    - PAYMENT_OVERDUE - mark the intent failed
    - PAYMENT_DELETED - mark the intent canceled
    - PAYMENT_REFUNDED - mark refunded and revoke what was credited
    """
    try:
        payload = json.loads(await request.body())
    except json.JSONDecodeError as e:
        logger.warning(f"⚠️ Asaas webhook with invalid JSON: {e}")
        raise HTTPException(status_code=400, detail={"error": "JSON inválido", "code": "INVALID_PAYLOAD"})

    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail={"error": "Payload inválido", "code": "INVALID_PAYLOAD"})

    parsed = AsaasService.parse_webhook(payload)
    if not parsed["success"]:
        logger.warning(f"⚠️ Asaas webhook rejected: {parsed['error']}")
        raise HTTPException(status_code=400, detail={"error": parsed["error"], "code": "INVALID_PAYLOAD"})

    event = parsed["data"]
    logger.info(f"📥 Asaas webhook {event['event']} for payment {event['payment_id']} ({event['status']})")

    if not event["event"].startswith("PAYMENT_"):
        return {"received": True, "processed": False}

    service = PaymentIntentService(db)
    result = service.process_webhook(event["payment_id"], event["status"], event["external_reference"])
    return {"received": True, **result}
