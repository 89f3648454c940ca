"""
NOWPayments Webhook Handler

Entry point for asynchronous escrow-fee confirmations. Every delivery must
carry a valid x-nowpayments-sig header; the engine makes repeated deliveries
of the same (payment id, status) a successful no-op.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from config import Config
from handlers.deals import get_deal_engine
from services.deal_lifecycle_engine import DealLifecycleEngine, FeePaymentEvent
from services.webhook_security_service import WebhookSecurityService

logger = logging.getLogger(__name__)

router = APIRouter()


def _verify_nowpayments_request(body: bytes, signature: Optional[str], client_ip: str) -> dict:
    validation = WebhookSecurityService.validate_nowpayments_webhook(
        body, signature, Config.NOWPAYMENTS_IPN_SECRET
    )
    if not validation["valid"]:
        logger.error(f"🚨 NOWPAYMENTS_WEBHOOK_REJECTED from {client_ip}: {validation['error']}")
        raise HTTPException(status_code=401, detail=validation["error"])
    return validation["payload"]


@router.post("/webhooks/nowpayments")
async def nowpayments_webhook(
    request: Request,
    x_nowpayments_sig: Optional[str] = Header(None, alias="x-nowpayments-sig"),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    body = await request.body()
    client_ip = WebhookSecurityService.get_client_ip(request)
    logger.info(f"📥 NOWPAYMENTS_WEBHOOK: received {len(body)} bytes from {client_ip}")

    payload = _verify_nowpayments_request(body, x_nowpayments_sig, client_ip)
    event = FeePaymentEvent.from_nowpayments(payload)

    # The engine is synchronous; keep it off the event loop.
    result = await run_in_threadpool(engine.apply_fee_payment_event, event)

    if result["duplicate"]:
        return {"success": True, "message": "Webhook already processed", **result}
    return {"success": True, "message": "Webhook processed successfully", **result}
