"""
Webhook Security Service - signature validation for payment processor callbacks
"""

import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

from fastapi import Request

logger = logging.getLogger(__name__)


def canonical_nowpayments_body(payload: Dict[str, Any]) -> str:
    """Key-sorted compact JSON, the form NOWPayments signs"""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def compute_nowpayments_signature(payload: Dict[str, Any], secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        canonical_nowpayments_body(payload).encode("utf-8"),
        hashlib.sha512,
    ).hexdigest()


def verify_nowpayments_signature(payload: Dict[str, Any], signature: Optional[str], secret: Optional[str]) -> bool:
    """
    Verify an IPN signature (HMAC-SHA512 over the key-sorted JSON body).

    A missing secret or a missing signature never verifies.
    """
    if not secret or not signature:
        return False
    expected = compute_nowpayments_signature(payload, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


class WebhookSecurityService:
    """Centralized webhook security validation service"""

    @classmethod
    def validate_nowpayments_webhook(cls, body: bytes, signature: Optional[str], secret: Optional[str]) -> Dict[str, Any]:
        """
        Validate a NOWPayments IPN delivery.
        Returns: {'valid': bool, 'error': str, 'payload': dict | None}
        """
        if not secret:
            logger.critical("🚨 NOWPAYMENTS_IPN_SECRET not configured - rejecting webhook")
            return {"valid": False, "error": "Webhook secret not configured", "payload": None}

        if not signature:
            logger.warning("🔒 NOWPAYMENTS_WEBHOOK: missing x-nowpayments-sig header")
            return {"valid": False, "error": "Missing signature header", "payload": None}

        try:
            payload = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning(f"🔒 NOWPAYMENTS_WEBHOOK: unparseable body: {e}")
            return {"valid": False, "error": "Invalid JSON payload", "payload": None}

        if not isinstance(payload, dict):
            return {"valid": False, "error": "Invalid JSON payload", "payload": None}

        if not verify_nowpayments_signature(payload, signature, secret):
            logger.error("🚨 NOWPAYMENTS_WEBHOOK: signature verification FAILED")
            return {"valid": False, "error": "Invalid signature", "payload": None}

        return {"valid": True, "error": None, "payload": payload}

    @staticmethod
    def get_client_ip(request: Request) -> str:
        """Client IP, honouring the first X-Forwarded-For hop"""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"
