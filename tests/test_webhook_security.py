"""NOWPayments IPN signature verification"""

import hashlib
import hmac
import json

from services.webhook_security_service import (
    WebhookSecurityService, canonical_nowpayments_body, compute_nowpayments_signature,
    verify_nowpayments_signature
)

SECRET = "ipn_secret"
PAYLOAD = {"payment_status": "finished", "payment_id": 4242, "order_id": "deal_1_1736164800", "actually_paid": 0.5}


class TestSignature:

    def test_canonical_body_is_key_sorted_and_compact(self):
        assert canonical_nowpayments_body({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'

    def test_signature_is_hmac_sha512_of_canonical_body(self):
        expected = hmac.new(
            SECRET.encode(), canonical_nowpayments_body(PAYLOAD).encode(), hashlib.sha512
        ).hexdigest()
        assert compute_nowpayments_signature(PAYLOAD, SECRET) == expected

    def test_verify(self):
        signature = compute_nowpayments_signature(PAYLOAD, SECRET)
        assert verify_nowpayments_signature(PAYLOAD, signature, SECRET) is True
        assert verify_nowpayments_signature(PAYLOAD, signature.upper(), SECRET) is True
        assert verify_nowpayments_signature(dict(PAYLOAD, actually_paid=5), signature, SECRET) is False
        assert verify_nowpayments_signature(PAYLOAD, signature, None) is False
        assert verify_nowpayments_signature(PAYLOAD, None, SECRET) is False


class TestValidateNowPaymentsWebhook:

    def test_key_order_of_the_raw_body_does_not_matter(self):
        signature = compute_nowpayments_signature(PAYLOAD, SECRET)
        body = json.dumps(dict(reversed(list(PAYLOAD.items()))), indent=2).encode()

        result = WebhookSecurityService.validate_nowpayments_webhook(body, signature, SECRET)

        assert result["valid"] is True
        assert result["payload"] == PAYLOAD

    def test_rejections(self):
        signature = compute_nowpayments_signature(PAYLOAD, SECRET)
        body = json.dumps(PAYLOAD).encode()

        assert WebhookSecurityService.validate_nowpayments_webhook(body, signature, "")["error"] == \
            "Webhook secret not configured"
        assert WebhookSecurityService.validate_nowpayments_webhook(body, None, SECRET)["error"] == \
            "Missing signature header"
        assert WebhookSecurityService.validate_nowpayments_webhook(b"{not json", signature, SECRET)["error"] == \
            "Invalid JSON payload"
        assert WebhookSecurityService.validate_nowpayments_webhook(b"[1, 2]", signature, SECRET)["error"] == \
            "Invalid JSON payload"
        assert WebhookSecurityService.validate_nowpayments_webhook(body, "00" * 64, SECRET)["error"] == \
            "Invalid signature"
