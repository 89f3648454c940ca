"""
HTTP surface of the deal service: identity header handling, error rendering
and the full lifecycle driven through the API.
"""

import pytest

from services.nowpayments_service import NowPaymentsAPIError

from tests.conftest import AGENT_ID, BUYER_ID, SELLER_ID, STRANGER_ID


def headers_for(user_id) -> dict:
    return {"X-User-Id": str(user_id)}


CREATE_BODY = {
    "seller_id": SELLER_ID,
    "channel_id": "listing-42",
    "channel_title": "Cooking With Sam",
    "channel_price": "250.00",
    "escrow_fee": "12.00",
    "payment_methods": [{"id": "paypal", "name": "PayPal", "category": "online"}],
    "transaction_type": "safest",
    "listing_platform": "youtube",
}


@pytest.fixture
def created_deal_id(api_client):
    response = api_client.post("/deals", json=CREATE_BODY, headers=headers_for(BUYER_ID))
    assert response.status_code == 201
    return response.json()["deal"]["id"]


class TestIdentity:

    def test_missing_identity_is_unauthenticated(self, api_client):
        response = api_client.post("/deals", json=CREATE_BODY)

        assert response.status_code == 401
        assert response.json() == {
            "success": False, "error": "unauthenticated", "message": "Authentication required",
        }

    def test_non_numeric_identity_is_unauthenticated(self, api_client, created_deal_id):
        response = api_client.get(f"/deals/{created_deal_id}", headers={"X-User-Id": "alice"})
        assert response.status_code == 401

    def test_reads_require_identity(self, api_client, created_deal_id):
        assert api_client.get(f"/deals/{created_deal_id}/status").status_code == 401


class TestCreateAndRead:

    def test_create_deal(self, api_client):
        response = api_client.post("/deals", json=CREATE_BODY, headers=headers_for(BUYER_ID))

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Deal created successfully"
        assert body["deal"]["status"] == "pending"
        assert body["deal"]["buyer_id"] == BUYER_ID
        assert body["deal"]["channel_price"] == "250.00"

    def test_create_deal_validation_error(self, api_client):
        body = dict(CREATE_BODY, payment_methods=[])
        response = api_client.post("/deals", json=body, headers=headers_for(BUYER_ID))

        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert response.json()["success"] is False

    def test_malformed_body(self, api_client):
        response = api_client.post("/deals", json=["not", "an", "object"], headers=headers_for(BUYER_ID))
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_get_deal_includes_payment_methods(self, api_client, created_deal_id):
        response = api_client.get(f"/deals/{created_deal_id}", headers=headers_for(SELLER_ID))

        assert response.status_code == 200
        deal = response.json()["deal"]
        assert deal["role"] == "seller"
        assert deal["payment_methods"] == [{"id": "paypal", "name": "PayPal", "category": "online"}]
        assert deal["available_actions"] == ["seller_agree"]

    def test_unknown_deal_is_not_found(self, api_client):
        response = api_client.get("/deals/4242", headers=headers_for(BUYER_ID))
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_stranger_is_forbidden(self, api_client, created_deal_id):
        response = api_client.get(f"/deals/{created_deal_id}/status", headers=headers_for(STRANGER_ID))
        assert response.status_code == 403
        assert response.json()["error"] == "forbidden"

    def test_list_endpoints(self, api_client, created_deal_id):
        buyer_deals = api_client.get("/deals/buyer", headers=headers_for(BUYER_ID)).json()["deals"]
        seller_deals = api_client.get("/deals/seller", headers=headers_for(BUYER_ID)).json()["deals"]
        mine = api_client.get("/deals", headers=headers_for(SELLER_ID)).json()["deals"]

        assert [d["id"] for d in buyer_deals] == [created_deal_id]
        assert seller_deals == []
        assert [d["id"] for d in mine] == [created_deal_id]

    def test_history(self, api_client, created_deal_id):
        body = api_client.get(f"/deals/{created_deal_id}/history", headers=headers_for(BUYER_ID)).json()
        assert [e["action_type"] for e in body["history"]] == ["created"]


class TestFeeQuote:

    def test_percentage_fee(self, api_client):
        quote = api_client.get("/deals/fee-quote", params={"price": "100"}).json()["quote"]
        assert quote["channel_price"] == "100.00"
        assert quote["escrow_fee"] == "4.80"
        assert quote["minimum_applied"] is False

    def test_minimum_fee(self, api_client):
        quote = api_client.get("/deals/fee-quote", params={"price": "10"}).json()["quote"]
        assert quote["escrow_fee"] == "3.00"
        assert quote["minimum_applied"] is True

    @pytest.mark.parametrize("params", [{}, {"price": "abc"}, {"price": "-1"}])
    def test_invalid_price(self, api_client, params):
        response = api_client.get("/deals/fee-quote", params=params)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"


class TestLifecycleOverHttp:

    def test_youtube_deal_end_to_end(self, api_client, created_deal_id, clock):
        deal_id = created_deal_id
        buyer, seller, agent = headers_for(BUYER_ID), headers_for(SELLER_ID), headers_for(AGENT_ID)

        forbidden = api_client.put(f"/deals/{deal_id}/seller-agree", headers=buyer)
        assert forbidden.status_code == 403

        agreed = api_client.put(f"/deals/{deal_id}/seller-agree", headers=seller)
        assert agreed.json()["deal"]["status"] == "terms_agreed"

        mismatch = api_client.post(
            f"/deals/{deal_id}/pay-transaction-fee",
            json={"payment_method": "card", "payer_type": "seller"},
            headers=buyer,
        )
        assert mismatch.status_code == 400
        assert mismatch.json()["error"] == "role_mismatch"

        paid = api_client.post(
            f"/deals/{deal_id}/pay-transaction-fee",
            json={"payment_method": "card", "payer_type": "buyer"},
            headers=buyer,
        )
        assert paid.json()["message"] == "Transaction fee paid successfully"
        assert paid.json()["deal"]["status"] == "agent_access_pending"

        repeat = api_client.post(
            f"/deals/{deal_id}/pay-transaction-fee",
            json={"payment_method": "card", "payer_type": "buyer"},
            headers=buyer,
        )
        assert repeat.status_code == 400
        assert repeat.json()["error"] == "already_done"

        rights = api_client.post(f"/deals/{deal_id}/confirm-rights", headers=seller)
        assert rights.json()["message"] == "Rights confirmed, holding period started"
        assert rights.json()["deal"]["status"] == "waiting_holding_period"

        clock.advance(hours=1)
        early = api_client.post(f"/deals/{deal_id}/confirm-primary-owner", headers=seller)
        assert early.status_code == 400
        assert early.json()["error"] == "timer_not_elapsed"
        assert early.json()["remaining_seconds"] == 167 * 3600
        assert early.json()["holding_period_expires_at"].startswith("2025-01-13T12:00:00")

        clock.advance(days=7)
        promoted = api_client.post(f"/deals/{deal_id}/mark-primary-owner-made", headers=agent)
        assert promoted.status_code == 200
        assert promoted.json()["deal"]["primary_owner_confirmed_by"] == "admin"

        wrong_side = api_client.post(f"/deals/{deal_id}/confirm-payment-to-seller", headers=seller)
        assert wrong_side.status_code == 403

        api_client.post(f"/deals/{deal_id}/confirm-payment-to-seller", headers=buyer)
        done = api_client.post(f"/deals/{deal_id}/seller-confirmed-payment", headers=seller)
        assert done.json()["deal"]["status"] == "seller_confirmed_payment"
        assert done.json()["deal"]["is_complete"] is True

    def test_crypto_fee_over_http(self, api_client, created_deal_id):
        api_client.put(f"/deals/{created_deal_id}/seller-agree", headers=headers_for(SELLER_ID))
        response = api_client.post(
            f"/deals/{created_deal_id}/pay-transaction-fee",
            json={"payment_method": "cryptocurrency", "payer_type": "seller", "pay_currency": "usdttrc20"},
            headers=headers_for(SELLER_ID),
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Payment created, waiting for confirmation"
        assert response.json()["deal"]["status"] == "payment_pending"

        polled = api_client.get(f"/deals/{created_deal_id}/crypto-payment", headers=headers_for(BUYER_ID))
        assert polled.json()["payment"]["pay_currency"] == "usdttrc20"

    def test_processor_outage_is_a_server_error(self, api_client, created_deal_id, crypto_client):
        crypto_client.create_payment.side_effect = NowPaymentsAPIError("HTTP 503: maintenance")
        api_client.put(f"/deals/{created_deal_id}/seller-agree", headers=headers_for(SELLER_ID))

        response = api_client.post(
            f"/deals/{created_deal_id}/pay-transaction-fee",
            json={"payment_method": "crypto", "payer_type": "buyer"},
            headers=headers_for(BUYER_ID),
        )

        assert response.status_code == 500
        assert response.json()["success"] is False
        assert response.json()["error"] == "payment_rail_error"
        status = api_client.get(f"/deals/{created_deal_id}/status", headers=headers_for(BUYER_ID))
        assert status.json()["status"] == "terms_agreed"

    def test_mark_primary_owner_requires_agent(self, api_client, created_deal_id):
        response = api_client.post(
            f"/deals/{created_deal_id}/mark-primary-owner-made", headers=headers_for(SELLER_ID)
        )
        assert response.status_code == 403
        assert response.json()["message"] == "Admin access required"


class TestAdminListing:

    def test_admin_lists_and_filters(self, api_client, created_deal_id):
        response = api_client.get("/admin/deals", headers=headers_for(AGENT_ID))
        assert response.status_code == 200
        assert [d["id"] for d in response.json()["deals"]] == [created_deal_id]
        assert "waiting_holding_period" in response.json()["statuses"]

        filtered = api_client.get("/admin/deals", params={"status": "terms_agreed"}, headers=headers_for(AGENT_ID))
        assert filtered.json()["deals"] == []

    def test_non_admin_rejected(self, api_client):
        response = api_client.get("/admin/deals", headers=headers_for(BUYER_ID))
        assert response.status_code == 403


class TestHealth:

    def test_health(self, api_client):
        response = api_client.get("/health")
        assert response.status_code == 200
        assert response.json()["database"] == "connected"
