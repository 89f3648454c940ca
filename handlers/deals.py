"""
Deal HTTP Handlers

Thin FastAPI layer over the deal lifecycle engine. The acting identity arrives
from the identity collaborator in the X-User-Id header; the agent claim is
resolved here, once, and handed to the engine as part of ActingParty.
"""

import logging
from decimal import InvalidOperation
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Header, Query

from models import DealStatus
from services.deal_authorization import ActingParty
from services.deal_lifecycle_engine import CreateDealRequest, DealLifecycleEngine
from utils.exception_handler import Unauthenticated, ValidationError
from utils.fee_calculator import FeeCalculator

logger = logging.getLogger(__name__)

router = APIRouter()

_engine: Optional[DealLifecycleEngine] = None


def get_deal_engine() -> DealLifecycleEngine:
    """Process-wide engine; tests swap it through app.dependency_overrides"""
    global _engine
    if _engine is None:
        _engine = DealLifecycleEngine()
    return _engine


def get_acting_party(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> ActingParty:
    if x_user_id is None or not x_user_id.strip():
        return ActingParty(user_id=None)
    try:
        user_id = int(x_user_id.strip())
    except ValueError:
        raise Unauthenticated("Invalid user identity")
    return ActingParty.from_user_id(user_id)


def _ok(message: str, result: Dict[str, Any]) -> Dict[str, Any]:
    return {"success": True, "message": message, **result}


# ----------------------------------------------------------------------------
# Collection routes (declared before /deals/{deal_id})
# ----------------------------------------------------------------------------

@router.post("/deals", status_code=201)
def create_deal(
    payload: Optional[Dict[str, Any]] = Body(None),
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    """Buyer creates a deal"""
    if not actor.authenticated:
        raise Unauthenticated("Authentication required")
    payload = payload or {}
    request = CreateDealRequest(
        seller_id=payload.get("seller_id"),
        channel_id=payload.get("channel_id"),
        channel_title=payload.get("channel_title"),
        channel_price=payload.get("channel_price"),
        escrow_fee=payload.get("escrow_fee"),
        payment_methods=payload.get("payment_methods") or [],
        transaction_type=payload.get("transaction_type") or "safest",
        buyer_email=payload.get("buyer_email"),
        listing_platform=payload.get("listing_platform"),
    )
    result = engine.create_deal(actor, request)
    return _ok("Deal created successfully", result)


@router.get("/deals")
def list_my_deals(
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    return _ok("Deals retrieved", engine.list_deals(actor, "all"))


@router.get("/deals/buyer")
def list_buyer_deals(
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    return _ok("Deals retrieved", engine.list_deals(actor, "buyer"))


@router.get("/deals/seller")
def list_seller_deals(
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    return _ok("Deals retrieved", engine.list_deals(actor, "seller"))


@router.get("/deals/fee-quote")
def fee_quote(price: Optional[str] = Query(None)):
    """Escrow fee quote for a prospective channel price"""
    if price is None:
        raise ValidationError("price is required")
    try:
        amount = FeeCalculator.to_usd(price)
    except (InvalidOperation, ValueError):
        raise ValidationError("price must be a numeric amount")
    if amount <= 0:
        raise ValidationError("price must be greater than 0")
    return _ok("Fee calculated", {"quote": FeeCalculator.get_fee_breakdown(amount)})


@router.get("/admin/deals")
def admin_list_deals(
    status: Optional[str] = Query(None),
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    result = engine.admin_list_deals(actor, status)
    result["statuses"] = [s.value for s in DealStatus]
    return _ok("Deals retrieved", result)


# ----------------------------------------------------------------------------
# Single deal reads
# ----------------------------------------------------------------------------

@router.get("/deals/{deal_id}")
def get_deal(
    deal_id: int,
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    return _ok("Deal retrieved", engine.get_deal(actor, deal_id))


@router.get("/deals/{deal_id}/status")
def get_deal_status(
    deal_id: int,
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    return _ok("Deal status retrieved", engine.get_status(actor, deal_id))


@router.get("/deals/{deal_id}/history")
def get_deal_history(
    deal_id: int,
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    return _ok("Deal history retrieved", engine.get_history(actor, deal_id))


@router.get("/deals/{deal_id}/crypto-payment")
def get_crypto_payment(
    deal_id: int,
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    return _ok("Payment retrieved", engine.latest_crypto_payment(actor, deal_id))


# ----------------------------------------------------------------------------
# Transitions
# ----------------------------------------------------------------------------

@router.put("/deals/{deal_id}/seller-agree")
def seller_agree(
    deal_id: int,
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    return _ok("Deal terms agreed", engine.seller_agree(actor, deal_id))


@router.post("/deals/{deal_id}/pay-transaction-fee")
def pay_transaction_fee(
    deal_id: int,
    payload: Optional[Dict[str, Any]] = Body(None),
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    payload = payload or {}
    result = engine.pay_transaction_fee(
        actor,
        deal_id,
        payment_method=payload.get("payment_method"),
        payer_type=payload.get("payer_type"),
        pay_currency=payload.get("pay_currency"),
    )
    if result["payment"]["confirmed"]:
        message = "Transaction fee paid successfully"
    else:
        message = "Payment created, waiting for confirmation"
    return _ok(message, result)


@router.post("/deals/{deal_id}/confirm-rights")
def confirm_rights(
    deal_id: int,
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    result = engine.confirm_rights(actor, deal_id)
    if result["deal"]["holding_period"]["required"]:
        message = "Rights confirmed, holding period started"
    else:
        message = "Rights confirmed successfully"
    return _ok(message, result)


@router.post("/deals/{deal_id}/confirm-primary-owner")
def confirm_primary_owner(
    deal_id: int,
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    return _ok("Primary owner confirmed", engine.confirm_primary_owner(actor, deal_id))


@router.post("/deals/{deal_id}/mark-primary-owner-made")
def mark_primary_owner_made(
    deal_id: int,
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    """Agent/operator confirms the promotion on the seller's behalf"""
    return _ok("Primary owner confirmed by admin", engine.admin_confirm_primary_owner(actor, deal_id))


@router.post("/deals/{deal_id}/confirm-payment-to-seller")
def confirm_payment_to_seller(
    deal_id: int,
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    return _ok("Payment to seller confirmed", engine.confirm_payment_to_seller(actor, deal_id))


@router.post("/deals/{deal_id}/seller-confirmed-payment")
def seller_confirmed_payment(
    deal_id: int,
    actor: ActingParty = Depends(get_acting_party),
    engine: DealLifecycleEngine = Depends(get_deal_engine),
):
    return _ok("Payment receipt confirmed, deal completed", engine.confirm_payment_received(actor, deal_id))
