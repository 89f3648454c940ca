"""
Escrow Fee Payment Rails
Adapter interface over the settlement rails used to collect the escrow fee.

A rail either confirms the charge within the request (synchronous) or only
opens an invoice whose confirmation arrives later through a webhook
(asynchronous). The engine treats both through the same interface and decides
from the result which milestones it may set.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import (
    CryptoPayment, CryptoPaymentStatus, Deal, IN_PROGRESS_CRYPTO_STATUSES, PayerRole, PaymentRail
)
from services.nowpayments_service import NowPaymentsAPIError, NowPaymentsService
from utils.exception_handler import PaymentRailError, ValidationError
from utils.helpers import generate_order_id

logger = logging.getLogger(__name__)


@dataclass
class FeeCollectionRequest:
    deal: Deal
    payer_role: PayerRole
    actor_id: int
    now: datetime
    pay_currency: Optional[str] = None


@dataclass
class FeeCollectionResult:
    """What a rail reports back to the engine"""
    rail: PaymentRail
    confirmed: bool
    reference: Optional[str] = None
    payment: Optional[CryptoPayment] = None
    reused_existing: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "rail": self.rail.value,
            "confirmed": self.confirmed,
            "reference": self.reference,
        }
        if self.payment is not None:
            data["payment"] = serialize_crypto_payment(self.payment)
            data["reused_existing"] = self.reused_existing
        return data


def serialize_crypto_payment(payment: CryptoPayment) -> Dict[str, Any]:
    return {
        "payment_id": payment.provider_payment_id,
        "order_id": payment.order_id,
        "payment_status": payment.payment_status,
        "price_amount": str(payment.price_amount),
        "price_currency": payment.price_currency,
        "pay_currency": payment.pay_currency,
        "pay_amount": str(payment.pay_amount) if payment.pay_amount is not None else None,
        "payment_url": payment.payment_url,
    }


class FeePaymentRail(ABC):
    """Base class for escrow-fee settlement rails"""

    rail: PaymentRail

    @abstractmethod
    def collect(self, session: Session, request: FeeCollectionRequest) -> FeeCollectionResult:
        """
        Collect (or start collecting) the escrow fee for a deal.

        Runs inside the engine's transaction with the deal row locked. Raises
        PaymentRailError when the rail cannot charge or open an invoice.
        """

    @property
    def is_synchronous(self) -> bool:
        return False


# (deal, payer role, amount) -> processor reference. Raises on decline.
CardCharger = Callable[[Deal, PayerRole, Decimal], str]


def approve_card_charge(deal: Deal, payer_role: PayerRole, amount: Decimal) -> str:
    """
    Default charger: the card charge is taken by the client-side checkout and the
    request itself is the confirmation, so only a reference is recorded.
    """
    return f"card_{deal.id}_{payer_role.value}"


class CardRail(FeePaymentRail):
    """Synchronous rail: the charge is confirmed in the same request"""

    rail = PaymentRail.CARD

    def __init__(self, charger: Optional[CardCharger] = None):
        self.charger = charger or approve_card_charge

    @property
    def is_synchronous(self) -> bool:
        return True

    def collect(self, session: Session, request: FeeCollectionRequest) -> FeeCollectionResult:
        deal = request.deal
        try:
            reference = self.charger(deal, request.payer_role, Decimal(deal.escrow_fee))
        except PaymentRailError:
            raise
        except Exception as e:
            logger.error(f"❌ CARD_CHARGE_FAILED: deal {deal.id}: {e}", exc_info=True)
            raise PaymentRailError(f"Card payment failed: {e}") from e

        logger.info(f"💳 CARD_CHARGED: deal {deal.id} fee ${deal.escrow_fee} by {request.payer_role.value}")
        return FeeCollectionResult(rail=self.rail, confirmed=True, reference=reference)


class CryptoRail(FeePaymentRail):
    """Asynchronous rail: opens a NOWPayments invoice, confirmation comes by webhook"""

    rail = PaymentRail.CRYPTO

    def __init__(self, client: Optional[NowPaymentsService] = None):
        self._client = client

    @property
    def client(self) -> NowPaymentsService:
        if self._client is None:
            self._client = NowPaymentsService()
        return self._client

    @staticmethod
    def find_in_progress_payment(session: Session, deal_id: int) -> Optional[CryptoPayment]:
        return session.execute(
            select(CryptoPayment)
            .where(
                CryptoPayment.deal_id == deal_id,
                CryptoPayment.payment_status.in_(IN_PROGRESS_CRYPTO_STATUSES),
            )
            .order_by(CryptoPayment.created_at.desc(), CryptoPayment.id.desc())
        ).scalars().first()

    def collect(self, session: Session, request: FeeCollectionRequest) -> FeeCollectionResult:
        deal = request.deal

        existing = self.find_in_progress_payment(session, deal.id)
        if existing is not None:
            logger.info(
                f"♻️ CRYPTO_INVOICE_REUSED: deal {deal.id} payment {existing.provider_payment_id} "
                f"still {existing.payment_status}"
            )
            return FeeCollectionResult(
                rail=self.rail,
                confirmed=False,
                reference=existing.provider_payment_id,
                payment=existing,
                reused_existing=True,
            )

        order_id = generate_order_id(deal.id, request.now.timestamp())
        try:
            data = self.client.create_payment(
                price_amount=Decimal(deal.escrow_fee),
                order_id=order_id,
                order_description=f"Escrow fee for deal #{deal.transaction_id}",
                pay_currency=request.pay_currency,
                customer_email=deal.buyer_email if request.payer_role == PayerRole.BUYER else None,
            )
        except NowPaymentsAPIError as e:
            raise PaymentRailError(f"Could not create crypto payment: {e}") from e

        payment = CryptoPayment(
            deal_id=deal.id,
            provider_payment_id=str(data["payment_id"]),
            order_id=data.get("order_id") or order_id,
            payer_role=request.payer_role.value,
            initiated_by=request.actor_id,
            payment_status=data.get("payment_status") or CryptoPaymentStatus.WAITING.value,
            price_amount=Decimal(deal.escrow_fee),
            price_currency=data.get("price_currency") or "usd",
            pay_currency=data.get("pay_currency"),
            pay_amount=Decimal(str(data["pay_amount"])) if data.get("pay_amount") is not None else None,
            payment_url=data.get("invoice_url") or data.get("pay_address"),
            provider_payload=data,
            created_at=request.now,
            updated_at=request.now,
        )
        session.add(payment)
        logger.info(f"🪙 CRYPTO_INVOICE_OPENED: deal {deal.id} order {payment.order_id}")
        return FeeCollectionResult(
            rail=self.rail, confirmed=False, reference=payment.provider_payment_id, payment=payment
        )


class PaymentRailRegistry:
    """Maps the client-facing payment method name onto a rail"""

    ALIASES = {
        "card": PaymentRail.CARD,
        "stripe": PaymentRail.CARD,
        "credit_card": PaymentRail.CARD,
        "crypto": PaymentRail.CRYPTO,
        "cryptocurrency": PaymentRail.CRYPTO,
        "nowpayments": PaymentRail.CRYPTO,
    }

    def __init__(self, rails: Optional[Iterable[FeePaymentRail]] = None):
        rails = list(rails) if rails is not None else [CardRail(), CryptoRail()]
        self._rails: Dict[PaymentRail, FeePaymentRail] = {r.rail: r for r in rails}

    def resolve(self, payment_method: Optional[str]) -> FeePaymentRail:
        key = (payment_method or "").strip().lower()
        rail = self.ALIASES.get(key)
        if rail is None or rail not in self._rails:
            raise ValidationError(
                f"Unsupported payment method '{payment_method}'",
                supported=sorted(k for k, v in self.ALIASES.items() if v in self._rails),
            )
        return self._rails[rail]
