"""
Deal Lifecycle Engine
Single entry point for every deal transition.

Each mutating operation loads the deal row under a lock, resolves the acting
party's role, validates the transition against the state machine table (plus
the holding-period clock where relevant), applies the milestone flags and the
matching audit entries in one transaction, and only after commit hands the
collected chat notifications to the emitter.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, Generator, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from models import (
    CryptoPayment, CryptoPaymentStatus, Deal, DealAction, DealPaymentMethod, DealStatus,
    PartyRole, PayerRole, PaymentRail, TransactionType, WebhookEventLedger
)
from services.audit_logger import DealAuditTrail, deal_audit_trail
from services.deal_authorization import ActingParty, require_admin, require_authenticated, resolve_role
from services.holding_period import (
    classify_platform, compute_expiry, has_elapsed, holding_period_state, normalize_platform,
    remaining_duration, requires_holding_period
)
from services.notification_service import DealMessageComposer, DealNotification, NotificationEmitter
from services.payment_rails import FeeCollectionRequest, PaymentRailRegistry, serialize_crypto_payment
from utils.atomic_transactions import atomic_transaction, load_deal_for_update
from utils.datetime_helpers import ensure_aware_utc, format_duration, isoformat_or_none, utc_now
from utils.deal_state_machine import DealStateValidator, DealTransition
from utils.exception_handler import (
    DealNotFound, Forbidden, PreconditionFailed, RoleMismatch, TimerNotElapsed, ValidationError
)
from utils.fee_calculator import FeeCalculator
from utils.helpers import generate_transaction_id, parse_order_id, validate_email

logger = logging.getLogger(__name__)

MAX_TRANSACTION_ID_ATTEMPTS = 5

CONFIRMED_PAYMENT_STATUSES = (CryptoPaymentStatus.FINISHED.value, CryptoPaymentStatus.CONFIRMED.value)
FAILED_PAYMENT_STATUSES = (CryptoPaymentStatus.FAILED.value, CryptoPaymentStatus.EXPIRED.value)
PROGRESS_PAYMENT_STATUSES = (
    CryptoPaymentStatus.WAITING.value,
    CryptoPaymentStatus.CONFIRMING.value,
    CryptoPaymentStatus.SENDING.value,
    CryptoPaymentStatus.PARTIALLY_PAID.value,
)

# Client-facing action names for the transitions a role can attempt next
ACTION_NAMES = {
    DealTransition.SELLER_AGREE: "seller_agree",
    DealTransition.INITIATE_FEE_PAYMENT: "pay_transaction_fee",
    DealTransition.CONFIRM_FEE_PAYMENT: "pay_transaction_fee",
    DealTransition.CONFIRM_RIGHTS: "confirm_rights",
    DealTransition.CONFIRM_PRIMARY_OWNER: "confirm_primary_owner",
    DealTransition.ADMIN_CONFIRM_PRIMARY_OWNER: "mark_primary_owner_made",
    DealTransition.CONFIRM_PAYMENT_TO_SELLER: "confirm_payment_to_seller",
    DealTransition.CONFIRM_PAYMENT_RECEIVED: "confirm_payment_received",
}


@dataclass
class CreateDealRequest:
    """Buyer-submitted deal terms; the catalog snapshot travels with the request"""
    seller_id: Any
    channel_id: Any
    channel_title: Any
    channel_price: Any
    escrow_fee: Any
    payment_methods: List[Dict[str, Any]]
    transaction_type: str = TransactionType.SAFEST.value
    buyer_email: Optional[str] = None
    listing_platform: Optional[str] = None


@dataclass
class FeePaymentEvent:
    """One payment-processor callback, already authenticated"""
    provider: str
    payment_id: str
    payment_status: str
    order_id: str
    payload: Dict[str, Any]
    actually_paid: Optional[Any] = None
    pay_currency: Optional[str] = None

    @property
    def event_id(self) -> str:
        return f"{self.payment_id}:{self.payment_status}"

    @classmethod
    def from_nowpayments(cls, payload: Dict[str, Any]) -> "FeePaymentEvent":
        payment_id = payload.get("payment_id")
        payment_status = payload.get("payment_status")
        order_id = payload.get("order_id")
        if not payment_id or not payment_status or not order_id:
            raise ValidationError("Missing required fields")
        return cls(
            provider="nowpayments",
            payment_id=str(payment_id),
            payment_status=str(payment_status).lower(),
            order_id=str(order_id),
            payload=payload,
            actually_paid=payload.get("actually_paid"),
            pay_currency=payload.get("pay_currency"),
        )


@dataclass
class _TransitionContext:
    now: datetime
    session: Optional[Session] = None
    deal: Optional[Deal] = None
    notifications: List[DealNotification] = field(default_factory=list)
    audit_records: List[Dict[str, Any]] = field(default_factory=list)


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class DealLifecycleEngine:
    """The deal state machine, orchestrating authorization, timer, rails, audit and notifications"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        clock: Callable[[], datetime] = utc_now,
        rails: Optional[PaymentRailRegistry] = None,
        emitter: Optional[NotificationEmitter] = None,
        audit: Optional[DealAuditTrail] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.rails = rails or PaymentRailRegistry()
        self.emitter = emitter or NotificationEmitter()
        self.audit = audit or deal_audit_trail

    # ------------------------------------------------------------------
    # transaction plumbing
    # ------------------------------------------------------------------

    def _now(self) -> datetime:
        return ensure_aware_utc(self.clock())

    @contextmanager
    def _deal_transition(self, deal_id: int) -> Generator[_TransitionContext, None, None]:
        """Lock one deal for a transition; audit file lines and notifications go out only once the commit succeeded"""
        ctx = _TransitionContext(now=self._now())
        with atomic_transaction(self.session_factory) as session:
            ctx.session = session
            ctx.deal = load_deal_for_update(session, deal_id)
            yield ctx
        self.audit.write_file_records(ctx.audit_records)
        self.emitter.emit(ctx.notifications)

    def _append_audit(
        self, ctx: _TransitionContext, action: DealAction, description: str, acting_party_id: Optional[int]
    ) -> None:
        self.audit.append(
            ctx.session, ctx.deal, action, description, ctx.now, acting_party_id, file_records=ctx.audit_records
        )

    @staticmethod
    def _party_role(deal: Deal, actor: ActingParty) -> PartyRole:
        return resolve_role(deal, actor)

    @staticmethod
    def _require_reader(deal: Deal, actor: ActingParty) -> PartyRole:
        role = resolve_role(deal, actor)
        if role == PartyRole.NONE:
            raise Forbidden("You are not authorized to access this deal")
        return role

    # ------------------------------------------------------------------
    # CreateDeal
    # ------------------------------------------------------------------

    def create_deal(self, actor: ActingParty, request: CreateDealRequest) -> Dict[str, Any]:
        """Buyer opens a deal on a listing, agreeing to its terms implicitly"""
        actor = require_authenticated(actor)
        fields = self._validate_create_request(actor, request)
        now = self._now()
        audit_records: List[Dict[str, Any]] = []

        with atomic_transaction(self.session_factory) as session:
            transaction_id = self._unique_transaction_id(session)
            deal = Deal(
                transaction_id=transaction_id,
                buyer_id=actor.user_id,
                seller_id=fields["seller_id"],
                buyer_email=fields["buyer_email"],
                channel_id=fields["channel_id"],
                channel_title=fields["channel_title"],
                listing_platform=fields["listing_platform"],
                channel_price=fields["channel_price"],
                escrow_fee=fields["escrow_fee"],
                transaction_type=fields["transaction_type"],
                buyer_agreed=True,
                buyer_agreed_at=now,
                created_at=now,
                updated_at=now,
            )
            DealStateValidator.sync_status(deal)
            session.add(deal)
            session.flush()

            for method in fields["payment_methods"]:
                session.add(DealPaymentMethod(deal_id=deal.id, **method))

            self.audit.append(
                session, deal, DealAction.CREATED,
                f"Deal created by buyer for {deal.channel_title} at ${deal.channel_price}",
                now, actor.user_id, file_records=audit_records,
            )
            session.flush()
            session.refresh(deal)
            result = {"deal": self._serialize_deal(deal, now, PartyRole.BUYER)}

        self.audit.write_file_records(audit_records)
        logger.info(f"✅ DEAL_CREATED: {transaction_id} (deal {result['deal']['id']}) buyer {actor.user_id} seller {fields['seller_id']}")
        return result

    def _validate_create_request(self, actor: ActingParty, request: CreateDealRequest) -> Dict[str, Any]:
        missing = [
            name for name in ("seller_id", "channel_id", "channel_title", "channel_price", "escrow_fee")
            if getattr(request, name) in (None, "")
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)

        try:
            seller_id = int(request.seller_id)
        except (TypeError, ValueError):
            raise ValidationError("seller_id must be an integer user id")
        if seller_id == actor.user_id:
            raise ValidationError("You cannot buy your own channel")

        try:
            channel_price = FeeCalculator.to_usd(request.channel_price)
            escrow_fee = FeeCalculator.to_usd(request.escrow_fee)
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError("channel_price and escrow_fee must be numeric amounts")
        if channel_price <= 0:
            raise ValidationError("channel_price must be greater than 0")
        if escrow_fee <= 0:
            raise ValidationError("escrow_fee must be greater than 0")

        if not isinstance(request.payment_methods, list) or not request.payment_methods:
            raise ValidationError("At least one payment method must be selected")
        payment_methods = []
        for method in request.payment_methods:
            if not isinstance(method, dict):
                raise ValidationError("Each payment method must be an object")
            method_id = method.get("id", method.get("payment_method_id"))
            method_name = method.get("name", method.get("payment_method_name"))
            if method_id in (None, "") or not method_name:
                raise ValidationError("Each payment method needs an id and a name")
            payment_methods.append({
                "payment_method_id": str(method_id),
                "payment_method_name": str(method_name),
                "payment_method_category": method.get("category", method.get("payment_method_category")),
            })

        transaction_type = (request.transaction_type or TransactionType.SAFEST.value).lower()
        if transaction_type not in {t.value for t in TransactionType}:
            raise ValidationError("transaction_type must be 'safest' or 'recommended'")

        if request.buyer_email and not validate_email(request.buyer_email):
            raise ValidationError("buyer_email is not a valid e-mail address")

        listing_platform = None
        if request.listing_platform:
            platform = normalize_platform(request.listing_platform)
            if platform is None:
                raise ValidationError(f"Unknown listing platform '{request.listing_platform}'")
            listing_platform = platform.value

        return {
            "seller_id": seller_id,
            "channel_id": str(request.channel_id),
            "channel_title": str(request.channel_title).strip(),
            "channel_price": channel_price,
            "escrow_fee": escrow_fee,
            "payment_methods": payment_methods,
            "transaction_type": transaction_type,
            "buyer_email": request.buyer_email or None,
            "listing_platform": listing_platform,
        }

    @staticmethod
    def _unique_transaction_id(session: Session) -> str:
        for _ in range(MAX_TRANSACTION_ID_ATTEMPTS):
            candidate = generate_transaction_id()
            taken = session.execute(select(Deal.id).where(Deal.transaction_id == candidate)).first()
            if taken is None:
                return candidate
            logger.warning(f"⚠️ TRANSACTION_ID_COLLISION: {candidate}, regenerating")
        raise RuntimeError("Could not generate a unique transaction id")

    # ------------------------------------------------------------------
    # Agreement and fee
    # ------------------------------------------------------------------

    def seller_agree(self, actor: ActingParty, deal_id: int) -> Dict[str, Any]:
        actor = require_authenticated(actor)
        with self._deal_transition(deal_id) as ctx:
            deal = ctx.deal
            role = self._party_role(deal, actor)
            DealStateValidator.validate(deal, DealTransition.SELLER_AGREE, role)

            deal.seller_agreed = True
            deal.seller_agreed_at = ctx.now
            DealStateValidator.sync_status(deal, DealTransition.SELLER_AGREE)
            self._append_audit(ctx, DealAction.SELLER_AGREED, "Seller agreed to deal terms", actor.user_id)
            logger.info(f"✅ DEAL_SELLER_AGREED: deal {deal.id}")
            return {"deal": self._serialize_deal(deal, ctx.now, role)}

    def pay_transaction_fee(
        self,
        actor: ActingParty,
        deal_id: int,
        payment_method: Optional[str],
        payer_type: Optional[str],
        pay_currency: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Collect the escrow fee through the requested rail.

        A synchronous rail confirms the fee and notifies the agent in this same
        transition. An asynchronous rail only records the intent; the fee is
        confirmed later by apply_fee_payment_event().
        """
        actor = require_authenticated(actor)
        if not payment_method or not payer_type:
            raise ValidationError("Payment method and payer type are required")
        try:
            payer_role = PayerRole((payer_type or "").strip().lower())
        except ValueError:
            raise ValidationError("Invalid payer type")
        rail = self.rails.resolve(payment_method)

        with self._deal_transition(deal_id) as ctx:
            deal = ctx.deal
            role = self._party_role(deal, actor)
            transition = (
                DealTransition.CONFIRM_FEE_PAYMENT if rail.is_synchronous else DealTransition.INITIATE_FEE_PAYMENT
            )
            DealStateValidator.validate(deal, transition, role)
            if payer_role.value != role.value:
                raise RoleMismatch("Payer type does not match your role in this deal")

            result = rail.collect(
                ctx.session,
                FeeCollectionRequest(
                    deal=deal, payer_role=payer_role, actor_id=actor.user_id, now=ctx.now,
                    pay_currency=pay_currency,
                ),
            )

            if result.confirmed:
                self._confirm_fee(
                    ctx,
                    payer_role=payer_role.value,
                    rail=result.rail,
                    reference=result.reference,
                    acting_party_id=actor.user_id,
                    description=f"Transaction fee paid via {result.rail.value} by {payer_role.value}",
                )
            elif not result.reused_existing or deal.fee_payment_initiated_at is None:
                deal.fee_payment_initiated_at = ctx.now
                deal.fee_payment_rail = result.rail.value
                deal.fee_payment_payer = payer_role.value
                DealStateValidator.sync_status(deal, DealTransition.INITIATE_FEE_PAYMENT)
                self._append_audit(
                    ctx, DealAction.FEE_PAYMENT_INITIATED,
                    f"Transaction fee payment started via {result.rail.value} by {payer_role.value}. "
                    f"Payment ID: {result.reference}",
                    actor.user_id,
                )
                logger.info(f"⏳ DEAL_FEE_PENDING: deal {deal.id} awaiting {result.rail.value} confirmation")

            return {"deal": self._serialize_deal(deal, ctx.now, role), "payment": result.to_dict()}

    def _confirm_fee(
        self,
        ctx: _TransitionContext,
        payer_role: str,
        rail: PaymentRail,
        reference: Optional[str],
        acting_party_id: Optional[int],
        description: str,
    ) -> None:
        """Set fee paid and agent notified; identical for both rails"""
        deal = ctx.deal
        deal.transaction_fee_paid = True
        deal.transaction_fee_paid_at = ctx.now
        deal.transaction_fee_paid_by = payer_role
        deal.transaction_fee_payment_method = rail.value
        deal.transaction_fee_reference = reference
        DealStateValidator.sync_status(deal, DealTransition.CONFIRM_FEE_PAYMENT)
        self._append_audit(ctx, DealAction.FEE_PAID, description, acting_party_id)

        DealStateValidator.validate(deal, DealTransition.NOTIFY_AGENT, PartyRole.SYSTEM)
        deal.agent_notified = True
        deal.agent_notified_at = ctx.now
        DealStateValidator.sync_status(deal, DealTransition.NOTIFY_AGENT)
        self._append_audit(ctx, DealAction.AGENT_NOTIFIED, "Agent email sent for account rights", None)

        ctx.notifications.append(
            DealMessageComposer.agent_email(deal, via_crypto=rail == PaymentRail.CRYPTO)
        )
        logger.info(f"✅ DEAL_FEE_PAID: deal {deal.id} via {rail.value} by {payer_role}")

    # ------------------------------------------------------------------
    # Custody transfer
    # ------------------------------------------------------------------

    def confirm_rights(self, actor: ActingParty, deal_id: int) -> Dict[str, Any]:
        """Seller attests the agent has custodial access; starts the hold when the platform needs one"""
        actor = require_authenticated(actor)
        with self._deal_transition(deal_id) as ctx:
            deal = ctx.deal
            role = self._party_role(deal, actor)
            DealStateValidator.validate(deal, DealTransition.CONFIRM_RIGHTS, role)

            platform = classify_platform(deal.listing_platform, deal.channel_title)
            deal.platform_type = platform.value
            deal.seller_gave_rights = True
            deal.seller_gave_rights_at = ctx.now

            if requires_holding_period(platform):
                deal.holding_period_started_at = ctx.now
                deal.holding_period_expires_at = compute_expiry(ctx.now)
            else:
                deal.holding_period_elapsed = True
                deal.holding_period_elapsed_at = ctx.now

            DealStateValidator.sync_status(deal, DealTransition.CONFIRM_RIGHTS)
            self._append_audit(
                ctx, DealAction.SELLER_GAVE_RIGHTS,
                f"Seller confirmed giving account rights to agent ({platform.value})",
                actor.user_id,
            )
            if deal.holding_period_started_at is not None:
                self._append_audit(
                    ctx, DealAction.HOLDING_PERIOD_STARTED,
                    f"Holding period started, ends {isoformat_or_none(deal.holding_period_expires_at)}",
                    None,
                )
            ctx.notifications.append(DealMessageComposer.rights_confirmed(deal))
            logger.info(
                f"✅ DEAL_RIGHTS_CONFIRMED: deal {deal.id} platform={platform.value} "
                f"hold={'yes' if deal.holding_period_started_at else 'no'}"
            )
            return {"deal": self._serialize_deal(deal, ctx.now, role)}

    def confirm_primary_owner(self, actor: ActingParty, deal_id: int) -> Dict[str, Any]:
        actor = require_authenticated(actor)
        with self._deal_transition(deal_id) as ctx:
            role = self._party_role(ctx.deal, actor)
            self._promote_primary_owner(ctx, DealTransition.CONFIRM_PRIMARY_OWNER, role, actor.user_id)
            return {"deal": self._serialize_deal(ctx.deal, ctx.now, role)}

    def admin_confirm_primary_owner(self, actor: ActingParty, deal_id: int) -> Dict[str, Any]:
        """Agent/operator confirms the promotion when the seller cannot self-report"""
        actor = require_admin(actor)
        with self._deal_transition(deal_id) as ctx:
            self._promote_primary_owner(
                ctx, DealTransition.ADMIN_CONFIRM_PRIMARY_OWNER, PartyRole.ADMIN, actor.user_id
            )
            return {"deal": self._serialize_deal(ctx.deal, ctx.now, PartyRole.ADMIN)}

    def _promote_primary_owner(
        self, ctx: _TransitionContext, transition: DealTransition, role: PartyRole, acting_party_id: int
    ) -> None:
        deal = ctx.deal
        DealStateValidator.validate(deal, transition, role)

        if deal.holding_period_started_at is not None and not deal.holding_period_elapsed:
            if not has_elapsed(deal.holding_period_expires_at, ctx.now):
                remaining = remaining_duration(deal.holding_period_expires_at, ctx.now)
                raise TimerNotElapsed(
                    f"Holding period has not elapsed yet. {format_duration(remaining)} remaining",
                    remaining=remaining,
                    expires_at=ensure_aware_utc(deal.holding_period_expires_at),
                )
            self._mark_holding_period_elapsed(ctx, role)

        deal.seller_made_primary_owner = True
        deal.seller_made_primary_owner_at = ctx.now
        deal.primary_owner_confirmed_by = PartyRole.ADMIN.value if role == PartyRole.ADMIN else PartyRole.SELLER.value
        DealStateValidator.sync_status(deal, transition)

        by_admin = role == PartyRole.ADMIN
        self._append_audit(
            ctx, DealAction.PRIMARY_OWNER_CONFIRMED,
            "Admin confirmed agent was made primary owner" if by_admin
            else "Seller confirmed making agent primary owner",
            acting_party_id,
        )
        ctx.notifications.append(DealMessageComposer.primary_owner_confirmed(deal, by_admin=by_admin))
        logger.info(f"✅ DEAL_PRIMARY_OWNER_CONFIRMED: deal {deal.id} by {role.value}")

    def _mark_holding_period_elapsed(self, ctx: _TransitionContext, role: PartyRole) -> None:
        deal = ctx.deal
        DealStateValidator.validate(deal, DealTransition.ELAPSE_HOLDING_PERIOD, role)
        deal.holding_period_elapsed = True
        deal.holding_period_elapsed_at = ctx.now
        DealStateValidator.sync_status(deal, DealTransition.ELAPSE_HOLDING_PERIOD)
        self._append_audit(ctx, DealAction.HOLDING_PERIOD_ELAPSED, "Holding period completed", None)
        logger.info(f"⏰ DEAL_HOLDING_PERIOD_ELAPSED: deal {deal.id}")

    # ------------------------------------------------------------------
    # Settlement between the parties
    # ------------------------------------------------------------------

    def confirm_payment_to_seller(self, actor: ActingParty, deal_id: int) -> Dict[str, Any]:
        actor = require_authenticated(actor)
        with self._deal_transition(deal_id) as ctx:
            deal = ctx.deal
            role = self._party_role(deal, actor)
            DealStateValidator.validate(deal, DealTransition.CONFIRM_PAYMENT_TO_SELLER, role)

            deal.buyer_paid_seller = True
            deal.buyer_paid_seller_at = ctx.now
            DealStateValidator.sync_status(deal, DealTransition.CONFIRM_PAYMENT_TO_SELLER)
            self._append_audit(ctx, DealAction.BUYER_PAID_SELLER, "Buyer confirmed payment to seller", actor.user_id)
            ctx.notifications.append(DealMessageComposer.buyer_paid_seller(deal))
            logger.info(f"✅ DEAL_BUYER_PAID_SELLER: deal {deal.id}")
            return {"deal": self._serialize_deal(deal, ctx.now, role)}

    def confirm_payment_received(self, actor: ActingParty, deal_id: int) -> Dict[str, Any]:
        actor = require_authenticated(actor)
        with self._deal_transition(deal_id) as ctx:
            deal = ctx.deal
            role = self._party_role(deal, actor)
            DealStateValidator.validate(deal, DealTransition.CONFIRM_PAYMENT_RECEIVED, role)

            deal.seller_confirmed_payment = True
            deal.seller_confirmed_payment_at = ctx.now
            DealStateValidator.sync_status(deal, DealTransition.CONFIRM_PAYMENT_RECEIVED)
            self._append_audit(
                ctx, DealAction.SELLER_CONFIRMED_PAYMENT, "Seller confirmed receiving payment", actor.user_id
            )
            ctx.notifications.append(DealMessageComposer.deal_completed(deal))
            logger.info(f"🎉 DEAL_COMPLETED: deal {deal.id}")
            return {"deal": self._serialize_deal(deal, ctx.now, role)}

    # ------------------------------------------------------------------
    # Asynchronous fee confirmation
    # ------------------------------------------------------------------

    def apply_fee_payment_event(self, event: FeePaymentEvent) -> Dict[str, Any]:
        """
        Apply one authenticated processor callback.

        Idempotent per (provider, payment id, status): a repeated delivery is a
        successful no-op. Only a confirmed event may set the fee-paid milestone.
        """
        deal_id = parse_order_id(event.order_id)
        if deal_id is None:
            raise ValidationError("Invalid order ID format", order_id=event.order_id)

        try:
            with self._deal_transition(deal_id) as ctx:
                return self._apply_fee_payment_event(ctx, event)
        except IntegrityError:
            if not self._webhook_event_recorded(event):
                logger.error(
                    f"❌ WEBHOOK_INTEGRITY_ERROR: {event.provider} {event.event_id} rolled back, "
                    f"no ledger entry, leaving it for redelivery"
                )
                raise
            logger.warning(
                f"♻️ WEBHOOK_DUPLICATE: {event.provider} {event.event_id} recorded concurrently, treating as processed"
            )
            return {"deal_id": deal_id, "duplicate": True, "action": "duplicate"}

    def _webhook_event_recorded(self, event: FeePaymentEvent) -> bool:
        with atomic_transaction(self.session_factory) as session:
            return session.execute(
                select(WebhookEventLedger.id).where(
                    WebhookEventLedger.event_provider == event.provider,
                    WebhookEventLedger.event_id == event.event_id,
                )
            ).first() is not None

    def _apply_fee_payment_event(self, ctx: _TransitionContext, event: FeePaymentEvent) -> Dict[str, Any]:
        session, deal = ctx.session, ctx.deal

        already = session.execute(
            select(WebhookEventLedger.id).where(
                WebhookEventLedger.event_provider == event.provider,
                WebhookEventLedger.event_id == event.event_id,
            )
        ).first()
        if already is not None:
            logger.info(f"♻️ WEBHOOK_DUPLICATE: {event.provider} {event.event_id} already processed")
            return {"deal_id": deal.id, "duplicate": True, "action": "duplicate"}

        ledger = WebhookEventLedger(
            event_provider=event.provider,
            event_id=event.event_id,
            event_type=event.payment_status,
            reference_id=event.order_id,
            payload=event.payload,
            status="processing",
            processed_at=ctx.now,
        )
        session.add(ledger)
        session.flush()

        payment = self._upsert_crypto_payment(ctx, event)
        action = self._apply_payment_status(ctx, event, payment)

        ledger.status = "completed"
        ledger.processing_result = action
        logger.info(f"✅ WEBHOOK_PROCESSED: deal {deal.id} {event.event_id} -> {action}")
        return {"deal_id": deal.id, "duplicate": False, "action": action}

    def _upsert_crypto_payment(self, ctx: _TransitionContext, event: FeePaymentEvent) -> CryptoPayment:
        session, deal = ctx.session, ctx.deal
        payment = session.execute(
            select(CryptoPayment).where(CryptoPayment.provider_payment_id == event.payment_id)
        ).scalar_one_or_none()

        if payment is None:
            payment = CryptoPayment(
                deal_id=deal.id,
                provider_payment_id=event.payment_id,
                order_id=event.order_id,
                payer_role=deal.fee_payment_payer or PayerRole.BUYER.value,
                initiated_by=deal.buyer_id if deal.fee_payment_payer != PayerRole.SELLER.value else deal.seller_id,
                price_amount=_decimal_or_none(event.payload.get("price_amount")) or Decimal(deal.escrow_fee),
                price_currency=event.payload.get("price_currency") or "usd",
                created_at=ctx.now,
            )
            session.add(payment)
            logger.info(f"🪙 CRYPTO_PAYMENT_RECORDED: deal {deal.id} payment {event.payment_id} first seen by webhook")
        elif payment.deal_id != deal.id:
            raise ValidationError("Payment does not belong to this deal", payment_id=event.payment_id)

        payment.payment_status = event.payment_status
        if event.actually_paid is not None:
            payment.actually_paid = _decimal_or_none(event.actually_paid)
        if event.pay_currency:
            payment.pay_currency = event.pay_currency
        payment.provider_payload = event.payload
        payment.updated_at = ctx.now
        return payment

    def _apply_payment_status(self, ctx: _TransitionContext, event: FeePaymentEvent, payment: CryptoPayment) -> str:
        deal = ctx.deal
        status = event.payment_status

        if status in CONFIRMED_PAYMENT_STATUSES:
            if deal.transaction_fee_paid:
                logger.info(f"ℹ️ WEBHOOK_FEE_ALREADY_PAID: deal {deal.id}, ignoring {event.event_id}")
                return "fee_already_paid"
            try:
                DealStateValidator.validate(deal, DealTransition.CONFIRM_FEE_PAYMENT, PartyRole.SYSTEM)
            except PreconditionFailed as e:
                logger.error(f"❌ WEBHOOK_FEE_REJECTED: deal {deal.id}: {e.message}")
                return "rejected_precondition_failed"
            self._confirm_fee(
                ctx,
                payer_role=payment.payer_role,
                rail=PaymentRail.CRYPTO,
                reference=event.payment_id,
                acting_party_id=payment.initiated_by,
                description=(
                    f"Transaction fee paid via cryptocurrency. Payment ID: {event.payment_id}. "
                    f"Amount: {event.actually_paid} {event.pay_currency}"
                ),
            )
            return "fee_confirmed"

        if status in FAILED_PAYMENT_STATUSES:
            if deal.transaction_fee_paid:
                return "ignored_fee_already_paid"
            self._append_audit(
                ctx, DealAction.FEE_PAYMENT_FAILED,
                f"Cryptocurrency payment {status}. Payment ID: {event.payment_id}",
                None,
            )
            still_open = ctx.session.execute(
                select(CryptoPayment.id).where(
                    CryptoPayment.deal_id == deal.id,
                    CryptoPayment.id != payment.id,
                    CryptoPayment.payment_status.in_(PROGRESS_PAYMENT_STATUSES),
                )
            ).first()
            if still_open is None and deal.fee_payment_initiated_at is not None:
                deal.fee_payment_initiated_at = None
                deal.fee_payment_rail = None
                deal.fee_payment_payer = None
                DealStateValidator.sync_status(deal)
            logger.warning(f"⚠️ DEAL_FEE_PAYMENT_FAILED: deal {deal.id} payment {event.payment_id} {status}")
            return "fee_payment_failed"

        if status in PROGRESS_PAYMENT_STATUSES:
            return "payment_updated"

        logger.warning(f"⚠️ WEBHOOK_UNKNOWN_STATUS: deal {deal.id} payment status '{status}'")
        return "unknown_status"

    # ------------------------------------------------------------------
    # Holding-period sweep
    # ------------------------------------------------------------------

    def notify_elapsed_holding_periods(self, limit: int = 100) -> int:
        """Set the elapsed flag on expired holds and tell both parties. Returns deals updated."""
        now = self._now()
        with atomic_transaction(self.session_factory) as session:
            deal_ids = list(
                session.execute(
                    select(Deal.id)
                    .where(
                        Deal.seller_gave_rights.is_(True),
                        Deal.seller_made_primary_owner.is_(False),
                        Deal.holding_period_elapsed.is_(False),
                        Deal.holding_period_started_at.isnot(None),
                        Deal.holding_period_expires_at <= now,
                    )
                    .order_by(Deal.holding_period_expires_at)
                    .limit(limit)
                ).scalars()
            )

        updated = 0
        for deal_id in deal_ids:
            try:
                with self._deal_transition(deal_id) as ctx:
                    deal = ctx.deal
                    if deal.holding_period_elapsed or not has_elapsed(deal.holding_period_expires_at, ctx.now):
                        continue
                    self._mark_holding_period_elapsed(ctx, PartyRole.SYSTEM)
                    ctx.notifications.append(DealMessageComposer.holding_period_completed(deal, ctx.now))
                updated += 1
            except Exception as e:
                logger.error(f"❌ HOLDING_SWEEP_FAILED: deal {deal_id}: {e}", exc_info=True)
        return updated

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load_deal(self, session: Session, deal_id: int) -> Deal:
        deal = session.execute(
            select(Deal).options(selectinload(Deal.payment_methods)).where(Deal.id == deal_id)
        ).scalar_one_or_none()
        if deal is None:
            raise DealNotFound(f"Deal {deal_id} not found")
        return deal

    def get_status(self, actor: ActingParty, deal_id: int) -> Dict[str, Any]:
        """Read-only projection, including the remaining hold duration"""
        actor = require_authenticated(actor)
        now = self._now()
        with atomic_transaction(self.session_factory) as session:
            deal = self._load_deal(session, deal_id)
            role = self._require_reader(deal, actor)
            return self._status_projection(deal, now, role)

    def get_deal(self, actor: ActingParty, deal_id: int) -> Dict[str, Any]:
        actor = require_authenticated(actor)
        now = self._now()
        with atomic_transaction(self.session_factory) as session:
            deal = self._load_deal(session, deal_id)
            role = self._require_reader(deal, actor)
            return {"deal": self._serialize_deal(deal, now, role, include_payment_methods=True)}

    def get_history(self, actor: ActingParty, deal_id: int) -> Dict[str, Any]:
        actor = require_authenticated(actor)
        with atomic_transaction(self.session_factory) as session:
            deal = self._load_deal(session, deal_id)
            self._require_reader(deal, actor)
            entries = DealAuditTrail.history_for(session, deal.id)
            return {"deal_id": deal.id, "history": [DealAuditTrail.serialize(e) for e in entries]}

    def list_deals(self, actor: ActingParty, side: str = "all") -> Dict[str, Any]:
        """Deals where the actor is buyer and/or seller, newest first"""
        actor = require_authenticated(actor)
        if side == "buyer":
            condition = Deal.buyer_id == actor.user_id
        elif side == "seller":
            condition = Deal.seller_id == actor.user_id
        elif side == "all":
            condition = or_(Deal.buyer_id == actor.user_id, Deal.seller_id == actor.user_id)
        else:
            raise ValidationError(f"Unknown deal side '{side}'")

        now = self._now()
        with atomic_transaction(self.session_factory) as session:
            deals = session.execute(
                select(Deal)
                .options(selectinload(Deal.payment_methods))
                .where(condition)
                .order_by(Deal.created_at.desc(), Deal.id.desc())
            ).scalars().all()
            return {
                "deals": [
                    self._serialize_deal(d, now, resolve_role(d, actor), include_payment_methods=True)
                    for d in deals
                ]
            }

    def admin_list_deals(self, actor: ActingParty, status: Optional[str] = None) -> Dict[str, Any]:
        actor = require_admin(actor)
        query = select(Deal).options(selectinload(Deal.payment_methods))
        if status:
            try:
                query = query.where(Deal.status == DealStatus(status).value)
            except ValueError:
                raise ValidationError(f"Unknown deal status '{status}'")

        now = self._now()
        with atomic_transaction(self.session_factory) as session:
            deals = session.execute(query.order_by(Deal.created_at.desc(), Deal.id.desc())).scalars().all()
            return {
                "deals": [
                    self._serialize_deal(d, now, PartyRole.ADMIN, include_payment_methods=True) for d in deals
                ]
            }

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    @staticmethod
    def _available_actions(deal: Deal, role: PartyRole, now: datetime) -> List[str]:
        hold = holding_period_state(deal, now)
        actions = []
        for transition in DealStateValidator.available_transitions(deal, role):
            if transition in (DealTransition.CONFIRM_PRIMARY_OWNER, DealTransition.ADMIN_CONFIRM_PRIMARY_OWNER):
                if hold.required and not hold.elapsed:
                    continue
            name = ACTION_NAMES.get(transition)
            if name and name not in actions:
                actions.append(name)
        return actions

    def _status_projection(self, deal: Deal, now: datetime, role: PartyRole) -> Dict[str, Any]:
        return {
            "deal_id": deal.id,
            "transaction_id": deal.transaction_id,
            "status": DealStateValidator.derive_status(deal).value,
            "role": role.value,
            "milestones": {
                "buyer_agreed": deal.buyer_agreed,
                "seller_agreed": deal.seller_agreed,
                "transaction_fee_paid": deal.transaction_fee_paid,
                "agent_notified": deal.agent_notified,
                "seller_gave_rights": deal.seller_gave_rights,
                "holding_period_elapsed": deal.holding_period_elapsed,
                "seller_made_primary_owner": deal.seller_made_primary_owner,
                "buyer_paid_seller": deal.buyer_paid_seller,
                "seller_confirmed_payment": deal.seller_confirmed_payment,
            },
            "fee_payment": {
                "initiated_at": isoformat_or_none(deal.fee_payment_initiated_at),
                "rail": deal.fee_payment_rail,
                "paid_by": deal.transaction_fee_paid_by,
                "payment_method": deal.transaction_fee_payment_method,
                "reference": deal.transaction_fee_reference,
            },
            "platform_type": deal.platform_type,
            "holding_period": holding_period_state(deal, now).to_dict(),
            "available_actions": self._available_actions(deal, role, now),
            "is_complete": DealStateValidator.is_terminal(deal),
        }

    def _serialize_deal(
        self, deal: Deal, now: datetime, role: PartyRole, include_payment_methods: bool = False
    ) -> Dict[str, Any]:
        data = self._status_projection(deal, now, role)
        data.update({
            "id": deal.id,
            "buyer_id": deal.buyer_id,
            "seller_id": deal.seller_id,
            "channel_id": deal.channel_id,
            "channel_title": deal.channel_title,
            "listing_platform": deal.listing_platform,
            "channel_price": str(deal.channel_price),
            "escrow_fee": str(deal.escrow_fee),
            "transaction_type": deal.transaction_type,
            "primary_owner_confirmed_by": deal.primary_owner_confirmed_by,
            "timestamps": {
                "created_at": isoformat_or_none(deal.created_at),
                "updated_at": isoformat_or_none(deal.updated_at),
                "buyer_agreed_at": isoformat_or_none(deal.buyer_agreed_at),
                "seller_agreed_at": isoformat_or_none(deal.seller_agreed_at),
                "transaction_fee_paid_at": isoformat_or_none(deal.transaction_fee_paid_at),
                "agent_notified_at": isoformat_or_none(deal.agent_notified_at),
                "seller_gave_rights_at": isoformat_or_none(deal.seller_gave_rights_at),
                "holding_period_elapsed_at": isoformat_or_none(deal.holding_period_elapsed_at),
                "seller_made_primary_owner_at": isoformat_or_none(deal.seller_made_primary_owner_at),
                "buyer_paid_seller_at": isoformat_or_none(deal.buyer_paid_seller_at),
                "seller_confirmed_payment_at": isoformat_or_none(deal.seller_confirmed_payment_at),
            },
        })
        if include_payment_methods:
            data["payment_methods"] = [
                {
                    "id": m.payment_method_id,
                    "name": m.payment_method_name,
                    "category": m.payment_method_category,
                }
                for m in deal.payment_methods
            ]
        return data

    def latest_crypto_payment(self, actor: ActingParty, deal_id: int) -> Dict[str, Any]:
        """Most recent crypto invoice of a deal, for polling clients"""
        actor = require_authenticated(actor)
        with atomic_transaction(self.session_factory) as session:
            deal = self._load_deal(session, deal_id)
            self._require_reader(deal, actor)
            payment = session.execute(
                select(CryptoPayment)
                .where(CryptoPayment.deal_id == deal.id)
                .order_by(CryptoPayment.created_at.desc(), CryptoPayment.id.desc())
            ).scalars().first()
            if payment is None:
                raise DealNotFound("No crypto payment found for this deal")
            return {"deal_id": deal.id, "payment": serialize_crypto_payment(payment)}
