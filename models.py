"""
Channel Escrow - Deal Lifecycle Database Schema
================================================

Schema for the escrow deal engine that mediates the sale of a social-media
channel between a buyer and a seller through a trusted agent:
- deals: one row per transaction, milestone flags each paired with a timestamp
- deal_payment_methods: the buyer's declared settlement channels (immutable)
- deal_history: append-only audit trail used for dispute resolution
- crypto_payments: invoices opened on the asynchronous fee rail
- webhook_event_ledger: delivery ledger that makes payment webhooks idempotent

Milestone flags are authoritative; `deals.status` is a cached projection of them.
"""

from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, Integer, BigInteger, String, Numeric, DateTime, Boolean, Text,
    ForeignKey, UniqueConstraint, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class DealStatus(Enum):
    """Deal lifecycle states, in the only order they can occur"""
    PENDING = "pending"
    TERMS_AGREED = "terms_agreed"
    PAYMENT_PENDING = "payment_pending"              # crypto rail only, transient
    FEE_PAID = "fee_paid"
    AGENT_ACCESS_PENDING = "agent_access_pending"
    WAITING_HOLDING_PERIOD = "waiting_holding_period"  # hold-requiring platforms
    AGENT_ACCESS_CONFIRMED = "agent_access_confirmed"
    PROMOTION_COMPLETE = "promotion_complete"
    BUYER_PAID_SELLER = "buyer_paid_seller"
    SELLER_CONFIRMED_PAYMENT = "seller_confirmed_payment"  # terminal success


class PlatformType(Enum):
    """Platforms a listed channel can live on"""
    YOUTUBE = "youtube"
    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"
    TWITTER = "twitter"
    FACEBOOK = "facebook"
    TELEGRAM = "telegram"
    TWITCH = "twitch"
    OTHER = "other"


class PaymentRail(Enum):
    """Settlement rails for the escrow fee"""
    CARD = "card"        # synchronous confirmation
    CRYPTO = "crypto"    # webhook confirmation


class PayerRole(Enum):
    """Which party pays the escrow fee"""
    BUYER = "buyer"
    SELLER = "seller"


class PartyRole(Enum):
    """Role of the acting party relative to one deal"""
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"      # trusted agent / operator
    SYSTEM = "system"    # payment webhooks and scheduled sweeps, never resolved from a request
    NONE = "none"


class TransactionType(Enum):
    SAFEST = "safest"
    RECOMMENDED = "recommended"


class DealAction(Enum):
    """Audit entry action types"""
    CREATED = "created"
    SELLER_AGREED = "seller_agreed"
    FEE_PAYMENT_INITIATED = "fee_payment_initiated"
    FEE_PAID = "fee_paid"
    FEE_PAYMENT_FAILED = "fee_payment_failed"
    AGENT_NOTIFIED = "agent_notified"
    SELLER_GAVE_RIGHTS = "seller_gave_rights"
    HOLDING_PERIOD_STARTED = "holding_period_started"
    HOLDING_PERIOD_ELAPSED = "holding_period_elapsed"
    PRIMARY_OWNER_CONFIRMED = "primary_owner_confirmed"
    BUYER_PAID_SELLER = "buyer_paid_seller"
    SELLER_CONFIRMED_PAYMENT = "seller_confirmed_payment"


class CryptoPaymentStatus(Enum):
    """Processor-side invoice states"""
    WAITING = "waiting"
    CONFIRMING = "confirming"
    SENDING = "sending"
    PARTIALLY_PAID = "partially_paid"
    CONFIRMED = "confirmed"
    FINISHED = "finished"
    FAILED = "failed"
    EXPIRED = "expired"
    REFUNDED = "refunded"


IN_PROGRESS_CRYPTO_STATUSES = (
    CryptoPaymentStatus.WAITING.value,
    CryptoPaymentStatus.CONFIRMING.value,
    CryptoPaymentStatus.SENDING.value,
)


# ============================================================================
# CORE ENTITIES
# ============================================================================

class Deal(Base):
    """One escrow transaction between a buyer and a seller"""
    __tablename__ = 'deals'

    # Primary key
    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(32), unique=True, nullable=False, index=True)  # Public facing ID

    # Participants (owned by the identity collaborator)
    buyer_id = Column(BigInteger, nullable=False, index=True)
    seller_id = Column(BigInteger, nullable=False, index=True)
    buyer_email = Column(String(255), nullable=True)

    # Asset snapshot taken from the listing catalog at creation time
    channel_id = Column(String(64), nullable=False)
    channel_title = Column(String(255), nullable=False)
    listing_platform = Column(String(20), nullable=True)  # catalog-provided platform, if known
    channel_price = Column(Numeric(12, 2), nullable=False)
    escrow_fee = Column(Numeric(12, 2), nullable=False)
    transaction_type = Column(String(20), default=TransactionType.SAFEST.value, nullable=False)

    # Cached projection of the milestone flags
    status = Column(String(32), default=DealStatus.PENDING.value, nullable=False, index=True)

    # Milestones - each flag is set false -> true exactly once
    buyer_agreed = Column(Boolean, default=False, nullable=False)
    buyer_agreed_at = Column(DateTime(timezone=True), nullable=True)
    seller_agreed = Column(Boolean, default=False, nullable=False)
    seller_agreed_at = Column(DateTime(timezone=True), nullable=True)

    fee_payment_initiated_at = Column(DateTime(timezone=True), nullable=True)  # asynchronous rail intent
    fee_payment_rail = Column(String(20), nullable=True)
    fee_payment_payer = Column(String(10), nullable=True)

    transaction_fee_paid = Column(Boolean, default=False, nullable=False)
    transaction_fee_paid_at = Column(DateTime(timezone=True), nullable=True)
    transaction_fee_paid_by = Column(String(10), nullable=True)          # buyer|seller
    transaction_fee_payment_method = Column(String(20), nullable=True)   # card|crypto
    transaction_fee_reference = Column(String(100), nullable=True)       # processor reference

    agent_notified = Column(Boolean, default=False, nullable=False)
    agent_notified_at = Column(DateTime(timezone=True), nullable=True)

    seller_gave_rights = Column(Boolean, default=False, nullable=False)
    seller_gave_rights_at = Column(DateTime(timezone=True), nullable=True)
    platform_type = Column(String(20), nullable=True)  # fixed when rights are given

    holding_period_started_at = Column(DateTime(timezone=True), nullable=True)
    holding_period_expires_at = Column(DateTime(timezone=True), nullable=True)
    holding_period_elapsed = Column(Boolean, default=False, nullable=False)
    holding_period_elapsed_at = Column(DateTime(timezone=True), nullable=True)

    seller_made_primary_owner = Column(Boolean, default=False, nullable=False)
    seller_made_primary_owner_at = Column(DateTime(timezone=True), nullable=True)
    primary_owner_confirmed_by = Column(String(10), nullable=True)  # seller|admin

    buyer_paid_seller = Column(Boolean, default=False, nullable=False)
    buyer_paid_seller_at = Column(DateTime(timezone=True), nullable=True)

    seller_confirmed_payment = Column(Boolean, default=False, nullable=False)
    seller_confirmed_payment_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    # Relationships
    payment_methods = relationship(
        "DealPaymentMethod", back_populates="deal", order_by="DealPaymentMethod.id"
    )
    history = relationship("DealHistory", back_populates="deal", order_by="DealHistory.id")
    crypto_payments = relationship("CryptoPayment", back_populates="deal", order_by="CryptoPayment.id")

    __table_args__ = (
        CheckConstraint(
            "status IN (" + ", ".join(f"'{s.value}'" for s in DealStatus) + ")",
            name='ck_deal_status_valid',
        ),
        CheckConstraint('channel_price > 0', name='ck_deal_price_positive'),
        CheckConstraint('escrow_fee > 0', name='ck_deal_fee_positive'),
        CheckConstraint('buyer_id <> seller_id', name='ck_deal_distinct_parties'),
        CheckConstraint("transaction_type IN ('safest', 'recommended')", name='ck_deal_transaction_type_valid'),
        # Milestone ordering invariants, enforced by the database as a backstop
        CheckConstraint(
            'transaction_fee_paid = false OR (buyer_agreed = true AND seller_agreed = true)',
            name='ck_deal_fee_after_agreement',
        ),
        CheckConstraint('agent_notified = false OR transaction_fee_paid = true', name='ck_deal_agent_after_fee'),
        CheckConstraint('seller_gave_rights = false OR agent_notified = true', name='ck_deal_rights_after_agent'),
        CheckConstraint(
            'seller_made_primary_owner = false OR seller_gave_rights = true',
            name='ck_deal_promotion_after_rights',
        ),
        CheckConstraint(
            'buyer_paid_seller = false OR seller_made_primary_owner = true',
            name='ck_deal_payment_after_promotion',
        ),
        CheckConstraint(
            'seller_confirmed_payment = false OR buyer_paid_seller = true',
            name='ck_deal_receipt_after_payment',
        ),
        Index('ix_deals_buyer_status', 'buyer_id', 'status'),
        Index('ix_deals_seller_status', 'seller_id', 'status'),
        Index('ix_deals_transaction_lookup', 'transaction_id', 'status'),
        Index('ix_deals_holding_expiry', 'holding_period_expires_at'),
    )

    def __repr__(self):
        return f"<Deal(id={self.id}, transaction_id={self.transaction_id}, status={self.status})>"


class DealPaymentMethod(Base):
    """Buyer-declared acceptable settlement channel for a deal"""
    __tablename__ = 'deal_payment_methods'

    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_id = Column(Integer, ForeignKey('deals.id'), nullable=False, index=True)
    payment_method_id = Column(String(64), nullable=False)
    payment_method_name = Column(String(120), nullable=False)
    payment_method_category = Column(String(64), nullable=True)

    deal = relationship("Deal", back_populates="payment_methods")


class DealHistory(Base):
    """Append-only audit trail of deal transitions. Never updated or deleted."""
    __tablename__ = 'deal_history'

    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_id = Column(Integer, ForeignKey('deals.id'), nullable=False, index=True)
    action_type = Column(String(40), nullable=False, index=True)
    acting_party_id = Column(BigInteger, nullable=True)  # NULL for system-originated entries
    description = Column(Text, nullable=False)
    occurred_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    deal = relationship("Deal", back_populates="history")

    __table_args__ = (
        Index('ix_deal_history_deal_occurred', 'deal_id', 'occurred_at'),
    )


class CryptoPayment(Base):
    """Escrow-fee invoice opened with the crypto payment processor"""
    __tablename__ = 'crypto_payments'

    id = Column(Integer, primary_key=True, autoincrement=True)
    deal_id = Column(Integer, ForeignKey('deals.id'), nullable=False, index=True)
    provider_payment_id = Column(String(64), unique=True, nullable=False, index=True)
    order_id = Column(String(64), nullable=False, index=True)
    payer_role = Column(String(10), nullable=False)
    initiated_by = Column(BigInteger, nullable=False)
    payment_status = Column(String(20), default=CryptoPaymentStatus.WAITING.value, nullable=False)

    price_amount = Column(Numeric(12, 2), nullable=False)
    price_currency = Column(String(10), default='usd', nullable=False)
    pay_currency = Column(String(20), nullable=True)
    pay_amount = Column(Numeric(38, 18), nullable=True)
    actually_paid = Column(Numeric(38, 18), nullable=True)
    payment_url = Column(String(500), nullable=True)
    provider_payload = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    deal = relationship("Deal", back_populates="crypto_payments")

    __table_args__ = (
        Index('ix_crypto_payments_deal_status', 'deal_id', 'payment_status'),
    )


class WebhookEventLedger(Base):
    """Webhook Event Ledger for webhook idempotency protection"""
    __tablename__ = 'webhook_event_ledger'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_provider = Column(String(50), nullable=False, index=True)
    event_id = Column(String(255), nullable=False)
    event_type = Column(String(50), nullable=False)
    reference_id = Column(String(255), nullable=True, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(String(50), default='processing', nullable=False)
    processing_result = Column(Text, nullable=True)
    processed_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint('event_provider', 'event_id', name='uq_webhook_event_provider_id'),
    )
