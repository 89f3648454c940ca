"""
Deal State Machine
Transition table and guard validation for the deal lifecycle.

Milestone flags on the deal row are the source of truth. `derive_status()`
recomputes the coarse status from them, and every transition is validated
against one table instead of ad hoc checks per endpoint.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from models import Deal, DealStatus, PartyRole
from utils.exception_handler import AlreadyDone, Forbidden, PreconditionFailed

logger = logging.getLogger(__name__)


class DealTransition(Enum):
    """Operations that move a deal forward"""

    SELLER_AGREE = "seller_agree"  # PENDING -> TERMS_AGREED
    INITIATE_FEE_PAYMENT = "initiate_fee_payment"  # TERMS_AGREED -> PAYMENT_PENDING
    CONFIRM_FEE_PAYMENT = "confirm_fee_payment"  # TERMS_AGREED/PAYMENT_PENDING -> FEE_PAID
    NOTIFY_AGENT = "notify_agent"  # FEE_PAID -> AGENT_ACCESS_PENDING
    CONFIRM_RIGHTS = "confirm_rights"  # AGENT_ACCESS_PENDING -> WAITING_HOLDING_PERIOD/AGENT_ACCESS_CONFIRMED
    ELAPSE_HOLDING_PERIOD = "elapse_holding_period"  # WAITING_HOLDING_PERIOD -> AGENT_ACCESS_CONFIRMED
    CONFIRM_PRIMARY_OWNER = "confirm_primary_owner"  # -> PROMOTION_COMPLETE
    ADMIN_CONFIRM_PRIMARY_OWNER = "admin_confirm_primary_owner"  # -> PROMOTION_COMPLETE
    CONFIRM_PAYMENT_TO_SELLER = "confirm_payment_to_seller"  # PROMOTION_COMPLETE -> BUYER_PAID_SELLER
    CONFIRM_PAYMENT_RECEIVED = "confirm_payment_received"  # BUYER_PAID_SELLER -> SELLER_CONFIRMED_PAYMENT


@dataclass(frozen=True)
class TransitionRule:
    allowed_roles: FrozenSet[PartyRole]
    from_statuses: FrozenSet[DealStatus]
    to_statuses: FrozenSet[DealStatus]
    required_flags: Tuple[str, ...]
    target_flag: Optional[str]
    precondition_message: str
    already_done_message: str


def _rule(roles, from_statuses, to_statuses, required, target, precondition, already_done) -> TransitionRule:
    return TransitionRule(
        allowed_roles=frozenset(roles),
        from_statuses=frozenset(from_statuses),
        to_statuses=frozenset(to_statuses),
        required_flags=tuple(required),
        target_flag=target,
        precondition_message=precondition,
        already_done_message=already_done,
    )


_PROMOTION_SOURCES = (DealStatus.WAITING_HOLDING_PERIOD, DealStatus.AGENT_ACCESS_CONFIRMED)


class DealStateValidator:
    """Validates deal transitions and recomputes the cached status"""

    # (current status x operation) -> {allowed roles, required flags, resulting status}
    TRANSITIONS: Dict[DealTransition, TransitionRule] = {
        DealTransition.SELLER_AGREE: _rule(
            {PartyRole.SELLER},
            {DealStatus.PENDING},
            {DealStatus.TERMS_AGREED},
            ("buyer_agreed",),
            "seller_agreed",
            "Deal has not been agreed by the buyer",
            "You have already agreed to this deal",
        ),
        DealTransition.INITIATE_FEE_PAYMENT: _rule(
            {PartyRole.BUYER, PartyRole.SELLER},
            {DealStatus.TERMS_AGREED, DealStatus.PAYMENT_PENDING},
            {DealStatus.PAYMENT_PENDING},
            ("buyer_agreed", "seller_agreed"),
            "transaction_fee_paid",
            "Both parties must agree to the deal before paying the transaction fee",
            "Transaction fee has already been paid",
        ),
        DealTransition.CONFIRM_FEE_PAYMENT: _rule(
            {PartyRole.BUYER, PartyRole.SELLER, PartyRole.SYSTEM},
            {DealStatus.TERMS_AGREED, DealStatus.PAYMENT_PENDING},
            {DealStatus.FEE_PAID},
            ("buyer_agreed", "seller_agreed"),
            "transaction_fee_paid",
            "Both parties must agree to the deal before paying the transaction fee",
            "Transaction fee has already been paid",
        ),
        DealTransition.NOTIFY_AGENT: _rule(
            {PartyRole.BUYER, PartyRole.SELLER, PartyRole.SYSTEM},
            {DealStatus.FEE_PAID},
            {DealStatus.AGENT_ACCESS_PENDING},
            ("transaction_fee_paid",),
            "agent_notified",
            "Transaction fee must be paid before the agent is notified",
            "Agent has already been notified",
        ),
        DealTransition.CONFIRM_RIGHTS: _rule(
            {PartyRole.SELLER},
            {DealStatus.AGENT_ACCESS_PENDING},
            {DealStatus.WAITING_HOLDING_PERIOD, DealStatus.AGENT_ACCESS_CONFIRMED},
            ("transaction_fee_paid", "agent_notified"),
            "seller_gave_rights",
            "Transaction fee must be paid and agent notified before confirming rights",
            "Rights have already been confirmed",
        ),
        DealTransition.ELAPSE_HOLDING_PERIOD: _rule(
            {PartyRole.SELLER, PartyRole.ADMIN, PartyRole.SYSTEM},
            {DealStatus.WAITING_HOLDING_PERIOD},
            {DealStatus.AGENT_ACCESS_CONFIRMED},
            ("seller_gave_rights",),
            "holding_period_elapsed",
            "Rights must be confirmed before the holding period can elapse",
            "Holding period has already elapsed",
        ),
        DealTransition.CONFIRM_PRIMARY_OWNER: _rule(
            {PartyRole.SELLER},
            _PROMOTION_SOURCES,
            {DealStatus.PROMOTION_COMPLETE},
            ("seller_gave_rights",),
            "seller_made_primary_owner",
            "Rights must be confirmed first",
            "Primary owner has already been confirmed",
        ),
        DealTransition.ADMIN_CONFIRM_PRIMARY_OWNER: _rule(
            {PartyRole.ADMIN},
            _PROMOTION_SOURCES,
            {DealStatus.PROMOTION_COMPLETE},
            ("seller_gave_rights",),
            "seller_made_primary_owner",
            "Seller must confirm rights first",
            "Primary owner has already been confirmed",
        ),
        DealTransition.CONFIRM_PAYMENT_TO_SELLER: _rule(
            {PartyRole.BUYER},
            {DealStatus.PROMOTION_COMPLETE},
            {DealStatus.BUYER_PAID_SELLER},
            ("seller_made_primary_owner",),
            "buyer_paid_seller",
            "Primary owner must be confirmed before payment",
            "Payment to seller has already been confirmed",
        ),
        DealTransition.CONFIRM_PAYMENT_RECEIVED: _rule(
            {PartyRole.SELLER},
            {DealStatus.BUYER_PAID_SELLER},
            {DealStatus.SELLER_CONFIRMED_PAYMENT},
            ("buyer_paid_seller",),
            "seller_confirmed_payment",
            "Buyer must confirm payment first",
            "Payment receipt has already been confirmed",
        ),
    }

    @staticmethod
    def derive_status(deal: Deal) -> DealStatus:
        """Recompute the furthest milestone reached from the flags alone"""
        if deal.seller_confirmed_payment:
            return DealStatus.SELLER_CONFIRMED_PAYMENT
        if deal.buyer_paid_seller:
            return DealStatus.BUYER_PAID_SELLER
        if deal.seller_made_primary_owner:
            return DealStatus.PROMOTION_COMPLETE
        if deal.seller_gave_rights:
            if deal.holding_period_started_at is not None and not deal.holding_period_elapsed:
                return DealStatus.WAITING_HOLDING_PERIOD
            return DealStatus.AGENT_ACCESS_CONFIRMED
        if deal.agent_notified:
            return DealStatus.AGENT_ACCESS_PENDING
        if deal.transaction_fee_paid:
            return DealStatus.FEE_PAID
        if deal.fee_payment_initiated_at is not None:
            return DealStatus.PAYMENT_PENDING
        if deal.buyer_agreed and deal.seller_agreed:
            return DealStatus.TERMS_AGREED
        return DealStatus.PENDING

    @classmethod
    def get_rule(cls, transition: DealTransition) -> TransitionRule:
        return cls.TRANSITIONS[transition]

    @classmethod
    def validate(cls, deal: Deal, transition: DealTransition, role: PartyRole) -> TransitionRule:
        """
        Check a transition against the table.

        Order: role, then already-done, then missing milestones. Raises
        Forbidden, AlreadyDone or PreconditionFailed; returns the rule otherwise.
        """
        rule = cls.TRANSITIONS[transition]

        if role not in rule.allowed_roles:
            raise Forbidden(
                f"Only the {cls._describe_roles(rule.allowed_roles)} can perform {transition.value}"
            )

        if rule.target_flag and getattr(deal, rule.target_flag):
            raise AlreadyDone(rule.already_done_message)

        missing = [flag for flag in rule.required_flags if not getattr(deal, flag)]
        if missing:
            logger.debug(f"Deal {deal.id} {transition.value} blocked, missing flags: {missing}")
            raise PreconditionFailed(rule.precondition_message, missing=missing)

        current = cls.derive_status(deal)
        if current not in rule.from_statuses:
            raise PreconditionFailed(
                f"Cannot {transition.value.replace('_', ' ')} while deal is {current.value}",
                current_status=current.value,
            )
        return rule

    @classmethod
    def sync_status(cls, deal: Deal, transition: Optional[DealTransition] = None) -> DealStatus:
        """
        Write the derived status back to the cached column.

        When a transition is given the result must be one of its declared
        target statuses; anything else is a programming error and aborts the
        surrounding transaction.
        """
        previous = deal.status
        new_status = cls.derive_status(deal)
        if transition is not None:
            rule = cls.TRANSITIONS[transition]
            if new_status not in rule.to_statuses:
                raise RuntimeError(
                    f"Transition {transition.value} on deal {deal.id} produced {new_status.value}, "
                    f"expected one of {sorted(s.value for s in rule.to_statuses)}"
                )
        deal.status = new_status.value
        if previous != new_status.value:
            logger.info(f"Deal {deal.id} status changed: {previous} -> {new_status.value}")
        return new_status

    @classmethod
    def available_transitions(cls, deal: Deal, role: PartyRole) -> List[DealTransition]:
        """Transitions the given role could attempt next, ignoring the holding-period clock"""
        available = []
        for transition in DealTransition:
            if transition in (DealTransition.NOTIFY_AGENT, DealTransition.ELAPSE_HOLDING_PERIOD):
                continue
            try:
                cls.validate(deal, transition, role)
            except (Forbidden, AlreadyDone, PreconditionFailed):
                continue
            available.append(transition)
        return available

    @classmethod
    def is_terminal(cls, deal: Deal) -> bool:
        return cls.derive_status(deal) == DealStatus.SELLER_CONFIRMED_PAYMENT

    @staticmethod
    def _describe_roles(roles: FrozenSet[PartyRole]) -> str:
        names = sorted(r.value for r in roles if r != PartyRole.SYSTEM)
        return " or ".join(names) if names else "system"
