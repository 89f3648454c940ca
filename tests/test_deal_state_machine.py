"""Transition table and status derivation"""

from datetime import datetime, timezone

import pytest

from models import Deal, DealStatus, PartyRole
from utils.deal_state_machine import DealStateValidator, DealTransition
from utils.exception_handler import AlreadyDone, Forbidden, PreconditionFailed


def make_deal(**flags) -> Deal:
    values = dict(
        id=1,
        buyer_agreed=True,
        seller_agreed=False,
        transaction_fee_paid=False,
        agent_notified=False,
        seller_gave_rights=False,
        holding_period_elapsed=False,
        seller_made_primary_owner=False,
        buyer_paid_seller=False,
        seller_confirmed_payment=False,
    )
    values.update(flags)
    return Deal(**values)


HOLD_STARTED = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


class TestDeriveStatus:

    @pytest.mark.parametrize("flags,expected", [
        ({}, DealStatus.PENDING),
        ({"seller_agreed": True}, DealStatus.TERMS_AGREED),
        ({"seller_agreed": True, "fee_payment_initiated_at": HOLD_STARTED}, DealStatus.PAYMENT_PENDING),
        ({"seller_agreed": True, "transaction_fee_paid": True}, DealStatus.FEE_PAID),
        ({"seller_agreed": True, "transaction_fee_paid": True, "agent_notified": True},
         DealStatus.AGENT_ACCESS_PENDING),
        ({"seller_agreed": True, "transaction_fee_paid": True, "agent_notified": True,
          "seller_gave_rights": True, "holding_period_started_at": HOLD_STARTED},
         DealStatus.WAITING_HOLDING_PERIOD),
        ({"seller_agreed": True, "transaction_fee_paid": True, "agent_notified": True,
          "seller_gave_rights": True, "holding_period_elapsed": True},
         DealStatus.AGENT_ACCESS_CONFIRMED),
        ({"seller_agreed": True, "transaction_fee_paid": True, "agent_notified": True,
          "seller_gave_rights": True, "holding_period_elapsed": True, "seller_made_primary_owner": True},
         DealStatus.PROMOTION_COMPLETE),
    ])
    def test_status_follows_furthest_milestone(self, flags, expected):
        assert DealStateValidator.derive_status(make_deal(**flags)) == expected

    def test_terminal_status(self):
        deal = make_deal(
            seller_agreed=True, transaction_fee_paid=True, agent_notified=True, seller_gave_rights=True,
            holding_period_elapsed=True, seller_made_primary_owner=True, buyer_paid_seller=True,
            seller_confirmed_payment=True,
        )
        assert DealStateValidator.derive_status(deal) == DealStatus.SELLER_CONFIRMED_PAYMENT
        assert DealStateValidator.is_terminal(deal) is True

    def test_fee_paid_outranks_pending_crypto_intent(self):
        deal = make_deal(seller_agreed=True, transaction_fee_paid=True, fee_payment_initiated_at=HOLD_STARTED)
        assert DealStateValidator.derive_status(deal) == DealStatus.FEE_PAID


class TestValidate:

    def test_role_checked_before_anything_else(self):
        deal = make_deal(seller_agreed=True)
        with pytest.raises(Forbidden):
            DealStateValidator.validate(deal, DealTransition.SELLER_AGREE, PartyRole.BUYER)

    def test_already_done_reported_before_missing_milestones(self):
        deal = make_deal(buyer_agreed=False, seller_agreed=True)
        with pytest.raises(AlreadyDone):
            DealStateValidator.validate(deal, DealTransition.SELLER_AGREE, PartyRole.SELLER)

    def test_missing_milestones_are_listed(self):
        deal = make_deal()
        with pytest.raises(PreconditionFailed) as exc_info:
            DealStateValidator.validate(deal, DealTransition.CONFIRM_RIGHTS, PartyRole.SELLER)
        assert exc_info.value.extra["missing"] == ["transaction_fee_paid", "agent_notified"]

    def test_system_may_confirm_fee_but_not_agree(self):
        deal = make_deal(seller_agreed=True)
        DealStateValidator.validate(deal, DealTransition.CONFIRM_FEE_PAYMENT, PartyRole.SYSTEM)
        with pytest.raises(Forbidden):
            DealStateValidator.validate(make_deal(), DealTransition.SELLER_AGREE, PartyRole.SYSTEM)

    def test_admin_confirmation_role(self):
        deal = make_deal(
            seller_agreed=True, transaction_fee_paid=True, agent_notified=True, seller_gave_rights=True,
            holding_period_elapsed=True,
        )
        assert DealStateValidator.validate(deal, DealTransition.ADMIN_CONFIRM_PRIMARY_OWNER, PartyRole.ADMIN)
        with pytest.raises(Forbidden):
            DealStateValidator.validate(deal, DealTransition.ADMIN_CONFIRM_PRIMARY_OWNER, PartyRole.SELLER)
        with pytest.raises(Forbidden):
            DealStateValidator.validate(deal, DealTransition.CONFIRM_PRIMARY_OWNER, PartyRole.ADMIN)

    @pytest.mark.parametrize("transition", [
        DealTransition.CONFIRM_PAYMENT_TO_SELLER, DealTransition.CONFIRM_PRIMARY_OWNER,
    ])
    def test_none_role_is_always_forbidden(self, transition):
        with pytest.raises(Forbidden):
            DealStateValidator.validate(make_deal(), transition, PartyRole.NONE)


class TestSyncStatus:

    def test_writes_derived_status(self):
        deal = make_deal(seller_agreed=True, status="pending")
        assert DealStateValidator.sync_status(deal, DealTransition.SELLER_AGREE) == DealStatus.TERMS_AGREED
        assert deal.status == "terms_agreed"

    def test_unexpected_target_aborts(self):
        deal = make_deal(status="pending")
        with pytest.raises(RuntimeError):
            DealStateValidator.sync_status(deal, DealTransition.SELLER_AGREE)


class TestAvailableTransitions:

    def test_pending_deal(self):
        deal = make_deal()
        assert DealStateValidator.available_transitions(deal, PartyRole.SELLER) == [DealTransition.SELLER_AGREE]
        assert DealStateValidator.available_transitions(deal, PartyRole.BUYER) == []

    def test_internal_transitions_are_never_offered(self):
        deal = make_deal(seller_agreed=True, transaction_fee_paid=True)
        offered = DealStateValidator.available_transitions(deal, PartyRole.SYSTEM)
        assert DealTransition.NOTIFY_AGENT not in offered
        assert DealTransition.ELAPSE_HOLDING_PERIOD not in offered
