"""Acting-party role resolution"""

import pytest

from models import Deal, PartyRole
from services.deal_authorization import (
    ActingParty, SYSTEM_PARTY, require_admin, require_authenticated, require_party, resolve_role
)
from utils.exception_handler import Forbidden, Unauthenticated

from tests.conftest import AGENT_ID, BUYER_ID, SELLER_ID, STRANGER_ID


@pytest.fixture
def deal():
    return Deal(id=7, buyer_id=BUYER_ID, seller_id=SELLER_ID)


class TestResolveRole:

    def test_parties(self, deal):
        assert resolve_role(deal, ActingParty(BUYER_ID)) == PartyRole.BUYER
        assert resolve_role(deal, ActingParty(SELLER_ID)) == PartyRole.SELLER
        assert resolve_role(deal, ActingParty(STRANGER_ID)) == PartyRole.NONE

    def test_agent_outside_the_deal_is_admin(self, deal):
        assert resolve_role(deal, ActingParty(AGENT_ID, is_agent=True)) == PartyRole.ADMIN

    def test_party_role_wins_over_agent_claim(self, deal):
        assert resolve_role(deal, ActingParty(SELLER_ID, is_agent=True)) == PartyRole.SELLER

    def test_anonymous(self, deal):
        assert resolve_role(deal, SYSTEM_PARTY) == PartyRole.NONE


class TestGuards:

    def test_agent_claim_from_configured_operators(self):
        assert ActingParty.from_user_id(AGENT_ID).is_agent is True
        assert ActingParty.from_user_id(BUYER_ID).is_agent is False

    def test_require_authenticated(self):
        with pytest.raises(Unauthenticated):
            require_authenticated(ActingParty(None))
        with pytest.raises(Unauthenticated):
            require_authenticated(None)

    def test_require_admin(self):
        assert require_admin(ActingParty(AGENT_ID, is_agent=True)).user_id == AGENT_ID
        with pytest.raises(Forbidden):
            require_admin(ActingParty(BUYER_ID))

    def test_require_party(self, deal):
        assert require_party(deal, ActingParty(BUYER_ID), [PartyRole.BUYER]) == PartyRole.BUYER
        with pytest.raises(Forbidden):
            require_party(deal, ActingParty(SELLER_ID), [PartyRole.BUYER])
        with pytest.raises(Forbidden):
            require_party(deal, ActingParty(STRANGER_ID), [PartyRole.BUYER, PartyRole.SELLER])
