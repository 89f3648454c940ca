"""
Deal Authorization Guard

Resolves the acting party's role relative to one deal. The admin/agent claim
is asserted once at the HTTP boundary (from configured operator identities)
and passed in explicitly; nothing here reads process-wide admin lists.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from config import Config
from models import Deal, PartyRole
from utils.exception_handler import Forbidden, Unauthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActingParty:
    """Opaque identity handed over by the identity collaborator"""
    user_id: Optional[int]
    is_agent: bool = False

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    @classmethod
    def from_user_id(cls, user_id: Optional[int]) -> "ActingParty":
        """Build an acting party, asserting the agent claim from configured operator ids"""
        return cls(user_id=user_id, is_agent=Config.is_agent_operator(user_id))


SYSTEM_PARTY = ActingParty(user_id=None, is_agent=False)


def resolve_role(deal: Deal, actor: ActingParty) -> PartyRole:
    """
    Buyer and seller are matched by id against the deal. An agent who is not a
    party to the deal resolves to admin; a party to the deal keeps their party
    role even when they also hold the agent claim.
    """
    if not actor.authenticated:
        return PartyRole.NONE
    if actor.user_id == deal.buyer_id:
        return PartyRole.BUYER
    if actor.user_id == deal.seller_id:
        return PartyRole.SELLER
    if actor.is_agent:
        return PartyRole.ADMIN
    return PartyRole.NONE


def require_authenticated(actor: Optional[ActingParty]) -> ActingParty:
    if actor is None or not actor.authenticated:
        raise Unauthenticated("Authentication required")
    return actor


def require_admin(actor: Optional[ActingParty]) -> ActingParty:
    actor = require_authenticated(actor)
    if not actor.is_agent:
        logger.warning(f"🚫 AUTH_DENIED: user {actor.user_id} attempted an agent-only operation")
        raise Forbidden("Admin access required")
    return actor


def require_party(deal: Deal, actor: Optional[ActingParty], allowed: Iterable[PartyRole]) -> PartyRole:
    """Resolve the actor's role and reject anyone outside `allowed` with Forbidden"""
    actor = require_authenticated(actor)
    role = resolve_role(deal, actor)
    allowed = set(allowed)
    if role == PartyRole.NONE or role not in allowed:
        logger.warning(
            f"🚫 AUTH_DENIED: user {actor.user_id} ({role.value}) not permitted on deal {deal.id}"
        )
        raise Forbidden("You are not authorized to access this deal")
    return role
