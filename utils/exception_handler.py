"""
Exception Handler Module
Deal engine exceptions and their HTTP rendering.

Every failure carries a stable machine-readable `kind` plus a human-readable
message; clients re-render the available next actions from the deal state
instead of retrying blindly.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class DealError(Exception):
    """Base class for every failure surfaced by the deal engine"""

    kind = "deal_error"
    http_status = 400

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        body = {"success": False, "error": self.kind, "message": self.message}
        body.update(self.extra)
        return body


class ValidationError(DealError):
    """Malformed or missing input"""
    kind = "validation_error"
    http_status = 400


class Unauthenticated(DealError):
    """No acting identity supplied"""
    kind = "unauthenticated"
    http_status = 401


class Forbidden(DealError):
    """Identity present but wrong role or party for this deal"""
    kind = "forbidden"
    http_status = 403


class RoleMismatch(DealError):
    """Declared payer role does not match the actor's role in the deal"""
    kind = "role_mismatch"
    http_status = 400


class DealNotFound(DealError):
    """Deal or related entity absent"""
    kind = "not_found"
    http_status = 404


class PreconditionFailed(DealError):
    """An earlier milestone is missing"""
    kind = "precondition_failed"
    http_status = 400


class AlreadyDone(DealError):
    """Milestone already reached; repeating it is rejected"""
    kind = "already_done"
    http_status = 400


class TimerNotElapsed(DealError):
    """Holding period still active"""
    kind = "timer_not_elapsed"
    http_status = 400

    def __init__(self, message: str, remaining: timedelta, expires_at=None):
        self.remaining = remaining
        self.expires_at = expires_at
        super().__init__(
            message,
            remaining_seconds=int(remaining.total_seconds()),
            holding_period_expires_at=expires_at.isoformat() if expires_at else None,
        )


class PaymentRailError(DealError):
    """Settlement rail failed to charge or to open an invoice"""
    kind = "payment_rail_error"
    http_status = 500


def deal_error_response(error: DealError, deal_id: Optional[int] = None) -> Dict[str, Any]:
    """Render a DealError as the JSON body returned to clients, logging it on the way"""
    if error.http_status >= 500:
        logger.error(f"❌ DEAL_ERROR[{error.kind}] deal={deal_id}: {error.message}")
    else:
        logger.info(f"🚫 DEAL_REJECTED[{error.kind}] deal={deal_id}: {error.message}")
    return error.to_response()
