"""Helper utilities for the Channel Escrow deal service"""

import re
import secrets
import time
import logging
from typing import Optional

logger = logging.getLogger(__name__)

_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def generate_transaction_id() -> str:
    """
    Generate the human-referenceable deal identifier.

    Format: TXN<unix seconds><4 random digits>, e.g. TXN17100000001234.
    Uniqueness is enforced by the deals.transaction_id constraint; callers retry
    on collision.
    """
    return f"TXN{int(time.time())}{secrets.randbelow(9000) + 1000}"


def generate_order_id(deal_id: int, timestamp: Optional[float] = None) -> str:
    """Processor order id for an escrow-fee invoice: deal_<deal id>_<unix seconds>"""
    return f"deal_{deal_id}_{int(timestamp if timestamp is not None else time.time())}"


def parse_order_id(order_id: str) -> Optional[int]:
    """Extract the deal id from a processor order id, None when malformed"""
    match = re.match(r"^deal_(\d+)_\d+$", order_id or "")
    if not match:
        return None
    return int(match.group(1))


def validate_email(email: str) -> bool:
    """Validate email address format"""
    if not email or not isinstance(email, str):
        return False
    if email.count('@') != 1:
        return False

    local_part, domain_part = email.split('@')
    if not local_part or len(local_part) > 64 or '..' in local_part:
        return False
    if not domain_part or len(domain_part) > 253 or '..' in domain_part:
        return False
    return _EMAIL_PATTERN.match(email) is not None
