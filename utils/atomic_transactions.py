"""Atomic transaction utilities for deal state changes"""

import logging
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Deal
from utils.exception_handler import DealNotFound

logger = logging.getLogger(__name__)


@contextmanager
def atomic_transaction(session_factory: Optional[Callable[[], Session]] = None) -> Generator[Session, None, None]:
    """
    Synchronous context manager for atomic database transactions with proper rollback.

    Every write made inside the block (deal flags, audit entries, ledger rows)
    commits together or rolls back together.
    """
    if session_factory is None:
        from database import SessionLocal
        session_factory = SessionLocal

    session = session_factory()
    try:
        yield session
        session.commit()
        logger.debug("Sync atomic transaction committed successfully")
    except Exception as e:
        session.rollback()
        logger.debug(f"Sync transaction rolled back due to error: {type(e).__name__}: {e}")
        raise
    finally:
        session.close()


def load_deal_for_update(session: Session, deal_id: int) -> Deal:
    """
    Load a deal with a row-level lock (SELECT ... FOR UPDATE).

    Two concurrent transitions on the same deal serialize here; the second one
    observes the flags written by the first. Different deals never contend.
    """
    deal = session.execute(
        select(Deal).where(Deal.id == deal_id).with_for_update()
    ).scalar_one_or_none()
    if deal is None:
        raise DealNotFound(f"Deal {deal_id} not found")
    logger.debug(f"Acquired row lock for deal {deal_id}")
    return deal
