"""
Deal Audit Trail
Append-only history of every deal transition, for dispute resolution.

Entries are written to the `deal_history` table inside the caller's
transaction (so they commit or roll back with the state change). The JSON
line mirrored to the `audit` file logger is only staged by append(); the
caller writes it with write_file_records() once the transaction committed.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import Deal, DealAction, DealHistory
from utils.datetime_helpers import isoformat_or_none

logger = logging.getLogger(__name__)


def _build_audit_file_logger() -> logging.Logger:
    audit = logging.getLogger('audit')
    if not any(getattr(h, '_deal_audit', False) for h in audit.handlers):
        audit_handler = logging.FileHandler(Config.AUDIT_LOG_FILE, delay=True)
        audit_handler.setFormatter(logging.Formatter('%(asctime)s [AUDIT] %(levelname)s - %(message)s'))
        audit_handler._deal_audit = True
        audit.addHandler(audit_handler)
    audit.setLevel(logging.INFO)
    return audit


class DealAuditTrail:
    """Writes and reads deal history entries"""

    def __init__(self):
        self.audit_logger = _build_audit_file_logger()

    def append(
        self,
        session: Session,
        deal: Deal,
        action: DealAction,
        description: str,
        occurred_at: datetime,
        acting_party_id: Optional[int] = None,
        file_records: Optional[List[Dict[str, Any]]] = None,
    ) -> DealHistory:
        """
        Stage one history row in the current transaction. `acting_party_id=None`
        marks a system entry. The file-log record goes into `file_records`, to be
        written after commit.
        """
        entry = DealHistory(
            deal_id=deal.id,
            action_type=action.value,
            acting_party_id=acting_party_id,
            description=description,
            occurred_at=occurred_at,
        )
        session.add(entry)

        if file_records is not None:
            file_records.append({
                'timestamp': isoformat_or_none(occurred_at),
                'deal_id': deal.id,
                'transaction_id': deal.transaction_id,
                'action': action.value,
                'acting_party_id': acting_party_id,
                'description': description,
            })
        logger.info(
            f"📝 DEAL_AUDIT: deal {deal.id} {action.value} by "
            f"{acting_party_id if acting_party_id is not None else 'system'}"
        )
        return entry

    def write_file_records(self, file_records: List[Dict[str, Any]]) -> None:
        """Mirror committed entries to the audit file log"""
        for record in file_records:
            self.audit_logger.info(json.dumps(record))

    @staticmethod
    def history_for(session: Session, deal_id: int) -> List[DealHistory]:
        return list(
            session.execute(
                select(DealHistory)
                .where(DealHistory.deal_id == deal_id)
                .order_by(DealHistory.occurred_at, DealHistory.id)
            ).scalars()
        )

    @staticmethod
    def serialize(entry: DealHistory) -> Dict[str, Any]:
        return {
            'id': entry.id,
            'deal_id': entry.deal_id,
            'action_type': entry.action_type,
            'acting_party_id': entry.acting_party_id,
            'description': entry.description,
            'occurred_at': isoformat_or_none(entry.occurred_at),
        }


# Global audit trail instance
deal_audit_trail = DealAuditTrail()
