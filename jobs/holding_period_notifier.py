"""
Holding Period Notifier
Marks expired holding periods as elapsed and tells both parties the agent can
now be promoted. Meant to be run from cron; promotion itself never depends on
this job because the engine applies the same update lazily.

    python -m jobs.holding_period_notifier
"""

import logging
import os
import sys
from typing import Optional

from dotenv import load_dotenv

# Environment must be loaded before Config is imported
load_dotenv(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), '.env'))

from services.deal_lifecycle_engine import DealLifecycleEngine

logger = logging.getLogger(__name__)


def run_holding_period_notifier(engine: Optional[DealLifecycleEngine] = None, batch_size: int = 100) -> int:
    """Process one batch of expired holds; returns how many deals were updated"""
    engine = engine or DealLifecycleEngine()
    try:
        updated = engine.notify_elapsed_holding_periods(limit=batch_size)
        if updated > 0:
            logger.info(f"⏰ Holding period sweep: {updated} deals moved to agent_access_confirmed")
        else:
            logger.debug("Holding period sweep: nothing expired")
        return updated
    except Exception as e:
        logger.error(f"Error running holding period sweep: {e}", exc_info=True)
        return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    run_holding_period_notifier()
