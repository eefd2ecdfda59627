# affiliate_engine/core/tasks.py
import asyncio
import logging
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Session

from affiliate_engine.core.config import settings
from affiliate_engine.db.session import SessionLocal
from affiliate_engine.services.payout_service import PayoutService
from affiliate_engine.services.stripe_service import StripeService

logger = logging.getLogger(__name__)

async def run_payouts_periodically(interval_seconds: Optional[int] = None, max_runs: Optional[int] = None):
    """
    Background task running the affiliate payout cycle.
    Runs every AFFILIATE_PAYOUT_INTERVAL_SECONDS; a failed run is logged and
    retried on the next tick.
    """
    interval = settings.AFFILIATE_PAYOUT_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
    runs = 0
    while max_runs is None or runs < max_runs:
        runs += 1
        try:
            logger.info("Running scheduled affiliate payouts")

            # Create a new database session
            db: Session = SessionLocal()

            try:
                created = run_payouts_once(db)
                if created > 0:
                    logger.info(f"Scheduled run created {created} affiliate payouts")
            finally:
                db.close()

        except Exception as e:
            logger.error(f"Error in affiliate payout task: {str(e)}")

        if max_runs is None or runs < max_runs:
            await asyncio.sleep(interval)

def run_payouts_once(db: Session, as_of: Optional[datetime] = None) -> int:
    """
    Run one payout cycle on the given session
    Returns number of payouts created
    """
    service = PayoutService(db, StripeService())
    return service.run_payouts(as_of)
