#!/usr/bin/env python3
"""
Run one affiliate payout cycle by hand, outside the scheduled worker
"""
import argparse
import logging
import sys
from datetime import datetime

from affiliate_engine.core.logging_config import configure_logging
from affiliate_engine.core.tasks import run_payouts_once
from affiliate_engine.db.session import get_db_context, test_db_connection

logger = logging.getLogger(__name__)

def parse_args():
    parser = argparse.ArgumentParser(description="Release matured commissions and create affiliate payouts")
    parser.add_argument(
        "--as-of",
        type=datetime.fromisoformat,
        default=None,
        help="Run time in ISO format (UTC), defaults to now"
    )
    return parser.parse_args()

def main():
    configure_logging()
    args = parse_args()

    if not test_db_connection():
        logger.error("❌ Database is not reachable, aborting payout run")
        return 1

    try:
        with get_db_context() as db:
            created = run_payouts_once(db, args.as_of)
        logger.info(f"✅ Payout run finished, {created} payouts created")
        return 0
    except Exception as e:
        logger.error(f"❌ Payout run failed: {e}")
        raise

if __name__ == "__main__":
    sys.exit(main())
