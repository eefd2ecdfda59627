# affiliate_engine/worker.py
"""Long-running process executing the scheduled affiliate payout cycle."""
import asyncio
import logging

from affiliate_engine.core.config import settings
from affiliate_engine.core.logging_config import configure_logging
from affiliate_engine.core.tasks import run_payouts_periodically
from affiliate_engine.db.session import init_db

logger = logging.getLogger(__name__)


def main() -> None:
    configure_logging()
    logger.info(f"Starting {settings.PROJECT_NAME} payout worker ({settings.ENVIRONMENT})")
    init_db()
    try:
        asyncio.run(run_payouts_periodically())
    except KeyboardInterrupt:
        logger.info("Payout worker stopped")


if __name__ == "__main__":
    main()
