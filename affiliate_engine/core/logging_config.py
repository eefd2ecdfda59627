# affiliate_engine/core/logging_config.py
import logging

from .config import settings


def configure_logging(level: str = None) -> None:
    """Configure root logging for the worker and management scripts"""
    log_level = getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(process)d - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler()  # container runtimes capture stdout/stderr
        ]
    )
    # SQL echo is controlled by SQL_ECHO, keep the engine logger quiet otherwise
    if not settings.SQL_ECHO:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
