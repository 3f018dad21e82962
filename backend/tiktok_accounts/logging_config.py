"""Logging setup."""
import logging
from typing import Optional

from tiktok_accounts.config import get_settings


LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: Optional[str] = None) -> None:
    """
    Configure root logging once for the process.
    
    Args:
        level: Log level name; defaults to the LOG_LEVEL setting
    """
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=LOG_FORMAT)
