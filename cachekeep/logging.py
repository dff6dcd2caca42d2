"""Log sink setup."""

import sys

from loguru import logger

from cachekeep.config.schema import Config


def setup_logging(config: Config | None = None) -> None:
    """Replace loguru's default sink with a stderr sink at the configured level."""
    config = config or Config()
    logger.remove()
    logger.add(sys.stderr, level=config.log_level)
