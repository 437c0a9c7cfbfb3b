'''
Application logger, shared by every layer as `log`.
'''
import logging
import sys

from .config import settings

def setup_logger(name: str = 'TL-backend') -> logging.Logger:
    """
    Configures the application logger: stdout, level from LOG_LEVEL.
    Ledger mutations are logged at INFO with their before/after values.
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        '%(asctime)s - %(module)s - %(levelname)s - %(message)s'
    )
    handler.setFormatter(formatter)

    if not logger.handlers:
        logger.addHandler(handler)
    # keep records out of the root logger's handlers
    logger.propagate = False

    return logger

# Create a single logger instance to be imported by other modules
log = setup_logger()
