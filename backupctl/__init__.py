import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '1.0.0'

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def configure_logging(config, verbose=False):
    """Configure application logging"""

    # Create log directory if it doesn't exist
    log_dir = os.path.dirname(os.path.abspath(config.log_file))
    os.makedirs(log_dir, exist_ok=True)

    log_level = logging.DEBUG if verbose else logging.INFO
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    # File handler (appends; rolls over at 10MB)
    file_handler = RotatingFileHandler(
        config.log_file,
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    # Configure package logger
    logger = logging.getLogger('backupctl')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(log_level)
    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)}, file: {config.log_file})")
    return logger
