"""Centralized logging setup for the document review pipeline.

All modules log through named stdlib loggers; ``setup_logging`` installs
a single stdout handler on the root logger the first time it is called.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are chatty at INFO (Azure logs every HTTP
# request and response header set).
NOISY_LOGGERS = (
    "azure.core.pipeline.policies.http_logging_policy",
    "PIL",
    "multipart",
)


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with a standard format.

    Calling this again only adjusts the level; handlers are never duplicated.

    Args:
        level: Logging level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))

    if root.handlers:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Get a named logger instance.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.

    Returns:
        Configured logger instance.
    """
    return logging.getLogger(name)
