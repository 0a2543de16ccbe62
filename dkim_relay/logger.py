"""Logging helpers for the DKIM relay."""

import logging


def get_logger(name: str = "DkimRelay") -> logging.Logger:
    """Return a :class:`logging.Logger` instance.

    Note: handlers are configured once by the entry point through
    :func:`configure_logging`; this helper never attaches handlers itself.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for a server process."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format='[%(asctime)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True  # Force reconfiguration to avoid duplicate handlers
    )
