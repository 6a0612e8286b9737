"""Logging configuration."""

from __future__ import annotations

import logging

from rich.logging import RichHandler

# Chatty third-party loggers that drown out phase progress
NOISY_LOGGERS = ("boto3", "botocore", "urllib3", "s3transfer")


def setup_logging(level: str = "INFO", verbose: bool = False) -> None:
    """Configure root logging with a Rich console handler.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        verbose: Include module paths and keep AWS SDK debug output
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = RichHandler(
        rich_tracebacks=verbose,
        show_path=verbose,
        markup=False,
    )
    logging.basicConfig(
        level=log_level,
        format="%(name)s: %(message)s" if verbose else "%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )

    if not verbose:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
