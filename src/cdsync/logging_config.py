#!/usr/bin/env python3
"""Logging configuration for cdsync.

Console output is terse unless running at DEBUG; the log file (when
given) always receives everything, with source locations. Every remote
change is logged once, prefixed with ``[DRY RUN]`` when only simulated.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

DRY_RUN_PREFIX = "[DRY RUN] "

DETAILED_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
CONSOLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'

QUIET_LOGGERS = ('urllib3', 'requests', 'keyring')


def _handler(handler: logging.Handler, level: int, detailed: bool) -> logging.Handler:
    handler.setLevel(level)
    if detailed:
        handler.setFormatter(logging.Formatter(DETAILED_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
    else:
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
    return handler


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """Configure the root logger for a cdsync command.

    Args:
        level: Console log level name; defaults to $CDSYNC_LOG_LEVEL, then INFO
        log_file: Also append full DEBUG output to this file
    """
    level = (level or os.environ.get('CDSYNC_LOG_LEVEL') or 'INFO').upper()
    numeric_level = getattr(logging, level, logging.INFO)

    root_logger = logging.getLogger()
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    root_logger.addHandler(_handler(
        logging.StreamHandler(sys.stdout), numeric_level, detailed=numeric_level == logging.DEBUG
    ))
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(_handler(logging.FileHandler(log_file), logging.DEBUG, detailed=True))
        root_logger.setLevel(logging.DEBUG)
    else:
        root_logger.setLevel(numeric_level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug(
        f"cdsync logging initialized at {level} level" + (f", file {log_file}" if log_file else "")
    )


class AccountLogger(logging.LoggerAdapter):
    """Prefix messages with ``[Provider][account]``."""

    def process(self, msg, kwargs):
        return f"[{self.extra['provider']}][{self.extra['account_id']}] {msg}", kwargs


def account_logger(logger: logging.Logger, provider: str, account_id: str) -> AccountLogger:
    """Get a logger that tags every message with the account it concerns.

    Args:
        logger: Module logger
        provider: Provider name
        account_id: Account identifier

    Returns:
        Logger adapter
    """
    return AccountLogger(logger, {'provider': provider, 'account_id': account_id})


def action_message(message: str, dry_run: bool) -> str:
    """Prefix an action message when it is only simulated."""
    return f"{DRY_RUN_PREFIX}{message}" if dry_run else message
