"""Logging helpers for the log statistics engine."""

from __future__ import annotations

import logging


def get_logger(name: str) -> logging.Logger:
    """Return a namespaced logger with sensible defaults."""

    logger = logging.getLogger(f"mongo_logstats.{name}")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False
    return logger


def set_verbosity(verbose: bool) -> None:
    """Lower every project handler to DEBUG when *verbose* is requested."""

    level = logging.DEBUG if verbose else logging.INFO
    manager = logging.Logger.manager
    for name, logger in list(manager.loggerDict.items()):
        if not name.startswith("mongo_logstats.") or not isinstance(logger, logging.Logger):
            continue
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setLevel(level)
