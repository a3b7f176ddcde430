"""Logging setup.

Components never look up a process-wide logger on their own: the entry point
builds one with ``setup_logging`` and passes it down, and each component derives
its own child with ``component_logger``.
"""

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
ROOT_LOGGER_NAME = "rag_pipeline"


def setup_logging(
    level: str = "INFO", log_file: Optional[str] = None, name: str = ROOT_LOGGER_NAME
) -> logging.Logger:
    """Configure process logging and return the pipeline's root logger."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)

    logger = logging.getLogger(name)
    logger.setLevel(level.upper())

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        already_attached = any(
            isinstance(h, logging.FileHandler) and Path(h.baseFilename) == path.resolve()
            for h in logger.handlers
        )
        if not already_attached:
            handler = logging.FileHandler(path, encoding="utf-8")
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)

    # Quiet noisy HTTP client loggers
    for noisy in ("httpx", "openai", "aiohttp.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger


def component_logger(parent: Optional[logging.Logger], name: str) -> logging.Logger:
    """Return the child logger for a component, rooted at ``parent`` when given."""
    if parent is None:
        return logging.getLogger(ROOT_LOGGER_NAME).getChild(name)
    return parent.getChild(name)
