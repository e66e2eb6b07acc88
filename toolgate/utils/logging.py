"""Logging configuration.

Records emitted while a turn is running are tagged with that turn's
conversation id, so interleaved turns can be told apart in the output.
"""

import contextvars
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager

from pydantic import BaseModel

NO_CONVERSATION = "-"

_current_conversation: contextvars.ContextVar[str] = contextvars.ContextVar(
    "toolgate_conversation_id", default=NO_CONVERSATION
)


class LogConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - [%(conversation_id)s] %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"


class ConversationFilter(logging.Filter):
    """Adds the active conversation id to every record as ``conversation_id``."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "conversation_id"):
            record.conversation_id = _current_conversation.get()
        return True


@contextmanager
def conversation_logging(conversation_id: str) -> Iterator[None]:
    """Tag log records from the current task with a conversation id."""
    token = _current_conversation.set(conversation_id)
    try:
        yield
    finally:
        _current_conversation.reset(token)


def current_conversation_id() -> str:
    return _current_conversation.get()


def setup_logging(config: LogConfig | None = None) -> None:
    """Set up logging for the service, reading LOG_LEVEL when no config is given."""
    if config is None:
        config = LogConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(config.format, datefmt=config.date_format))
    handler.addFilter(ConversationFilter())

    logging.basicConfig(level=getattr(logging, config.level.upper()), handlers=[handler], force=True)

    for noisy in ("anthropic", "httpx", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Get a logger for a specific module.

    Args:
        name: Module name (typically __name__)
        level: Optional explicit level, otherwise LOG_LEVEL or INFO

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    log_level = level if level else os.getenv("LOG_LEVEL", "INFO")
    logger.setLevel(log_level.upper())

    return logger
