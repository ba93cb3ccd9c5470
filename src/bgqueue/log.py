import logging
import sys
from datetime import datetime
from typing import Optional

ROOT_LOGGER_NAME = "bgqueue"

logging.getLogger(ROOT_LOGGER_NAME).addHandler(logging.NullHandler())


class ComponentFormatter(logging.Formatter):
    """
    Tabular formatter: ``[HH:MM:SS] [component]   [LEVEL]   message``.
    """

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        component = record.name.split(".")[-1] if "." in record.name else record.name
        component_section = f"[{component}]".ljust(14)
        level_section = f"[{record.levelname}]".ljust(10)

        formatted = f"[{time_str}] {component_section}{level_section}{record.getMessage()}"
        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)
        return formatted


def get_logger(component_name: str) -> logging.Logger:
    """Get the logger for a queue component, e.g. ``get_logger("reaper")``."""
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{component_name}")


def configure_logging(level: int = logging.INFO, stream: Optional[object] = None) -> logging.Logger:
    """
    Attach a stream handler to the ``bgqueue`` logger.

    Libraries should not configure logging on import; applications that want the queue's
    own output format call this once at startup. Calling it again only updates the level.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        handler = logging.StreamHandler(stream or sys.stdout)
        handler.setFormatter(ComponentFormatter())
        logger.addHandler(handler)
        logger.propagate = False
    logger.setLevel(level)
    for handler in logger.handlers:
        handler.setLevel(level)
    return logger
