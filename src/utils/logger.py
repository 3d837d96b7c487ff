import logging
import os

from rich.logging import RichHandler

from utils.config import get_settings

# keys passed via `extra=` that are rendered after the message
CONTEXT_KEYS = ("order_id", "order_number", "provider", "provider_ref")


class ShopFormatter(logging.Formatter):
    """Pads logger names to a common width and appends order/provider context."""

    name_width = 14  # grows with the longest logger name seen

    def __init__(self, fmt=None, datefmt=None, style="%", initial_width=14):
        super().__init__(fmt, datefmt, style)
        ShopFormatter.name_width = initial_width

    def format(self, record):
        ShopFormatter.name_width = max(ShopFormatter.name_width, len(record.name))
        record.name = record.name.center(ShopFormatter.name_width)

        message = super().format(record)
        context = [
            f"{key}={getattr(record, key)}"
            for key in CONTEXT_KEYS
            if getattr(record, key, None) is not None
        ]
        if context:
            message = f"{message}  ({', '.join(context)})"
        return message


def _resolve_level() -> int:
    if os.getenv("DEBUG"):
        return logging.DEBUG
    level = logging.getLevelName(get_settings().log_level.upper())
    return level if isinstance(level, int) else logging.INFO


def get_logger(name=None) -> logging.Logger:
    """
    Creates and returns a logger configured with RichHandler for rich output.
    """
    if name is None:
        name = "shop"
    logger = logging.getLogger(name)
    log_level = _resolve_level()
    logger.setLevel(log_level)

    if not logger.handlers:
        formatter = ShopFormatter("[%(name)s]  %(message)s")

        console_handler = RichHandler(
            show_time=True,
            show_level=True,
            show_path=False,
            rich_tracebacks=True,
            log_time_format="[%X]",
        )
        console_handler.setFormatter(formatter)
        console_handler.setLevel(log_level)
        logger.addHandler(console_handler)

        logger.propagate = False
        logger.debug(f"Logger for '{name}' initialized with RichHandler.")

    return logger
