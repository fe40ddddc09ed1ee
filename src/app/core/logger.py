import logging

from .config import settings

# Chatty third-party loggers kept at WARNING unless running at DEBUG
_NOISY_LOGGERS = ("nodriver", "websockets", "uc.connection")


def setup_logging(level: str | None = None, fmt: str | None = None) -> None:
    """Configure the root logger from LOG_LEVEL / LOG_FORMAT."""
    level_name = (level or settings.LOG_LEVEL).upper()
    logging.basicConfig(level=level_name, format=fmt or settings.LOG_FORMAT, force=True)

    if level_name != "DEBUG":
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)
