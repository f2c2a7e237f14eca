from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Chatty third-party loggers pinned to WARNING unless debugging them.
_NOISY_LOGGERS = ("httpx", "httpcore")


def configure_logging(level: str, log_file: str | None = None) -> None:
    """Install the root handler(s) for a pipeline run.

    ``log_file`` adds a file handler next to stderr so long proving runs
    leave a trail after the terminal is gone.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
