import logging
import os
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
    "NOTSET": logging.NOTSET,
}


def _parse_level(value, default: int = logging.INFO) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default
    if text in _LEVELS:
        return _LEVELS[text]
    try:
        return int(text)
    except ValueError:
        return default


def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure root logging for the server.

    Safe to call more than once: existing root handlers are replaced, so the
    entrypoint and the app module can both call it.
    """
    level = _parse_level(log_level)
    formatter = logging.Formatter(fmt=DEFAULT_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file and log_file.strip():
        path = Path(os.path.expanduser(log_file))
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    # Library loggers
    logging.getLogger("uvicorn.access").setLevel(max(level, logging.WARNING))
    logging.getLogger("redis").setLevel(max(level, logging.WARNING))

    logging.captureWarnings(True)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
