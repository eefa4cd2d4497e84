"""Настройка логирования для приложения ephemera."""

import logging
import sys
from collections.abc import Iterable

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def setup_logging(level: str = "INFO", quiet_loggers: Iterable[str] = ()) -> None:
    """Настроить корневой логгер на stderr.

    Args:
        level: Имя уровня логирования (DEBUG, INFO, WARNING, ERROR).
            Неизвестное имя трактуется как INFO.
        quiet_loggers: Логгеры, которым поднять уровень до WARNING
            (например, ``uvicorn.access`` у сервера).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))

    root = logging.getLogger()
    root.setLevel(numeric_level)
    root.handlers.clear()
    root.addHandler(handler)

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)
