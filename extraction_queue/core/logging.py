"""Logging setup: plain text locally, JSON lines in deployed environments.

Every record carries a ``correlation_id`` attribute taken from the task or
email currently being processed by this thread (``-`` when none is bound).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

from pythonjsonlogger.json import JsonFormatter

_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="-")


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get()
        return True


@contextmanager
def bind_correlation_id(value: str | None) -> Iterator[None]:
    token = _correlation_id.set(value or "-")
    try:
        yield
    finally:
        _correlation_id.reset(token)


def current_correlation_id() -> str:
    return _correlation_id.get()


def setup_logging(*, level: str = "INFO", json_output: bool = False) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for h in root.handlers[:]:
        root.removeHandler(h)

    handler = logging.StreamHandler()
    handler.addFilter(CorrelationIdFilter())
    if json_output:
        handler.setFormatter(JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(message)s %(correlation_id)s",
            rename_fields={"levelname": "severity", "name": "logger"},
        ))
    else:
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s [%(correlation_id)s]  %(message)s",
            datefmt="%H:%M:%S",
        ))

    root.addHandler(handler)
