"""Error and event reporting seam shared by the ingestion and tracker code."""
from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol


class Observer(Protocol):
    """Sink for errors and notable events."""

    def record_error(self, context: str, error: BaseException) -> None: ...

    def record_event(self, name: str, attrs: Mapping[str, Any] | None = None) -> None: ...


class LoggingObserver:
    """Observer that reports through the standard logging tree."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("app.observer")

    def record_error(self, context: str, error: BaseException) -> None:
        self._logger.error("%s: %s", context, error, exc_info=error)

    def record_event(self, name: str, attrs: Mapping[str, Any] | None = None) -> None:
        self._logger.info("%s %s", name, dict(attrs or {}))


_default_observer = LoggingObserver()


def get_observer() -> Observer:
    """FastAPI dependency returning the process observer."""

    return _default_observer
