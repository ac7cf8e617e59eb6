from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

from bulkload.errors import LoadCancelled
from bulkload.parsing.types import ParseCursor


class CancelToken:
    """Set from outside (signal handler, another thread) to stop a running load."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise LoadCancelled("canceling statement due to user request")


@dataclass(slots=True)
class ErrorCounters:
    parse_errors: int = 0
    duplicate_errors: int = 0


@dataclass(slots=True)
class LoadContext:
    """State one load threads through its stages."""
    log: Any                                    # bound structlog logger of the load log
    cancel: CancelToken = field(default_factory=CancelToken)
    counters: ErrorCounters = field(default_factory=ErrorCounters)
    cursor: ParseCursor = field(default_factory=ParseCursor)
