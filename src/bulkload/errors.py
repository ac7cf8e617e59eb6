from __future__ import annotations

from typing import Any


class BulkLoadError(Exception):
    """Base class for every error raised by the loader."""


class ConfigurationError(BulkLoadError):
    """
    A control file or options block could not be resolved.

    Always fatal, raised before any record is read.
    `line` and `keyword` point at the offending directive when known.
    """

    def __init__(self, message: str, *, line: int | None = None, keyword: str | None = None, value: str | None = None):
        self.message = message
        self.line = line
        self.keyword = keyword
        self.value = value
        super().__init__(self._render())

    def _render(self) -> str:
        if self.line is None:
            return self.message
        if self.keyword is not None and self.value is not None:
            return f'{self.message} (line {self.line}: "{self.keyword} = {self.value}")'
        return f"{self.message} (line {self.line})"


class RecordError(BulkLoadError):
    """
    A single record could not be turned into a row.

    Recoverable: the orchestrator counts it against PARSE_ERRORS, logs it and
    dumps the raw record. `field` is 1-based, `0` for record-level failures.
    """

    def __init__(self, code: Any, detail: str, *, field: int = 0):
        self.code = code
        self.detail = detail
        self.field = field
        super().__init__(detail)


class FilterDefinitionError(BulkLoadError):
    """The filter function cannot feed the target table (shape or type mismatch)."""


class FunctionCallError(BulkLoadError):
    """A transformation function raised. Its sub-transaction has been rolled back."""


class LoadCancelled(BulkLoadError):
    """The load was cancelled from outside. Never absorbed by any quota."""


class StoreError(BulkLoadError):
    """The storage engine failed. Fatal for the load."""


class UniqueViolation(StoreError):
    """
    A row collides with an existing row on a unique key.

    `constraint` names the violated unique index or key when the engine reports it.
    """

    def __init__(self, message: str, *, constraint: str | None = None):
        self.constraint = constraint
        super().__init__(message)


class WriterError(BulkLoadError):
    """A writer (or one of its parallel workers) failed. Fatal for the load."""
