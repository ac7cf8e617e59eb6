from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class RejectCode(str, Enum):
    """Typed rejection classifications for record-level errors."""
    missing_data = "missing_data"               # fewer fields than the schema needs
    extra_data = "extra_data"                   # more fields than the schema takes
    invalid_int = "invalid_int"
    invalid_numeric = "invalid_numeric"
    invalid_float = "invalid_float"
    invalid_bool = "invalid_bool"
    invalid_timestamp = "invalid_timestamp"     # also used for date parsing errors
    invalid_text = "invalid_text"               # length / format of text-like values
    invalid_encoding = "invalid_encoding"
    malformed_record = "malformed_record"       # quoting, parentheses, short binary record
    not_null_violation = "not_null_violation"
    check_violation = "check_violation"
    filter_failed = "filter_failed"


# Row values aligned with a `Schema`, `None` is SQL null.
Row = tuple[Any, ...]


@dataclass(frozen=True, slots=True)
class Column:
    """One column of a target table or one argument of a filter function."""
    name: str
    type_name: str              # canonical type name, see `primitives.canonical_type`
    typmod: int = -1            # type modifier (varchar length, numeric precision/scale), -1 for none
    nullable: bool = True
    dropped: bool = False       # dropped columns keep their slot but never receive data


@dataclass(frozen=True, slots=True)
class Schema:
    """
    Ordered columns of the target table.

    `min_fields` / `max_fields` is the number of input fields a record may carry;
    they only differ for filter argument schemas whose function has defaults.
    """
    columns: tuple[Column, ...]
    n_defaults: int = 0

    @property
    def live_columns(self) -> tuple[Column, ...]:
        return tuple(c for c in self.columns if not c.dropped)

    @property
    def max_fields(self) -> int:
        return len(self.live_columns)

    @property
    def min_fields(self) -> int:
        return self.max_fields - self.n_defaults

    @property
    def has_not_null(self) -> bool:
        return any(not c.nullable for c in self.live_columns)

    def index_of(self, name: str) -> int:
        """Position of a live column by name, raises `KeyError` if absent."""
        for i, c in enumerate(self.live_columns):
            if c.name == name:
                return i
        raise KeyError(name)

    def null_row(self) -> Row:
        return (None,) * len(self.columns)


@dataclass(slots=True)
class ParseCursor:
    """Progress of a parser: records consumed and the field being decoded (-1 when idle)."""
    count: int = 0
    field: int = -1


@dataclass(frozen=True, slots=True)
class CheckConstraint:
    """A table CHECK constraint as the storage engine describes it."""
    name: str
    expression: str
    columns: tuple[str, ...] = field(default_factory=tuple)
