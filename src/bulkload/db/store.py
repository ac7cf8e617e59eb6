"""
What the loader needs from the storage engine and the function runtime.

Two engines implement these protocols: `bulkload.db.postgres` (psycopg) and
`bulkload.db.memory` (in-process, used by the programmatic API and tests).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ContextManager, Iterator, Protocol, Sequence, Union

from bulkload.parsing.types import CheckConstraint, Column, Row, Schema


## -- function result shapes

@dataclass(frozen=True, slots=True)
class FixedShape:
    """The function returns rows of a known column layout."""
    columns: tuple[Column, ...]


@dataclass(frozen=True, slots=True)
class DynamicShape:
    """The function returns a record whose layout is only known per call."""


@dataclass(frozen=True, slots=True)
class ScalarShape:
    """The function returns a single non-composite value."""
    type_name: str


ResultShape = Union[FixedShape, DynamicShape, ScalarShape]


@dataclass(frozen=True, slots=True)
class FunctionSpec:
    """A transformation function as the runtime describes it."""
    name: str
    arg_types: tuple[str, ...]
    defaults: tuple[Any, ...]           # values for the trailing `len(defaults)` arguments
    strict: bool                        # null input -> null result without a call
    result: ResultShape
    returns_set: bool = False
    variadic: bool = False


@dataclass(frozen=True, slots=True)
class FunctionResult:
    """
    One function call's output.

    `shape` is the layout of this particular result, `anonymous` marks a
    record without a named type whose layout may differ on the next call.
    """
    values: Row | None
    shape: FixedShape | None = None
    anonymous: bool = False


class FunctionRuntime(Protocol):
    """Lookup and invocation of user functions."""

    def lookup(self, signature: str) -> FunctionSpec:
        """Resolve `name` or `name(type, ...)`. Raises `FilterDefinitionError` when unknown or ambiguous."""
        ...

    def invoke(self, spec: FunctionSpec, args: Sequence[Any]) -> FunctionResult:
        """Call the function. Function-level failures raise `FunctionCallError`."""
        ...

    def generate(self, name: str, args: Sequence[Any]) -> Iterator[Any]:
        """Call a set-returning function and stream its rows."""
        ...


## -- tables

class TargetTable(Protocol):
    """
    One session on the target table.

    Writes are pending until `commit`; `savepoint()` opens a nested scope that
    is rolled back when the block raises.
    """
    name: str                                   # qualified `schema.table`
    schema: Schema
    constraints: tuple[CheckConstraint, ...]
    unique_keys: tuple[tuple[str, ...], ...]    # column names of each unique key, primary key first
    functions: FunctionRuntime

    def insert(self, row: Row) -> None:
        """Insert one row. Raises `UniqueViolation` on a key collision."""
        ...

    def insert_many(self, rows: Sequence[Row]) -> None:
        """Insert a batch. Raises `UniqueViolation` when any row collides."""
        ...

    def remove_conflicts(self, row: Row) -> list[Row]:
        """Delete and return the rows sharing a unique key value with `row`."""
        ...

    def evaluate_check(self, constraint: CheckConstraint, row: Row) -> bool | None:
        """Evaluate a CHECK constraint against `row` (`None` is unknown, which passes)."""
        ...

    def savepoint(self) -> ContextManager[None]:
        ...

    def commit(self) -> None:
        ...

    def rollback(self) -> None:
        ...

    def close(self) -> None:
        ...


class TargetStore(Protocol):
    """A database the loader can open table sessions on."""
    database: str

    def open_table(self, name: str) -> TargetTable:
        """Open a new session on a table. Raises `StoreError` when the table does not exist."""
        ...


def key_of(schema: Schema, key: Sequence[str], row: Row) -> tuple[Any, ...] | None:
    """
    The value of a unique key in `row`, `None` when any key column is null
    (null never collides).
    """
    names = [c.name for c in schema.columns]
    out = tuple(row[names.index(k)] for k in key)
    if any(v is None for v in out):
        return None
    return out
