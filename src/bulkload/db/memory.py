"""
In-process storage engine.

Tables live in a `MemoryStore`; every `MemoryTable` is a session on one of
them. Writes apply to the shared table immediately and are recorded in the
session's undo journal, which `rollback` (or a failing savepoint) replays in
reverse.
"""
from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping, Sequence

from bulkload.errors import FilterDefinitionError, FunctionCallError, LoadCancelled, StoreError, UniqueViolation
from bulkload.parsing.primitives import parse_type_spec
from bulkload.parsing.types import CheckConstraint, Column, Row, Schema

from .store import DynamicShape, FunctionResult, FunctionSpec, ResultShape, key_of

# a CHECK constraint as a predicate over `{column: value}`; `None` is unknown
CheckFn = Callable[[Mapping[str, Any]], "bool | None"]


def qualify(name: str) -> str:
    """`t` -> `public.t`, qualified names are kept."""
    return name if "." in name else f"public.{name}"


## -- functions

@dataclass(frozen=True, slots=True)
class _Registered:
    spec: FunctionSpec
    fn: Callable[..., Any]
    anonymous: bool


_SIGNATURE = re.compile(r"^\s*([\w.$]+)\s*(?:\((.*)\))?\s*$", re.DOTALL)


class MemoryFunctions:
    """A registry of Python callables standing in for database functions."""

    def __init__(self) -> None:
        self._functions: dict[str, list[_Registered]] = {}

    def register(
        self,
        name: str,
        fn: Callable[..., Any],
        *,
        arg_types: Sequence[str] = (),
        defaults: Sequence[Any] = (),
        strict: bool = False,
        result: ResultShape | None = None,
        returns_set: bool = False,
        variadic: bool = False,
        anonymous: bool = False,
    ) -> FunctionSpec:
        """
        Register `fn` as `name(arg_types...)`.

        `result` defaults to a dynamic record; `anonymous` marks results whose
        layout may change from call to call.
        """
        if len(defaults) > len(arg_types):
            raise ValueError("more defaults than arguments")
        spec = FunctionSpec(
            name=name,
            arg_types=tuple(parse_type_spec(t)[0] for t in arg_types),
            defaults=tuple(defaults),
            strict=strict,
            result=result if result is not None else DynamicShape(),
            returns_set=returns_set,
            variadic=variadic,
        )
        self._functions.setdefault(name, []).append(_Registered(spec=spec, fn=fn, anonymous=anonymous))
        return spec

    def lookup(self, signature: str) -> FunctionSpec:
        m = _SIGNATURE.match(signature)
        if m is None:
            raise FilterDefinitionError(f"invalid function name: {signature!r}")
        name, args = m.group(1), m.group(2)
        candidates = self._functions.get(name, [])
        if args is not None:
            try:
                wanted = tuple(parse_type_spec(a)[0] for a in args.split(",") if a.strip())
            except ValueError as e:
                raise FilterDefinitionError(f"invalid function signature {signature!r}: {e}") from None
            candidates = [r for r in candidates if r.spec.arg_types == wanted]
        if not candidates:
            raise FilterDefinitionError(f"function {signature} does not exist")
        if len(candidates) > 1:
            raise FilterDefinitionError(f"function name \"{name}\" is not unique")
        return candidates[0].spec

    def _registered(self, spec: FunctionSpec) -> _Registered:
        for r in self._functions.get(spec.name, []):
            if r.spec == spec:
                return r
        raise FilterDefinitionError(f"function {spec.name} does not exist")

    def invoke(self, spec: FunctionSpec, args: Sequence[Any]) -> FunctionResult:
        r = self._registered(spec)
        try:
            out = r.fn(*args)
        except (LoadCancelled, MemoryError):
            raise
        except Exception as e:
            raise FunctionCallError(f"{spec.name}: {e}") from e
        if out is None:
            return FunctionResult(values=None)
        if isinstance(out, FunctionResult):
            return out
        values = tuple(out) if isinstance(out, (tuple, list)) else (out,)
        return FunctionResult(values=values, anonymous=r.anonymous)

    def generate(self, name: str, args: Sequence[Any]) -> Iterator[Any]:
        candidates = [
            r for r in self._functions.get(name, [])
            if r.spec.returns_set and len(r.spec.arg_types) - len(r.spec.defaults) <= len(args) <= len(r.spec.arg_types)
        ]
        if len(candidates) != 1:
            raise FilterDefinitionError(f"function {name} with {len(args)} argument(s) does not exist or is not unique")
        r = candidates[0]
        missing = len(r.spec.arg_types) - len(args)
        full = list(args) + list(r.spec.defaults[len(r.spec.defaults) - missing:])
        return self._stream(name, r.fn, full)

    @staticmethod
    def _stream(name: str, fn: Callable[..., Any], args: list[Any]) -> Iterator[Any]:
        try:
            yield from fn(*args)
        except (LoadCancelled, MemoryError):
            raise
        except Exception as e:
            raise FunctionCallError(f"{name}: {e}") from e


## -- tables

@dataclass(slots=True)
class _TableData:
    name: str
    schema: Schema
    unique_keys: tuple[tuple[str, ...], ...]
    checks: dict[str, CheckFn]
    constraints: tuple[CheckConstraint, ...]
    rows: dict[int, Row] = field(default_factory=dict)                       # row id -> row, insertion ordered
    indexes: list[dict[tuple[Any, ...], int]] = field(default_factory=list)  # one per unique key
    next_id: int = 0

    def index_name(self, i: int) -> str:
        table = self.name.split(".", 1)[1]
        if i == 0:
            return f"{table}_pkey"
        return f"{table}_{'_'.join(self.unique_keys[i])}_key"


class MemoryStore:
    """A set of in-memory tables sharing one lock and one function registry."""

    def __init__(self, database: str = "memory"):
        self.database = database
        self.functions = MemoryFunctions()
        self._tables: dict[str, _TableData] = {}
        self._lock = threading.RLock()

    def create_table(
        self,
        name: str,
        columns: Sequence[Column],
        *,
        unique_keys: Sequence[Sequence[str]] = (),
        checks: Mapping[str, CheckFn] | None = None,
    ) -> None:
        """
        Create a table. The first unique key plays the primary key.
        `checks` maps constraint names to predicates over the row as a mapping.
        """
        qname = qualify(name)
        schema = Schema(columns=tuple(columns))
        live = {c.name for c in schema.live_columns}
        for key in unique_keys:
            missing = [k for k in key if k not in live]
            if missing:
                raise ValueError(f"unique key column(s) {missing} not in table {qname}")
        checks = dict(checks or {})
        data = _TableData(
            name=qname,
            schema=schema,
            unique_keys=tuple(tuple(k) for k in unique_keys),
            checks=checks,
            constraints=tuple(CheckConstraint(name=n, expression=getattr(fn, "__doc__", None) or n) for n, fn in checks.items()),
        )
        data.indexes = [{} for _ in data.unique_keys]
        with self._lock:
            self._tables[qname] = data

    def open_table(self, name: str) -> MemoryTable:
        qname = qualify(name)
        with self._lock:
            data = self._tables.get(qname)
        if data is None:
            raise StoreError(f"relation \"{qname}\" does not exist")
        return MemoryTable(self, data)

    def rows(self, name: str) -> list[Row]:
        """Current contents of a table, in insertion order."""
        with self._lock:
            return list(self._tables[qualify(name)].rows.values())


class MemoryTable:
    """A session on one in-memory table."""

    def __init__(self, store: MemoryStore, data: _TableData):
        self._store = store
        self._data = data
        self._journal: list[tuple[str, int, Row]] = []     # ("insert" | "delete", row id, row)
        self.name = data.name
        self.schema = data.schema
        self.constraints = data.constraints
        self.unique_keys = data.unique_keys
        self.functions = store.functions

    ## -- writes

    def insert(self, row: Row) -> None:
        if len(row) != len(self.schema.columns):
            raise StoreError(f"row has {len(row)} values, table {self.name} has {len(self.schema.columns)} columns")
        for c, v in zip(self.schema.columns, row):
            if v is None and not c.nullable and not c.dropped:
                raise StoreError(f"null value in column \"{c.name}\" of relation \"{self.name}\" violates not-null constraint")

        with self._store._lock:
            keys = [key_of(self.schema, k, row) for k in self.unique_keys]
            for i, kv in enumerate(keys):
                if kv is not None and kv in self._data.indexes[i]:
                    name = self._data.index_name(i)
                    raise UniqueViolation(f"duplicate key value violates unique constraint \"{name}\"", constraint=name)
            rid = self._data.next_id
            self._data.next_id += 1
            self._data.rows[rid] = row
            for i, kv in enumerate(keys):
                if kv is not None:
                    self._data.indexes[i][kv] = rid
            self._journal.append(("insert", rid, row))

    def insert_many(self, rows: Sequence[Row]) -> None:
        with self.savepoint():
            for row in rows:
                self.insert(row)

    def remove_conflicts(self, row: Row) -> list[Row]:
        removed: list[Row] = []
        with self._store._lock:
            ids: list[int] = []
            for i, key in enumerate(self.unique_keys):
                kv = key_of(self.schema, key, row)
                rid = self._data.indexes[i].get(kv) if kv is not None else None
                if rid is not None and rid not in ids:
                    ids.append(rid)
            for rid in ids:
                removed.append(self._delete(rid))
        return removed

    def _delete(self, rid: int) -> Row:
        row = self._data.rows.pop(rid)
        for i, key in enumerate(self.unique_keys):
            kv = key_of(self.schema, key, row)
            if kv is not None:
                self._data.indexes[i].pop(kv, None)
        self._journal.append(("delete", rid, row))
        return row

    ## -- constraints

    def evaluate_check(self, constraint: CheckConstraint, row: Row) -> bool | None:
        fn = self._data.checks[constraint.name]
        values = {c.name: v for c, v in zip(self.schema.columns, row) if not c.dropped}
        return fn(values)

    ## -- transactions

    def _undo_to(self, mark: int) -> None:
        restored = False
        with self._store._lock:
            while len(self._journal) > mark:
                op, rid, row = self._journal.pop()
                if op == "insert":
                    self._data.rows.pop(rid, None)
                    for i, key in enumerate(self.unique_keys):
                        kv = key_of(self.schema, key, row)
                        if kv is not None and self._data.indexes[i].get(kv) == rid:
                            del self._data.indexes[i][kv]
                else:
                    restored = True
                    self._data.rows[rid] = row
                    for i, key in enumerate(self.unique_keys):
                        kv = key_of(self.schema, key, row)
                        if kv is not None:
                            self._data.indexes[i][kv] = rid
            if restored:
                # back to insertion order
                self._data.rows = dict(sorted(self._data.rows.items()))

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        mark = len(self._journal)
        try:
            yield
        except BaseException:
            self._undo_to(mark)
            raise

    def commit(self) -> None:
        self._journal.clear()

    def rollback(self) -> None:
        self._undo_to(0)

    def close(self) -> None:
        self.rollback()
