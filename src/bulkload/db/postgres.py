"""
PostgreSQL storage engine and function runtime (psycopg 3).

Identifiers are interpolated only through `psycopg.sql`; values always travel
as parameters or `sql.Literal`.
"""
from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Optional, Sequence

import psycopg
from psycopg import Connection, sql
from psycopg.errors import AdminShutdown, DataCorrupted, DatatypeMismatch, QueryCanceled
from psycopg.pq import TransactionStatus

from bulkload.errors import FilterDefinitionError, FunctionCallError, RecordError, StoreError, UniqueViolation
from bulkload.parsing.primitives import canonical_type, format_type
from bulkload.parsing.types import CheckConstraint, Column, RejectCode, Row, Schema

from .connect import connect, get_database_url
from .store import DynamicShape, FixedShape, FunctionResult, FunctionSpec, ResultShape, ScalarShape

# errors that abort the load even inside a filter call
NEVER_ABSORB = (AdminShutdown, QueryCanceled, DataCorrupted)

# dropped columns keep only their physical storage; any type with the same storage stands in
_TYPE_BY_STORAGE = {
    (2, "s"): "int2", (4, "i"): "int4", (8, "d"): "int8",
    (1, "c"): "bool", (16, "c"): "uuid",
}


def split_name(name: str) -> sql.Identifier:
    """`schema.name` (or `name`) -> identifier, folding to lower case like the server does."""
    parts = [p.strip().strip('"') if p.strip().startswith('"') else p.strip().lower() for p in name.split(".", 1)]
    return sql.Identifier(*parts)


def _column(name: str, typname: Optional[str], typmod: int, notnull: bool, dropped: bool, attlen: int, attalign: str) -> Column:
    if dropped:
        type_name = _TYPE_BY_STORAGE.get((attlen, attalign), "text")
        return Column(name=name, type_name=type_name, typmod=-1, nullable=True, dropped=True)
    try:
        type_name = canonical_type(typname or "")
    except ValueError:
        raise StoreError(f"column \"{name}\" has unsupported type {typname}") from None
    return Column(name=name, type_name=type_name, typmod=typmod, nullable=not notnull)


## -- introspection

_RELATION_SQL = """
SELECT c.oid, n.nspname, c.relname
FROM pg_class c
JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE c.oid = to_regclass(%s)
"""

_COLUMNS_SQL = """
SELECT a.attname, t.typname, a.atttypmod, a.attnotnull, a.attisdropped, a.attlen, a.attalign
FROM pg_attribute a
LEFT JOIN pg_type t ON t.oid = a.atttypid
WHERE a.attrelid = %s AND a.attnum > 0
ORDER BY a.attnum
"""

_UNIQUE_KEYS_SQL = """
SELECT array_agg(a.attname ORDER BY k.ord)
FROM pg_index i
CROSS JOIN LATERAL unnest(i.indkey::int2[]) WITH ORDINALITY AS k(attnum, ord)
JOIN pg_attribute a ON a.attrelid = i.indrelid AND a.attnum = k.attnum
WHERE i.indrelid = %s AND i.indisunique AND i.indpred IS NULL AND i.indexprs IS NULL
GROUP BY i.indexrelid, i.indisprimary
ORDER BY i.indisprimary DESC, i.indexrelid
"""

_CHECKS_SQL = """
SELECT c.conname,
       pg_get_constraintdef(c.oid),
       ARRAY(SELECT a.attname FROM pg_attribute a WHERE a.attrelid = c.conrelid AND a.attnum = ANY(c.conkey))
FROM pg_constraint c
WHERE c.conrelid = %s AND c.contype = 'c'
ORDER BY c.conname
"""


def _check_expression(definition: str) -> str:
    """`CHECK ((price > 0)) NOT VALID` -> `(price > 0)`."""
    expr = definition.strip()
    if expr.upper().startswith("CHECK"):
        expr = expr[5:].strip()
    if expr.upper().endswith("NOT VALID"):
        expr = expr[:-9].strip()
    return expr


class PostgresStore:
    """A PostgreSQL database; every table session gets its own connection."""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or get_database_url()
        try:
            with connect(self.dsn) as conn:
                self.database = conn.info.dbname
        except psycopg.Error as e:
            raise StoreError(f"could not connect to the database: {e}") from e

    def open_table(self, name: str) -> PostgresTable:
        try:
            conn = connect(self.dsn)
        except psycopg.Error as e:
            raise StoreError(f"could not connect to the database: {e}") from e
        try:
            return PostgresTable(conn, name, dsn=self.dsn)
        except BaseException:
            conn.close()
            raise


class PostgresTable:
    """One connection (and transaction) working on the target table."""

    def __init__(self, conn: Connection, name: str, *, dsn: str):
        self.conn = conn
        try:
            found = conn.execute(_RELATION_SQL, (name,)).fetchone()
            if found is None:
                raise StoreError(f"relation \"{name}\" does not exist")
            self.oid, nspname, relname = found
            columns = tuple(_column(*r) for r in conn.execute(_COLUMNS_SQL, (self.oid,)).fetchall())
            keys = conn.execute(_UNIQUE_KEYS_SQL, (self.oid,)).fetchall()
            checks = conn.execute(_CHECKS_SQL, (self.oid,)).fetchall()
            conn.rollback()
        except psycopg.Error as e:
            raise StoreError(str(e)) from e

        self.name = f"{nspname}.{relname}"
        self.ident = sql.Identifier(nspname, relname)
        self.schema = Schema(columns=columns)
        self.unique_keys: tuple[tuple[str, ...], ...] = tuple(tuple(k) for (k,) in keys)
        self.constraints = tuple(
            CheckConstraint(name=n, expression=_check_expression(d), columns=tuple(cols)) for n, d, cols in checks
        )
        self.functions = PostgresFunctions(conn, self, dsn=dsn)

        live = self.schema.live_columns
        self._live_slots = [i for i, c in enumerate(columns) if not c.dropped]
        self._insert_sql = sql.SQL("INSERT INTO {tbl} ({cols}) VALUES ({vals})").format(
            tbl=self.ident,
            cols=sql.SQL(", ").join(sql.Identifier(c.name) for c in live),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in live),
        )
        self._check_sql: dict[str, sql.Composed] = {}

    ## -- helpers

    def _live(self, row: Row) -> list[Any]:
        return [row[i] for i in self._live_slots]

    def full_row(self, values: Sequence[Any]) -> Row:
        """Live column values -> a row with `None` in dropped slots."""
        out: list[Any] = [None] * len(self.schema.columns)
        for slot, v in zip(self._live_slots, values):
            out[slot] = v
        return tuple(out)

    def _ensure_transaction(self) -> None:
        # `conn.transaction()` only nests as a savepoint inside an open transaction
        if self.conn.info.transaction_status == TransactionStatus.IDLE:
            self.conn.execute("SELECT 1")

    ## -- writes

    def insert(self, row: Row) -> None:
        self._ensure_transaction()
        try:
            with self.conn.transaction():
                self.conn.execute(self._insert_sql, self._live(row))
        except psycopg.errors.UniqueViolation as e:
            raise UniqueViolation(str(e).strip(), constraint=e.diag.constraint_name) from e
        except psycopg.Error as e:
            raise StoreError(str(e).strip()) from e

    def insert_many(self, rows: Sequence[Row]) -> None:
        self._ensure_transaction()
        try:
            with self.conn.transaction():
                with self.conn.cursor() as cur:
                    cur.executemany(self._insert_sql, [self._live(r) for r in rows])
        except psycopg.errors.UniqueViolation as e:
            raise UniqueViolation(str(e).strip(), constraint=e.diag.constraint_name) from e
        except psycopg.Error as e:
            raise StoreError(str(e).strip()) from e

    def remove_conflicts(self, row: Row) -> list[Row]:
        removed: list[Row] = []
        names = [c.name for c in self.schema.columns]
        try:
            for key in self.unique_keys:
                values = [row[names.index(k)] for k in key]
                if any(v is None for v in values):
                    continue
                query = sql.SQL("DELETE FROM {tbl} WHERE {cond} RETURNING *").format(
                    tbl=self.ident,
                    cond=sql.SQL(" AND ").join(sql.SQL("{} = %s").format(sql.Identifier(k)) for k in key),
                )
                for r in self.conn.execute(query, values).fetchall():
                    removed.append(self.full_row(r))
        except psycopg.Error as e:
            raise StoreError(str(e).strip()) from e
        return removed

    ## -- constraints

    def evaluate_check(self, constraint: CheckConstraint, row: Row) -> bool | None:
        query = self._check_sql.get(constraint.name)
        if query is None:
            live = self.schema.live_columns
            query = sql.SQL("SELECT {expr} FROM (SELECT {cols}) AS t").format(
                expr=sql.SQL(constraint.expression),
                cols=sql.SQL(", ").join(
                    sql.SQL("%s::{} AS {}").format(sql.SQL(format_type(c.type_name, c.typmod)), sql.Identifier(c.name))
                    for c in live
                ),
            )
            self._check_sql[constraint.name] = query
        self._ensure_transaction()
        try:
            with self.conn.transaction():
                found = self.conn.execute(query, self._live(row)).fetchone()
        except NEVER_ABSORB:
            raise
        except psycopg.errors.DataError as e:
            raise RecordError(
                RejectCode.check_violation,
                f"check constraint \"{constraint.name}\" could not be evaluated: {str(e).strip()}",
            ) from e
        except psycopg.Error as e:
            raise StoreError(str(e).strip()) from e
        return None if found is None else found[0]

    ## -- transactions

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        self._ensure_transaction()
        with self.conn.transaction():
            yield

    def commit(self) -> None:
        try:
            self.conn.commit()
        except psycopg.Error as e:
            raise StoreError(str(e).strip()) from e

    def rollback(self) -> None:
        try:
            self.conn.rollback()
        except psycopg.Error as e:
            raise StoreError(str(e).strip()) from e

    def close(self) -> None:
        if self.conn.closed:
            return
        try:
            self.conn.rollback()
        finally:
            self.conn.close()


## -- functions

_FUNCTION_SQL = """
SELECT n.nspname,
       p.proname,
       (SELECT coalesce(array_agg(format_type(a.t, NULL) ORDER BY a.ord), '{}')
          FROM unnest(p.proargtypes::oid[]) WITH ORDINALITY AS a(t, ord)),
       p.pronargdefaults,
       p.proisstrict,
       p.proretset,
       p.provariadic <> 0,
       pg_get_expr(p.proargdefaults, 0),
       rt.typname,
       rt.typtype,
       rt.typrelid,
       (SELECT array_agg(ARRAY[a.name, format_type(a.t, NULL)] ORDER BY a.ord)
          FROM unnest(p.proallargtypes, p.proargmodes, p.proargnames) WITH ORDINALITY AS a(t, mode, name, ord)
         WHERE a.mode IN ('o', 'b', 't'))
FROM pg_proc p
JOIN pg_namespace n ON n.oid = p.pronamespace
JOIN pg_type rt ON rt.oid = p.prorettype
WHERE p.oid = %s
"""

_CANDIDATES_SQL = """
SELECT p.oid
FROM pg_proc p
JOIN pg_namespace n ON n.oid = p.pronamespace
WHERE p.proname = %s AND (%s::text IS NULL AND pg_function_is_visible(p.oid) OR n.nspname = %s)
"""


def _arg_type(name: str) -> str:
    try:
        return canonical_type(name)
    except ValueError:
        raise FilterDefinitionError(f"filter function argument type {name} is not supported") from None


class PostgresFunctions:
    """Function lookup and calls on the table session's connection."""

    def __init__(self, conn: Connection, table: PostgresTable, *, dsn: str):
        self.conn = conn
        self.table = table
        self.dsn = dsn

    def _resolve_oid(self, signature: str) -> int:
        if "(" in signature:
            found = self.conn.execute("SELECT to_regprocedure(%s)::oid", (signature,)).fetchone()
            if found is None or found[0] is None:
                raise FilterDefinitionError(f"function {signature} does not exist")
            return found[0]
        if "." in signature:
            schema, name = (p.strip().lower() for p in signature.split(".", 1))
        else:
            schema, name = None, signature.strip().lower()
        oids = [r[0] for r in self.conn.execute(_CANDIDATES_SQL, (name, schema, schema)).fetchall()]
        if not oids:
            raise FilterDefinitionError(f"function {signature} does not exist")
        if len(oids) > 1:
            raise FilterDefinitionError(f"function name \"{signature}\" is not unique")
        return oids[0]

    def lookup(self, signature: str) -> FunctionSpec:
        try:
            oid = self._resolve_oid(signature)
            (nspname, proname, argtypes, ndefaults, strict, retset, variadic,
             defaults_expr, rettype, typtype, typrelid, out_args) = self.conn.execute(_FUNCTION_SQL, (oid,)).fetchone()
            defaults: tuple[Any, ...] = ()
            if ndefaults:
                defaults = tuple(self.conn.execute(sql.SQL("SELECT " + defaults_expr)).fetchone())
            result = self._result_shape(rettype, typtype, typrelid, out_args)
            self.conn.rollback()
        except psycopg.Error as e:
            raise StoreError(str(e).strip()) from e

        return FunctionSpec(
            name=f"{nspname}.{proname}",
            arg_types=tuple(_arg_type(t) for t in argtypes),
            defaults=defaults,
            strict=strict,
            result=result,
            returns_set=retset,
            variadic=variadic,
        )

    def _result_shape(self, rettype: str, typtype: str, typrelid: int, out_args: Any) -> ResultShape:
        if typrelid and typrelid == self.table.oid:
            return FixedShape(columns=self.table.schema.columns)
        if rettype == "record":
            if not out_args:
                return DynamicShape()
            return FixedShape(columns=tuple(
                Column(name=n or f"column{i + 1}", type_name=_arg_type(t)) for i, (n, t) in enumerate(out_args)
            ))
        if typtype == "c":
            rows = self.conn.execute(_COLUMNS_SQL, (typrelid,)).fetchall()
            return FixedShape(columns=tuple(_column(*r) for r in rows))
        return ScalarShape(type_name=rettype)

    def _call_sql(self, spec: FunctionSpec, n_args: int) -> sql.Composed:
        args = sql.SQL(", ").join(
            sql.SQL("%s::{}").format(sql.SQL(t)) for t in spec.arg_types[:n_args]
        )
        call = sql.SQL("{fn}({args})").format(fn=split_name(spec.name), args=args)
        if isinstance(spec.result, DynamicShape):
            return sql.SQL("SELECT * FROM {call} AS t({cols})").format(call=call, cols=self._column_list())
        return sql.SQL("SELECT * FROM {call}").format(call=call)

    def _column_list(self) -> sql.Composed:
        return sql.SQL(", ").join(
            sql.SQL("{} {}").format(sql.Identifier(c.name), sql.SQL(format_type(c.type_name, c.typmod)))
            for c in self.table.schema.live_columns
        )

    def invoke(self, spec: FunctionSpec, args: Sequence[Any]) -> FunctionResult:
        try:
            found = self.conn.execute(self._call_sql(spec, len(args)), list(args)).fetchone()
        except NEVER_ABSORB as e:
            raise StoreError(str(e).strip()) from e
        except DatatypeMismatch as e:
            raise FilterDefinitionError(str(e).strip()) from e
        except psycopg.Error as e:
            raise FunctionCallError(str(e).strip()) from e
        if found is None or all(v is None for v in found):
            return FunctionResult(values=None)
        anonymous = isinstance(spec.result, DynamicShape)
        return FunctionResult(values=tuple(found), anonymous=anonymous)

    def generate(self, name: str, args: Sequence[Any]) -> Iterator[Any]:
        """Stream a set-returning call through a server-side cursor on a connection of its own."""
        query = sql.SQL("SELECT * FROM {fn}({args})").format(
            fn=split_name(name),
            args=sql.SQL(", ").join(sql.Literal(a) for a in args),
        )
        try:
            conn = connect(self.dsn)
        except psycopg.Error as e:
            raise StoreError(f"could not connect to the database: {e}") from e
        return self._stream(conn, query)

    @staticmethod
    def _stream(conn: Connection, query: sql.Composed) -> Iterator[Any]:
        try:
            with conn.cursor(name="bulkload_input") as cur:
                cur.execute(query)
                for row in cur:
                    yield tuple(row)
        except NEVER_ABSORB as e:
            raise StoreError(str(e).strip()) from e
        except psycopg.Error as e:
            raise FunctionCallError(str(e).strip()) from e
        finally:
            conn.rollback()
            conn.close()
