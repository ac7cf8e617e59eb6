from __future__ import annotations

from typing import Any, Sequence

from bulkload.db.store import FixedShape, FunctionResult, FunctionRuntime, FunctionSpec, ScalarShape, TargetTable
from bulkload.errors import FilterDefinitionError, FunctionCallError, RecordError
from bulkload.parsing.primitives import POLYMORPHIC_TYPES, ParseError, coerce_native, format_type, storage_of
from bulkload.parsing.types import Column, ParseCursor, RejectCode, Row, Schema


def match_shape(target: Schema, columns: Sequence[Column]) -> None:
    """
    Check that a function's result row can feed the target table: same number
    of attributes, same types. A dropped target column accepts any type of the
    same physical storage.
    """
    if len(columns) != len(target.columns):
        raise FilterDefinitionError(
            "function return row and target table row do not match: "
            f"returned row contains {len(columns)} attribute(s), but target table expects {len(target.columns)}"
        )
    for i, (dst, src) in enumerate(zip(target.columns, columns)):
        if dst.type_name == src.type_name:
            continue
        if not dst.dropped:
            raise FilterDefinitionError(
                "function return row and target table row do not match: "
                f"returned type {format_type(src.type_name)} at ordinal position {i + 1}, "
                f"but target table {format_type(dst.type_name)}"
            )
        if storage_of(dst.type_name) != storage_of(src.type_name):
            raise FilterDefinitionError(
                "function return row and target table row do not match: "
                f"physical storage mismatch on dropped attribute at ordinal position {i + 1}"
            )


class Filter:
    """
    Routes parsed argument values through a transformation function.

    The parser forms rows of the function's argument schema; `apply` turns
    them into rows of the target table.
    """

    def __init__(self, signature: str):
        self.signature = signature
        self.spec: FunctionSpec | None = None
        self.target: Schema | None = None
        self.shape_matched = False

    def init(self, runtime: FunctionRuntime, target: Schema) -> Schema:
        """Resolve and validate the function. Returns the argument schema records are parsed into."""
        spec = runtime.lookup(self.signature)
        for t in spec.arg_types:
            if t in POLYMORPHIC_TYPES:
                raise FilterDefinitionError(
                    f"filter function does not support polymorphic or internal argument types: {spec.name}"
                )
        if spec.returns_set:
            raise FilterDefinitionError("filter function must not return set")
        if spec.variadic:
            raise FilterDefinitionError(f"filter function does not support a variadic function {spec.name}")

        if isinstance(spec.result, ScalarShape):
            raise FilterDefinitionError("function return data type and target table data type do not match")
        if isinstance(spec.result, FixedShape):
            match_shape(target, spec.result.columns)
            self.shape_matched = True

        self.spec = spec
        self.target = target
        return Schema(
            columns=tuple(Column(name=f"${i + 1}", type_name=t) for i, t in enumerate(spec.arg_types)),
            n_defaults=len(spec.defaults),
        )

    @property
    def defaults(self) -> tuple[Any, ...]:
        assert self.spec is not None
        return self.spec.defaults

    def apply(self, args: Row, table: TargetTable, cursor: ParseCursor) -> Row:
        """
        Call the function on one argument row.

        A strict function with any null argument yields the all-null row
        without being called. Function errors roll back the call's savepoint
        and surface as record errors on field 0.
        """
        assert self.spec is not None and self.target is not None
        if self.spec.strict and any(v is None for v in args):
            return self.target.null_row()

        cursor.field = 0
        try:
            with table.savepoint():
                result = table.functions.invoke(self.spec, args)
        except FunctionCallError as e:
            raise RecordError(RejectCode.filter_failed, str(e), field=0) from None
        cursor.field = -1

        if result.values is None:
            return self.target.null_row()
        return self._to_row(result)

    def _to_row(self, result: FunctionResult) -> Row:
        assert self.target is not None and result.values is not None
        values = result.values
        columns = self.target.columns
        if len(values) not in (len(columns), self.target.max_fields):
            raise FilterDefinitionError(
                "function return row and target table row do not match: "
                f"returned row contains {len(values)} attribute(s), but target table expects {len(columns)}"
            )
        if not self.shape_matched:
            if result.shape is not None:
                match_shape(self.target, result.shape.columns)
            if not result.anonymous:
                self.shape_matched = True

        if len(values) != len(columns):
            # live columns only
            live = iter(values)
            values = tuple(None if c.dropped else next(live) for c in columns)

        out: list[Any] = []
        for c, v in zip(columns, values):
            if c.dropped or v is None:
                out.append(None)
                continue
            try:
                out.append(coerce_native(v, c))
            except ParseError as e:
                raise FilterDefinitionError(f"function result does not fit column \"{c.name}\": {e.detail}") from None
        return tuple(out)
