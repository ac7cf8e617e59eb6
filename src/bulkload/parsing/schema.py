from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from bulkload.errors import RecordError

from .primitives import Coercer, ParseError, coerce_native, parse_type_spec, text_coercer
from .types import Column, ParseCursor, RejectCode, Row, Schema


def make_column(name: str, type_spec: str, *, nullable: bool = True) -> Column:
    """Declare a column from a SQL type spelling, e.g. `make_column("price", "numeric(12,2)")`."""
    type_name, typmod = parse_type_spec(type_spec)
    return Column(name=name, type_name=type_name, typmod=typmod, nullable=nullable)


@dataclass(frozen=True, slots=True)
class FieldSpec:
    """Any given input field's expectations."""
    column: Column              # column (or function argument) receiving this field
    parser: Coercer             # how to parse this field's text.
    slot: int                   # position inside the formed row (dropped columns keep their slot)


class RowFormer:
    """
    Form one typed row out of the decoded fields of a record.

    Rejection order is always:
    - 1st: field count outside `[min_fields, max_fields]`
    - 2nd: first type/format error, in field order

    `cursor.field` follows the field being coerced so a failure can be pinned
    on its 1-based column number.
    """

    def __init__(self, schema: Schema, *, defaults: Sequence[Any] = ()):
        if len(defaults) != schema.n_defaults:
            raise ValueError(f"expected {schema.n_defaults} default values, got {len(defaults)}")
        self.schema = schema
        self.defaults = tuple(defaults)
        self.fields: list[FieldSpec] = [
            FieldSpec(column=c, parser=text_coercer(c), slot=i)
            for i, c in enumerate(schema.columns)
            if not c.dropped
        ]

    @property
    def min_fields(self) -> int:
        return self.schema.min_fields

    @property
    def max_fields(self) -> int:
        return self.schema.max_fields

    def check_count(self, n: int) -> None:
        """Raise a record error when a record carries too few or too many fields."""
        if n < self.min_fields:
            missing = self.fields[n].column.name
            raise RecordError(RejectCode.missing_data, f"missing data for column \"{missing}\"", field=n + 1)
        if n > self.max_fields:
            raise RecordError(RejectCode.extra_data, "extra data after last expected column", field=self.max_fields + 1)

    def form(self, values: Sequence[str | None], cursor: ParseCursor) -> Row:
        """Coerce decoded field text (`None` is null) into a row."""
        self.check_count(len(values))
        return self._form(values, cursor, native=False)

    def form_native(self, values: Sequence[Any], cursor: ParseCursor) -> Row:
        """Coerce already typed values (binary fields, function results) into a row."""
        self.check_count(len(values))
        return self._form(values, cursor, native=True)

    def _form(self, values: Sequence[Any], cursor: ParseCursor, *, native: bool) -> Row:
        out: list[Any] = [None] * len(self.schema.columns)
        for i, f in enumerate(self.fields):
            if i >= len(values):
                # trailing arguments the function declares defaults for
                out[f.slot] = self.defaults[i - (self.max_fields - len(self.defaults))]
                continue
            cursor.field = i + 1
            v = values[i]
            if v is None:
                continue
            try:
                out[f.slot] = coerce_native(v, f.column) if native else f.parser(v)
            except ParseError as e:
                raise RecordError(e.code, e.detail, field=i + 1) from None
        return tuple(out)
