from __future__ import annotations

import re
import struct
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterator

from bulkload.errors import ConfigurationError, RecordError
from bulkload.ingest.readers import stream_fixed_records
from bulkload.parsing.tokenizer import quote_value
from bulkload.parsing.types import RejectCode, Row

from .base import BaseParser, parse_bool_option, parse_int_option

if TYPE_CHECKING:
    from bulkload.ingest.badfiles import ParseBadFile


_COL = re.compile(
    r"^\s*([A-Za-z]+)\s*\(\s*(\d+)\s*(?:\+\s*(\d+)\s*)?\)\s*(?:NULLIF\s+(.*?))?\s*$",
    re.IGNORECASE,
)

# allowed byte widths per field type
_WIDTHS: dict[str, tuple[int, ...]] = {
    "CHAR": (),             # any width
    "VARCHAR": (),
    "INTEGER": (2, 4, 8),
    "UNSIGNED": (1, 2, 4),
    "FLOAT": (4, 8),
    "DOUBLE": (8,),
}


@dataclass(frozen=True, slots=True)
class BinaryField:
    """One `COL` declaration: where a field sits in the record and how to read it."""
    kind: str
    offset: int
    length: int
    nullif: str | None = None

    @property
    def end(self) -> int:
        return self.offset + self.length

    def render(self) -> str:
        s = f"{self.kind}({self.offset}+{self.length})"
        return f"{s} NULLIF {quote_value(self.nullif)}" if self.nullif is not None else s


def parse_col(value: str, *, next_offset: int) -> BinaryField:
    """
    Parse a `COL` value: `TYPE(length)` or `TYPE(offset+length)`, optionally
    followed by `NULLIF text`. Without an offset the field follows the previous one.
    """
    m = _COL.match(value)
    if m is None:
        raise ConfigurationError(f"invalid COL declaration: {value!r}")
    kind = m.group(1).upper()
    if kind not in _WIDTHS:
        raise ConfigurationError(f"unsupported COL type: {kind}")
    if m.group(3) is None:
        offset, length = next_offset, int(m.group(2))
    else:
        offset, length = int(m.group(2)), int(m.group(3))
    widths = _WIDTHS[kind]
    if length <= 0 or (widths and length not in widths):
        raise ConfigurationError(f"invalid length {length} for COL type {kind}")
    return BinaryField(kind=kind, offset=offset, length=length, nullif=m.group(4))


class BinaryParser(BaseParser):
    """
    Fixed-width binary records (alias: FIXED).

    Keywords: COL (repeatable, one per input field), STRIDE (record length,
    defaults to the end of the last field), PRESERVE_BLANKS.
    Numbers are little-endian.
    """

    name = "BINARY"
    repeatable = frozenset({"COL"})

    def __init__(self) -> None:
        super().__init__()
        self.fields: list[BinaryField] = []
        self.stride = 0
        self.preserve_blanks = False
        self._records: Iterator[bytes] | None = None

    def _param(self, keyword: str, value: str) -> bool:
        if keyword == "COL":
            next_offset = self.fields[-1].end if self.fields else 0
            self.fields.append(parse_col(value, next_offset=next_offset))
        elif keyword == "STRIDE":
            self.stride = parse_int_option(keyword, value, minimum=1)
        elif keyword == "PRESERVE_BLANKS":
            self.preserve_blanks = parse_bool_option(keyword, value)
        else:
            return False
        return True

    def _dump_params(self) -> list[str]:
        lines = [f"COL = {f.render()}" for f in self.fields]
        lines.append(f"STRIDE = {self.stride}")
        lines.append(f"PRESERVE_BLANKS = {'YES' if self.preserve_blanks else 'NO'}")
        return lines

    def _init(self) -> None:
        assert self.former is not None and self._stream is not None
        if not self.fields:
            raise ConfigurationError("BINARY input needs at least one COL")
        n = len(self.fields)
        if not self.former.min_fields <= n <= self.former.max_fields:
            raise ConfigurationError(
                f"{n} COL declared, but the input expects {self.former.min_fields} to {self.former.max_fields} fields"
            )
        record_len = max(f.end for f in self.fields)
        if self.stride == 0:
            self.stride = record_len
        elif self.stride < record_len:
            raise ConfigurationError(f"STRIDE {self.stride} is shorter than the record ({record_len} bytes)")
        self._records = stream_fixed_records(self._stream, self.stride)

    def _next_record(self) -> bytes | None:
        assert self._records is not None
        return next(self._records, None)

    def _parse_record(self, raw: bytes) -> Row:
        assert self.former is not None
        if len(raw) < self.stride:
            raise RecordError(
                RejectCode.malformed_record,
                f"unexpected end of input: record has {len(raw)} bytes, expected {self.stride}",
            )
        values: list[Any] = []
        for i, f in enumerate(self.fields):
            self.cursor.field = i + 1
            values.append(self._read_field(f, raw[f.offset:f.end], field=i + 1))
        return self.former.form_native(values, self.cursor)

    def _read_field(self, f: BinaryField, chunk: bytes, *, field: int) -> Any:
        if f.kind in ("CHAR", "VARCHAR"):
            assert self.checker is not None
            if f.kind == "VARCHAR":
                chunk = chunk.split(b"\0", 1)[0]
            try:
                text = self.checker.validate_encoding(chunk)
            except RecordError as e:
                raise RecordError(e.code, e.detail, field=field) from None
            if not self.preserve_blanks:
                text = text.rstrip(" ")
                if text == "":
                    return None     # all blank
            value: Any = text
        elif f.kind == "INTEGER":
            value = int.from_bytes(chunk, "little", signed=True)
        elif f.kind == "UNSIGNED":
            value = int.from_bytes(chunk, "little", signed=False)
        else:
            value = struct.unpack("<f" if f.length == 4 else "<d", chunk)[0]

        if f.nullif is not None and str(value) == f.nullif:
            return None
        return value

    def dump_record(self, sink: ParseBadFile) -> None:
        """Binary records are dumped as the exact bytes read, without a separator."""
        if self._record is not None:
            sink.write(self._record)
