from __future__ import annotations

import codecs
from typing import TYPE_CHECKING

from bulkload.errors import ConfigurationError, RecordError
from bulkload.parsing.types import CheckConstraint, RejectCode, Row, Schema

if TYPE_CHECKING:
    from bulkload.db.store import TargetTable


DATABASE_ENCODING = "UTF8"

# server encoding names -> Python codecs, for the names Python spells differently
_PG_ENCODINGS = {
    "UTF8": "utf-8",
    "UNICODE": "utf-8",
    "LATIN1": "latin-1", "LATIN2": "iso8859-2", "LATIN9": "iso8859-15",
    "SJIS": "shift_jis", "SHIFT_JIS": "shift_jis",
    "EUC_JP": "euc_jp", "EUC_KR": "euc_kr", "EUC_CN": "gb2312",
    "WIN1250": "cp1250", "WIN1251": "cp1251", "WIN1252": "cp1252",
    "KOI8R": "koi8-r", "BIG5": "big5", "GBK": "gbk", "UHC": "cp949",
}


def python_codec(encoding: str) -> str | None:
    """Python codec name for a server encoding name, `None` for SQL_ASCII (no checking)."""
    key = encoding.strip().upper().replace("-", "_")
    if key == "SQL_ASCII":
        return None
    name = _PG_ENCODINGS.get(key, encoding.strip())
    try:
        return codecs.lookup(name).name
    except LookupError:
        raise ConfigurationError(f"invalid ENCODING: {encoding!r}") from None


class Checker:
    """
    Record validation outside of type input: input encoding, NOT NULL and
    (with CHECK_CONSTRAINTS) the table's CHECK constraints.
    """

    def __init__(
        self,
        schema: Schema,
        constraints: tuple[CheckConstraint, ...] = (),
        *,
        check_constraints: bool = False,
        encoding: str | None = None,
        table: TargetTable | None = None,
    ):
        self.schema = schema
        self.has_not_null = schema.has_not_null
        self.has_constraints = check_constraints and bool(constraints)
        self.constraints = constraints if self.has_constraints else ()
        self.table = table
        if self.has_constraints and table is None:
            raise ValueError("CHECK constraints need a table session to be evaluated on")

        self.codec = python_codec(encoding) if encoding else "utf-8"
        self.encoding_name = encoding.strip().upper() if encoding else DATABASE_ENCODING

    @property
    def enabled(self) -> bool:
        """Whether rows need `validate_constraints` at all."""
        return self.has_not_null or self.has_constraints

    def validate_encoding(self, raw: bytes) -> str:
        """Decode record bytes from the input encoding. Bad sequences are record errors."""
        if self.codec is None:
            return raw.decode("latin-1")
        try:
            text = raw.decode(self.codec)
        except UnicodeDecodeError as e:
            bad = raw[e.start:e.end][:2].hex()
            raise RecordError(
                RejectCode.invalid_encoding,
                f"invalid byte sequence for encoding \"{self.encoding_name}\": 0x{bad}",
            ) from None
        if "\0" in text:
            raise RecordError(RejectCode.invalid_encoding, f"invalid byte sequence for encoding \"{self.encoding_name}\": 0x00")
        return text

    def validate_constraints(self, row: Row) -> None:
        if self.has_not_null:
            for c, v in zip(self.schema.columns, row):
                if v is None and not c.nullable and not c.dropped:
                    raise RecordError(
                        RejectCode.not_null_violation,
                        f"null value in column \"{c.name}\" violates not-null constraint",
                    )
        for con in self.constraints:
            assert self.table is not None
            if self.table.evaluate_check(con, row) is False:
                raise RecordError(
                    RejectCode.check_violation,
                    f"new row for relation \"{self.table.name}\" violates check constraint \"{con.name}\"",
                )
