from __future__ import annotations

from typing import TYPE_CHECKING, Any, BinaryIO

from bulkload.errors import ConfigurationError
from bulkload.parsing.schema import RowFormer
from bulkload.parsing.tokenizer import quote_value
from bulkload.parsing.types import ParseCursor, Row

if TYPE_CHECKING:
    from bulkload.ingest.badfiles import ParseBadFile
    from bulkload.ingest.checker import Checker


_TRUE = ("1", "true", "t", "yes", "y", "on")
_FALSE = ("0", "false", "f", "no", "n", "off")


def parse_bool_option(keyword: str, value: str) -> bool:
    s = value.strip().lower()
    if s in _TRUE:
        return True
    if s in _FALSE:
        return False
    raise ConfigurationError(f"invalid boolean for {keyword}: {value!r}")


def parse_int_option(keyword: str, value: str, *, minimum: int) -> int:
    try:
        n = int(value.strip())
    except ValueError:
        raise ConfigurationError(f"invalid integer for {keyword}: {value!r}") from None
    if n < minimum:
        raise ConfigurationError(f"{keyword} must be >= {minimum}, got {n}")
    return n


def parse_char_option(keyword: str, value: str) -> str:
    if len(value) != 1:
        raise ConfigurationError(f"{keyword} must be a single one-byte character: {value!r}")
    return value


class BaseParser:
    """
    Options and bookkeeping every record format shares.

    Subclasses implement `_next_record` (raw bytes of the next record, `None`
    at end of input) and `_parse_record` (raw bytes -> row), plus `_param` for
    their own keywords.
    """

    name = "BASE"
    repeatable: frozenset[str] = frozenset()    # keywords allowed more than once
    reads_file = True

    def __init__(self) -> None:
        self.cursor = ParseCursor()
        self.filter_name: str | None = None
        self.check_constraints = False
        self.encoding: str | None = None
        self.skip = 0
        self.skipped = 0
        self.former: RowFormer | None = None
        self.checker: Checker | None = None
        self._stream: BinaryIO | None = None
        self._owns_stream = False
        self._record: Any = None         # raw form of the current record

    ## -- configuration

    def param(self, keyword: str, value: str) -> bool:
        """Apply a format keyword. Returns `False` for keywords this parser does not know."""
        kw = keyword.upper()
        if kw == "FILTER":
            self.filter_name = value.strip()
        elif kw == "CHECK_CONSTRAINTS":
            self.check_constraints = parse_bool_option(kw, value)
        elif kw in ("SKIP", "OFFSET"):
            self.skip = parse_int_option(kw, value, minimum=0)
        elif kw == "ENCODING" and self.reads_file:
            self.encoding = value.strip()
        else:
            return self._param(kw, value)
        return True

    def _param(self, keyword: str, value: str) -> bool:
        return False

    def dump_params(self) -> list[str]:
        lines = [f"TYPE = {self.name}", f"SKIP = {self.skip}"]
        if self.filter_name:
            lines.append(f"FILTER = {self.filter_name}")
        lines.append(f"CHECK_CONSTRAINTS = {'YES' if self.check_constraints else 'NO'}")
        if self.encoding:
            lines.append(f"ENCODING = {quote_value(self.encoding)}")
        return lines + self._dump_params()

    def _dump_params(self) -> list[str]:
        return []

    ## -- lifecycle

    def init(self, former: RowFormer, stream: BinaryIO | None, checker: Checker, *, owns_stream: bool = True) -> None:
        """Bind the row former and the opened input. Format validation happens here."""
        self.former = former
        self.checker = checker
        self._stream = stream
        self._owns_stream = owns_stream
        self._init()

    def _init(self) -> None:
        pass

    def read(self) -> Row | None:
        """
        Produce the next row, `None` at end of input.

        Raises `RecordError` for a bad record; the record stays available to
        `dump_record` and the next call moves on to the following record.
        """
        self.cursor.field = -1
        while self.skipped < self.skip:
            if self._next_record() is None:
                return None
            self.cursor.count += 1
            self.skipped += 1

        raw = self._next_record()
        if raw is None:
            self._record = None
            return None
        self._record = raw
        self.cursor.count += 1
        self.cursor.field = 0
        row = self._parse_record(raw)
        self.cursor.field = -1
        return row

    def _next_record(self) -> Any:
        raise NotImplementedError

    def _parse_record(self, raw: Any) -> Row:
        raise NotImplementedError

    @property
    def current_record(self) -> Any:
        """Raw form of the record last read, `None` at end of input."""
        return self._record

    def dump_record(self, sink: ParseBadFile) -> None:
        """Append the current raw record to the parse bad file, newline terminated."""
        if self._record is None:
            return
        rec = self._record
        sink.write(rec if rec.endswith(b"\n") else rec + b"\n")

    def term(self) -> int:
        """Close the input. Returns the number of records skipped by SKIP."""
        if self._stream is not None and self._owns_stream:
            self._stream.close()
        self._stream = None
        return self.skipped
