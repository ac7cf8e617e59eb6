from __future__ import annotations

from typing import Iterator

from bulkload.errors import ConfigurationError, RecordError
from bulkload.ingest.readers import stream_lines, strip_newline
from bulkload.parsing.tokenizer import UnterminatedQuote, quote_value, split_fields
from bulkload.parsing.types import RejectCode, Row

from .base import BaseParser, parse_char_option


class CSVParser(BaseParser):
    """
    Delimited text, one record per line; quoted fields may span lines.

    Keywords: DELIMITER, QUOTE, ESCAPE (defaults to QUOTE), NULL,
    FORCE_NOT_NULL (repeatable, one column name each).
    """

    name = "CSV"
    repeatable = frozenset({"FORCE_NOT_NULL"})

    def __init__(self) -> None:
        super().__init__()
        self.delimiter = ","
        self.quote = '"'
        self.escape: str | None = None      # resolved to `quote` at init when unset
        self.null = ""
        self.force_not_null: list[str] = []
        self._force_positions: frozenset[int] = frozenset()
        self._lines: Iterator[bytes] | None = None
        self._pending_error: RecordError | None = None

    def _param(self, keyword: str, value: str) -> bool:
        if keyword == "DELIMITER":
            self.delimiter = parse_char_option(keyword, value)
        elif keyword == "QUOTE":
            self.quote = parse_char_option(keyword, value)
        elif keyword == "ESCAPE":
            self.escape = parse_char_option(keyword, value)
        elif keyword == "NULL":
            self.null = value
        elif keyword == "FORCE_NOT_NULL":
            self.force_not_null.append(value.strip())
        else:
            return False
        return True

    def _dump_params(self) -> list[str]:
        lines = [
            f"DELIMITER = {quote_value(self.delimiter)}",
            f"QUOTE = {quote_value(self.quote)}",
            f"ESCAPE = {quote_value(self.escape or self.quote)}",
            f"NULL = {quote_value(self.null)}",
        ]
        lines.extend(f"FORCE_NOT_NULL = {name}" for name in self.force_not_null)
        return lines

    def _init(self) -> None:
        if self.escape is None:
            self.escape = self.quote
        if self.delimiter == self.quote:
            raise ConfigurationError("DELIMITER and QUOTE must be different")
        if self.delimiter in self.null or self.quote in self.null:
            raise ConfigurationError("NULL cannot contain the DELIMITER or QUOTE character")
        assert self.former is not None
        positions: set[int] = set()
        for name in self.force_not_null:
            try:
                positions.add(self.former.schema.index_of(name))
            except KeyError:
                raise ConfigurationError(f"FORCE_NOT_NULL column \"{name}\" is not a column of the input") from None
        self._force_positions = frozenset(positions)
        assert self._stream is not None
        self._lines = stream_lines(self._stream)

    def _quote_open(self, raw: bytes) -> bool:
        # ASCII quote/escape characters never occur inside multibyte sequences of the supported encodings
        text = raw.decode("latin-1")
        try:
            split_fields(text, delimiter=self.delimiter, quote=self.quote, escape=self.escape or self.quote, null=self.null)
        except UnterminatedQuote:
            return True
        return False

    def _next_record(self) -> bytes | None:
        assert self._lines is not None
        self._pending_error = None
        first = next(self._lines, None)
        if first is None:
            return None
        raw = first
        while self._quote_open(strip_newline(raw)):
            more = next(self._lines, None)
            if more is None:
                self._pending_error = RecordError(RejectCode.malformed_record, "unterminated CSV quoted field")
                break
            raw += more
        return raw

    def _parse_record(self, raw: bytes) -> Row:
        if self._pending_error is not None:
            raise self._pending_error
        assert self.checker is not None and self.former is not None
        text = self.checker.validate_encoding(strip_newline(raw))
        fields = split_fields(
            text,
            delimiter=self.delimiter,
            quote=self.quote,
            escape=self.escape or self.quote,
            null=self.null,
            force_not_null=self._force_positions,
        )
        return self.former.form(fields, self.cursor)
