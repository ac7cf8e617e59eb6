from __future__ import annotations

from typing import Iterator

from bulkload.errors import RecordError
from bulkload.ingest.readers import stream_lines, strip_newline
from bulkload.parsing.tokenizer import UnterminatedQuote, quote_value, split_fields
from bulkload.parsing.types import RejectCode, Row

from .base import BaseParser, parse_char_option


class TupleParser(BaseParser):
    """
    Row literals, one per line: `(1,"two words",,2026-01-01)`.

    Keywords: DELIMITER (`,`), QUOTE (`"`), ESCAPE (backslash), NULL (empty).
    An unquoted empty field is null, `""` is the empty string.
    """

    name = "TUPLE"

    def __init__(self) -> None:
        super().__init__()
        self.delimiter = ","
        self.quote = '"'
        self.escape = "\\"
        self.null = ""
        self._lines: Iterator[bytes] | None = None

    def _param(self, keyword: str, value: str) -> bool:
        if keyword == "DELIMITER":
            self.delimiter = parse_char_option(keyword, value)
        elif keyword == "QUOTE":
            self.quote = parse_char_option(keyword, value)
        elif keyword == "ESCAPE":
            self.escape = parse_char_option(keyword, value)
        elif keyword == "NULL":
            self.null = value
        else:
            return False
        return True

    def _dump_params(self) -> list[str]:
        return [
            f"DELIMITER = {quote_value(self.delimiter)}",
            f"QUOTE = {quote_value(self.quote)}",
            f"ESCAPE = {quote_value(self.escape)}",
            f"NULL = {quote_value(self.null)}",
        ]

    def _init(self) -> None:
        assert self._stream is not None
        self._lines = stream_lines(self._stream)

    def _next_record(self) -> bytes | None:
        assert self._lines is not None
        return next(self._lines, None)

    def _parse_record(self, raw: bytes) -> Row:
        assert self.checker is not None and self.former is not None
        text = self.checker.validate_encoding(strip_newline(raw)).strip()
        if len(text) < 2 or text[0] != "(" or text[-1] != ")":
            raise RecordError(RejectCode.malformed_record, f"malformed record literal: {text[:40]!r}, missing parentheses")

        inner = text[1:-1]
        if inner == "":
            # `()` is one null field, like a record literal of a single column
            fields: list[str | None] = [None] if self.former.max_fields else []
        else:
            try:
                fields = split_fields(inner, delimiter=self.delimiter, quote=self.quote, escape=self.escape, null=self.null)
            except UnterminatedQuote:
                raise RecordError(RejectCode.malformed_record, "malformed record literal: unterminated quoted field") from None
        return self.former.form(fields, self.cursor)
