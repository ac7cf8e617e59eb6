from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Iterator

from bulkload.errors import ConfigurationError
from bulkload.parsing.primitives import to_text
from bulkload.parsing.tokenizer import UnterminatedQuote, tokenize
from bulkload.parsing.types import Row

from .base import BaseParser

if TYPE_CHECKING:
    from bulkload.db.store import FunctionRuntime
    from bulkload.ingest.badfiles import ParseBadFile


_CALL = re.compile(r"^\s*([A-Za-z_][\w$]*(?:\.[A-Za-z_][\w$]*)?)\s*\((.*)\)\s*$", re.DOTALL)

_END = object()


@dataclass(frozen=True, slots=True)
class FunctionCall:
    """A set-returning function call taken from INFILE."""
    name: str
    args: tuple[Any, ...]


def _literal(text: str, quoted: bool) -> Any:
    if quoted:
        return text
    s = text.strip()
    upper = s.upper()
    if upper == "NULL":
        return None
    if upper in ("TRUE", "FALSE"):
        return upper == "TRUE"
    try:
        return int(s)
    except ValueError:
        pass
    try:
        return Decimal(s)
    except InvalidOperation:
        raise ConfigurationError(f"invalid function argument: {text!r}") from None


def parse_function_call(text: str) -> FunctionCall:
    """
    Parse `name(arg, ...)`. Arguments are integers, decimals, `'quoted text'`
    (doubled quote to escape), `NULL`, `TRUE` or `FALSE`.
    """
    m = _CALL.match(text)
    if m is None:
        raise ConfigurationError(f"INFILE must be a function call for TYPE = FUNCTION: {text!r}")
    name, inner = m.group(1), m.group(2)
    if inner.strip() == "":
        return FunctionCall(name=name, args=())
    try:
        tokens = tokenize(inner, delimiter=",", quote="'", escape="'", trim=True)
    except UnterminatedQuote:
        raise ConfigurationError(f"unterminated string in function call: {text!r}") from None
    return FunctionCall(name=name, args=tuple(_literal(t.text, t.quoted) for t in tokens))


class FunctionParser(BaseParser):
    """
    Rows produced by a set-returning function named in INFILE.

    Every produced value is a row source of its own: a sequence is taken field
    by field, anything else is a single field.
    """

    name = "FUNCTION"
    reads_file = False

    def __init__(self) -> None:
        super().__init__()
        self.runtime: FunctionRuntime | None = None
        self.call: FunctionCall | None = None
        self._rows: Iterator[Any] | None = None

    def bind(self, runtime: FunctionRuntime, infile: str) -> None:
        """Attach the runtime that evaluates the INFILE call."""
        self.runtime = runtime
        self.call = parse_function_call(infile)

    def _init(self) -> None:
        if self.runtime is None or self.call is None:
            raise ConfigurationError("FUNCTION input is not bound to a function runtime")
        self._rows = iter(self.runtime.generate(self.call.name, self.call.args))

    def _next_record(self) -> Any:
        assert self._rows is not None
        item = next(self._rows, _END)
        if item is _END:
            return None
        if isinstance(item, (tuple, list)):
            return tuple(item)
        return (item,)

    def _parse_record(self, raw: Any) -> Row:
        assert self.former is not None
        return self.former.form_native(raw, self.cursor)

    def dump_record(self, sink: ParseBadFile) -> None:
        """Produced rows are dumped as record literals (readable by TYPE = TUPLE)."""
        if self._record is None:
            return
        sink.write(render_record(self._record).encode("utf-8") + b"\n")


def render_record(values: tuple[Any, ...]) -> str:
    """Render values as a record literal, `(1,"a b",)`; null is an empty unquoted field."""
    parts = []
    for v in values:
        text = to_text(v)
        if text is None:
            parts.append("")
        elif text == "" or any(c in text for c in ',()"\\ '):
            parts.append('"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"')
        else:
            parts.append(text)
    return "(" + ",".join(parts) + ")"
