from __future__ import annotations

from pathlib import Path
from typing import IO, Any, Optional

from bulkload.parsing.primitives import to_text
from bulkload.parsing.tokenizer import quote_value
from bulkload.parsing.types import Row


class ParseBadFile:
    """
    Raw records the parser rejected, appended verbatim.

    Opened on the first rejected record, so a clean load leaves no file behind.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.records = 0
        self._f: Optional[IO[bytes]] = None

    def write(self, data: bytes) -> None:
        if self._f is None:
            self._f = self.path.open("wb")
        self._f.write(data)
        self.records += 1

    def close(self) -> None:
        if self._f is not None:
            self._f.close()
            self._f = None


def render_csv_row(values: tuple[Any, ...]) -> str:
    """
    One CSV line in the engine's external text form: null is an empty unquoted
    field, the empty string is `""`.
    """
    parts = []
    for v in values:
        text = to_text(v)
        if text is None:
            parts.append("")
        elif text == "" or any(c in text for c in ',"\r\n') or text != text.strip():
            parts.append(quote_value(text, quote='"', escape='"'))
        else:
            parts.append(text)
    return ",".join(parts)


class DuplicateBadFile:
    """Rows removed or rejected by unique-key conflicts, one CSV line each."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.rows = 0
        self._f: Optional[IO[str]] = None

    def write_row(self, row: Row) -> None:
        if self._f is None:
            self._f = self.path.open("w", encoding="utf-8", newline="")
        self._f.write(render_csv_row(row) + "\n")
        self.rows += 1

    def close(self) -> None:
        if self._f is not None:
            self._f.close()
            self._f = None
