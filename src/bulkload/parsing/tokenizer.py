"""
Quote-aware splitting shared by the control file reader and the text formats.

Inside quotes the escape character protects a following quote or escape
character. When escape and quote are the same character a doubled quote
stands for one quote (plain CSV). Quoting may start and stop anywhere in a
field, `"ab"cd` reads as `abcd`.
"""
from __future__ import annotations

from dataclasses import dataclass


class UnterminatedQuote(ValueError):
    """The input ended inside a quoted section."""


@dataclass(frozen=True, slots=True)
class Token:
    text: str
    quoted: bool        # any part of the field was quoted


def find_unquoted(s: str, ch: str, *, quote: str = '"', escape: str = "\\") -> int:
    """Index of the first `ch` outside quotes, -1 when there is none."""
    in_quotes = False
    i = 0
    while i < len(s):
        c = s[i]
        if in_quotes:
            if c == escape and escape != quote and i + 1 < len(s):
                i += 2
                continue
            if c == quote:
                in_quotes = False
        elif c == quote:
            in_quotes = True
        elif c == ch:
            return i
        i += 1
    return -1


def tokenize(
    line: str,
    *,
    delimiter: str | None,
    quote: str = '"',
    escape: str = '"',
    trim: bool = False,
) -> list[Token]:
    """
    Split `line` on unquoted `delimiter` (no splitting when `None`).

    With `trim`, unquoted blanks around each field are dropped.
    Raises `UnterminatedQuote` when a quote is left open.
    """
    tokens: list[Token] = []
    buf: list[str] = []
    in_quotes = False
    quoted = False
    quoted_end = 0      # length of `buf` at the last closing quote
    i, n = 0, len(line)

    def finish() -> None:
        if trim:
            tail = "".join(buf[quoted_end:]).rstrip()
            text = "".join(buf[:quoted_end]) + tail
        else:
            text = "".join(buf)
        tokens.append(Token(text, quoted))

    while i < n:
        c = line[i]
        if in_quotes:
            if c == escape and i + 1 < n:
                nxt = line[i + 1]
                if nxt == quote or (escape != quote and nxt == escape):
                    buf.append(nxt)
                    i += 2
                    continue
            if c == quote:
                in_quotes = False
                quoted_end = len(buf)
            else:
                buf.append(c)
            i += 1
            continue

        if delimiter is not None and c == delimiter:
            finish()
            buf, quoted, quoted_end = [], False, 0
        elif c == quote:
            in_quotes = quoted = True
        elif trim and not buf and c.isspace():
            pass
        else:
            buf.append(c)
        i += 1

    if in_quotes:
        raise UnterminatedQuote("unterminated quoted field")
    finish()
    return tokens


def split_fields(
    line: str,
    *,
    delimiter: str,
    quote: str,
    escape: str,
    null: str,
    force_not_null: frozenset[int] = frozenset(),
) -> list[str | None]:
    """
    Split one record into field text. An unquoted field equal to `null` is
    `None`, unless its 0-based position is in `force_not_null`.
    """
    out: list[str | None] = []
    for i, tok in enumerate(tokenize(line, delimiter=delimiter, quote=quote, escape=escape)):
        if not tok.quoted and tok.text == null and i not in force_not_null:
            out.append(None)
        else:
            out.append(tok.text)
    return out


def unquote(value: str, *, quote: str = '"', escape: str = "\\") -> str:
    """Strip quotes (and escapes inside them) from a directive value."""
    return tokenize(value, delimiter=None, quote=quote, escape=escape)[0].text


def quote_value(value: str, *, quote: str = '"', escape: str = "\\") -> str:
    """Quote a value for a directive line, the inverse of `unquote`."""
    if escape == quote:
        body = value.replace(quote, quote + quote)
    else:
        body = value.replace(escape, escape + escape).replace(quote, escape + quote)
    return f"{quote}{body}{quote}"
