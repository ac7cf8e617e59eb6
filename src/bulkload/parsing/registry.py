from __future__ import annotations

from enum import Enum

from bulkload.errors import ConfigurationError

from .formats.base import BaseParser
from .formats.binary import BinaryParser
from .formats.csv import CSVParser
from .formats.function import FunctionParser
from .formats.tuple import TupleParser


class ParserKind(str, Enum):
    BINARY = "BINARY"
    CSV = "CSV"
    TUPLE = "TUPLE"
    FUNCTION = "FUNCTION"


_ALIASES = {"FIXED": ParserKind.BINARY}

_PARSERS: dict[ParserKind, type[BaseParser]] = {
    ParserKind.BINARY: BinaryParser,
    ParserKind.CSV: CSVParser,
    ParserKind.TUPLE: TupleParser,
    ParserKind.FUNCTION: FunctionParser,
}


def parse_parser_kind(value: str) -> ParserKind:
    """`TYPE` value -> parser kind, case-insensitive. `FIXED` is accepted for BINARY."""
    s = value.strip().upper()
    if s in _ALIASES:
        return _ALIASES[s]
    try:
        return ParserKind(s)
    except ValueError:
        raise ConfigurationError(f"invalid TYPE: {value!r} (expected BINARY, CSV, TUPLE or FUNCTION)") from None


def create_parser(kind: ParserKind) -> BaseParser:
    """
    A fresh parser for an input TYPE.
    """
    return _PARSERS[kind]()
