from __future__ import annotations

import io
import struct
from decimal import Decimal
from pathlib import Path

import pytest

from bulkload.db.memory import MemoryFunctions
from bulkload.errors import ConfigurationError, FunctionCallError, RecordError
from bulkload.ingest.badfiles import ParseBadFile
from bulkload.ingest.checker import Checker
from bulkload.parsing.formats.binary import BinaryParser, parse_col
from bulkload.parsing.formats.function import FunctionParser, parse_function_call, render_record
from bulkload.parsing.registry import ParserKind, create_parser, parse_parser_kind
from bulkload.parsing.schema import RowFormer, make_column
from bulkload.parsing.types import RejectCode, Schema

SCHEMA = Schema(columns=(make_column("id", "integer", nullable=False), make_column("name", "text")))


def _binary(data: bytes, cols: list[str], **params: str) -> BinaryParser:
    p = BinaryParser()
    for c in cols:
        p.param("COL", c)
    for k, v in params.items():
        p.param(k, v)
    p.init(RowFormer(SCHEMA), io.BytesIO(data), Checker(SCHEMA))
    return p


def _record(n: int, text: bytes) -> bytes:
    return struct.pack("<i", n) + text


## -- BINARY

def test_parse_col_declarations() -> None:
    """Without an offset a field follows the previous one."""
    f = parse_col("INTEGER(4)", next_offset=0)
    assert (f.kind, f.offset, f.length) == ("INTEGER", 0, 4)
    f = parse_col("char(10+5) NULLIF none", next_offset=4)
    assert (f.kind, f.offset, f.length, f.nullif) == ("CHAR", 10, 5, "none")
    with pytest.raises(ConfigurationError):
        parse_col("INTEGER(3)", next_offset=0)
    with pytest.raises(ConfigurationError):
        parse_col("BLOB(4)", next_offset=0)


def test_binary_reads_fixed_records_and_trims_blanks() -> None:
    data = _record(7, b"abc  ") + _record(8, b"     ")
    p = _binary(data, ["INTEGER(4)", "CHAR(5)"])
    assert p.read() == (7, "abc")
    assert p.read() == (8, None)      # all blank
    assert p.read() is None

    p = _binary(data, ["INTEGER(4)", "CHAR(5)"], PRESERVE_BLANKS="YES")
    assert p.read() == (7, "abc  ")


def test_binary_varchar_stops_at_nul_and_nullif() -> None:
    data = _record(0, b"ab\x00\x00\x00")
    p = _binary(data, ["INTEGER(4) NULLIF 0", "VARCHAR(5)"])
    # NOT NULL is the checker's business, the parser yields the null
    assert p.read() == (None, "ab")

    p = BinaryParser()
    p.param("COL", "UNSIGNED(1)")
    p.param("COL", "VARCHAR(5)")
    p.init(RowFormer(SCHEMA), io.BytesIO(b"\xff" + b"ab\x00\x00\x00"), Checker(SCHEMA))
    assert p.read() == (255, "ab")


def test_binary_short_trailing_record_is_dumped_verbatim(tmp_path: Path) -> None:
    data = _record(1, b"one  ") + b"\x02\x00"
    p = _binary(data, ["INTEGER(4)", "CHAR(5)"])
    assert p.read() == (1, "one")
    with pytest.raises(RecordError) as e:
        p.read()
    assert e.value.code == RejectCode.malformed_record

    sink = ParseBadFile(tmp_path / "bad.bin")
    p.dump_record(sink)
    sink.close()
    assert (tmp_path / "bad.bin").read_bytes() == b"\x02\x00"


def test_binary_stride_skips_padding() -> None:
    data = _record(1, b"ab") + b"##" + _record(2, b"cd") + b"##"
    p = _binary(data, ["INTEGER(4)", "CHAR(2)"], STRIDE="8")
    assert p.read() == (1, "ab")
    assert p.read() == (2, "cd")
    assert p.read() is None


def test_binary_float_fields() -> None:
    p = BinaryParser()
    p.param("COL", "DOUBLE(8)")
    p.param("COL", "CHAR(1)")
    schema = Schema(columns=(make_column("x", "float8"), make_column("c", "text")))
    p.init(RowFormer(schema), io.BytesIO(struct.pack("<d", 2.5) + b"z"), Checker(schema))
    assert p.read() == (2.5, "z")


@pytest.mark.parametrize("bad", [float("nan"), float("inf")])
def test_binary_non_finite_double_into_integer_is_a_record_error(bad: float) -> None:
    data = struct.pack("<d", 1.0) + b"a" + struct.pack("<d", bad) + b"b" + struct.pack("<d", 3.0) + b"c"
    p = _binary(data, ["DOUBLE(8)", "CHAR(1)"])
    assert p.read() == (1, "a")
    with pytest.raises(RecordError) as e:
        p.read()
    assert (e.value.code, e.value.field) == (RejectCode.invalid_int, 1)
    assert p.read() == (3, "c")


def test_binary_configuration_errors() -> None:
    with pytest.raises(ConfigurationError):
        _binary(b"", [])
    with pytest.raises(ConfigurationError):
        _binary(b"", ["INTEGER(4)"])                    # two fields expected
    with pytest.raises(ConfigurationError):
        _binary(b"", ["INTEGER(4)", "CHAR(4)"], STRIDE="6")


def test_parser_kinds() -> None:
    assert parse_parser_kind("fixed") is ParserKind.BINARY
    assert parse_parser_kind(" csv ") is ParserKind.CSV
    assert isinstance(create_parser(ParserKind.FUNCTION), FunctionParser)
    with pytest.raises(ConfigurationError):
        parse_parser_kind("XML")


## -- FUNCTION

def test_parse_function_call_literals() -> None:
    call = parse_function_call("public.gen(3, 'it''s', NULL, TRUE, 1.5)")
    assert call.name == "public.gen"
    assert call.args == (3, "it's", None, True, Decimal("1.5"))
    assert parse_function_call("gen()").args == ()
    with pytest.raises(ConfigurationError):
        parse_function_call("not a call")
    with pytest.raises(ConfigurationError):
        parse_function_call("gen('open)")


def _function_parser(functions: MemoryFunctions, infile: str) -> FunctionParser:
    p = FunctionParser()
    p.bind(functions, infile)
    p.init(RowFormer(SCHEMA), None, Checker(SCHEMA), owns_stream=False)
    return p


def test_function_input_streams_generated_rows() -> None:
    functions = MemoryFunctions()
    functions.register(
        "gen",
        lambda n, prefix: ((i, f"{prefix}{i}") for i in range(1, n + 1)),
        arg_types=["integer", "text"],
        defaults=["n"],
        returns_set=True,
    )
    p = _function_parser(functions, "gen(3)")
    assert [p.read(), p.read(), p.read(), p.read()] == [(1, "n1"), (2, "n2"), (3, "n3"), None]
    assert p.cursor.count == 3


def test_function_bad_row_is_dumped_as_record_literal(tmp_path: Path) -> None:
    functions = MemoryFunctions()
    functions.register("rows", lambda: iter([("x", "a b"), (2, None)]), returns_set=True)
    p = _function_parser(functions, "rows()")
    with pytest.raises(RecordError) as e:
        p.read()
    assert e.value.field == 1

    sink = ParseBadFile(tmp_path / "bad")
    p.dump_record(sink)
    sink.close()
    assert (tmp_path / "bad").read_bytes() == b'(x,"a b")\n'
    assert p.read() == (2, None)


def test_function_non_finite_values_for_integer_column() -> None:
    functions = MemoryFunctions()
    functions.register(
        "g",
        lambda: iter([(float("inf"), "b"), (Decimal("NaN"), "c"), (Decimal("-Infinity"), "d"), (4.0, "e")]),
        returns_set=True,
    )
    p = _function_parser(functions, "g()")
    for _ in range(3):
        with pytest.raises(RecordError) as e:
            p.read()
        assert (e.value.code, e.value.field) == (RejectCode.invalid_int, 1)
    assert p.read() == (4, "e")


def test_function_errors_while_streaming() -> None:
    def broken():
        yield (1, "a")
        raise RuntimeError("boom")

    functions = MemoryFunctions()
    functions.register("broken", broken, returns_set=True)
    p = _function_parser(functions, "broken()")
    assert p.read() == (1, "a")
    with pytest.raises(FunctionCallError):
        p.read()


def test_render_record_quotes_special_text() -> None:
    assert render_record((1, None, "", 'say "x"', "a\\b")) == '(1,,"","say \\"x\\"","a\\\\b")'
