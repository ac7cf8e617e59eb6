from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import pytest

from bulkload.parsing.primitives import (
    ParseError,
    coerce_native,
    format_type,
    parse_bool,
    parse_bytea,
    parse_int,
    parse_numeric,
    parse_text,
    parse_timestamp,
    parse_type_spec,
    to_text,
)
from bulkload.parsing.schema import make_column
from bulkload.parsing.types import RejectCode


def test_type_spec_round_trips_through_format_type() -> None:
    """Declarations map onto canonical names and back."""
    assert parse_type_spec("integer") == ("int4", -1)
    assert parse_type_spec("character varying(20)") == ("varchar", 24)
    name, typmod = parse_type_spec("NUMERIC(12, 2)")
    assert name == "numeric"
    assert format_type(name, typmod) == "numeric(12,2)"


def test_type_spec_rejects_unknown_types_and_modifiers() -> None:
    with pytest.raises(ValueError):
        parse_type_spec("geometry")
    with pytest.raises(ValueError):
        parse_type_spec("integer(4)")


def test_int_rejects_non_integers_and_out_of_range() -> None:
    """`12.3` is not sneakily truncated, `int2` enforces its range."""
    assert parse_int(" 42 ", field="id") == 42
    with pytest.raises(ParseError) as e:
        parse_int("12.3", field="id")
    assert e.value.code == RejectCode.invalid_int
    with pytest.raises(ParseError) as e:
        parse_int("40000", field="qty", type_name="int2")
    assert "out of range" in e.value.detail


def test_numeric_rounds_to_scale_and_enforces_precision() -> None:
    _, typmod = parse_type_spec("numeric(5,2)")
    assert parse_numeric("1.005", field="price", typmod=typmod) == Decimal("1.01")
    with pytest.raises(ParseError) as e:
        parse_numeric("12345.6", field="price", typmod=typmod)
    assert e.value.code == RejectCode.invalid_numeric
    assert "overflow" in e.value.detail


def test_text_length_limits() -> None:
    """`varchar(n)` rejects longer values, `char(n)` pads shorter ones."""
    _, vc3 = parse_type_spec("varchar(3)")
    _, ch4 = parse_type_spec("char(4)")
    assert parse_text("abc", field="code", type_name="varchar", typmod=vc3) == "abc"
    assert parse_text("ab", field="code", type_name="bpchar", typmod=ch4) == "ab  "
    with pytest.raises(ParseError) as e:
        parse_text("abcdef", field="code", type_name="varchar", typmod=vc3)
    assert e.value.code == RejectCode.invalid_text


def test_bool_and_bytea_spellings() -> None:
    assert parse_bool("YES", field="flag") is True
    assert parse_bool("off", field="flag") is False
    with pytest.raises(ParseError):
        parse_bool("maybe", field="flag")
    assert parse_bytea("\\x0a0b", field="blob") == b"\n\x0b"
    with pytest.raises(ParseError):
        parse_bytea("0a0b", field="blob")


def test_timestamp_time_zone_handling() -> None:
    """`timestamptz` assumes UTC when the offset is missing, `timestamp` refuses one."""
    ts = parse_timestamp("2026-02-10 12:34:56", field="at", with_tz=True)
    assert ts == datetime(2026, 2, 10, 12, 34, 56, tzinfo=timezone.utc)
    assert parse_timestamp("2026-02-10T12:34:56Z", field="at", with_tz=True).tzinfo is not None
    with pytest.raises(ParseError) as e:
        parse_timestamp("2026-02-10T12:34:56+02:00", field="at", with_tz=False)
    assert e.value.code == RejectCode.invalid_timestamp


def test_coerce_native_checks_python_types() -> None:
    """Typed values are accepted when they fit, strings go through the text input."""
    id_col = make_column("id", "integer")
    assert coerce_native(3.0, id_col) == 3
    assert coerce_native("17", id_col) == 17
    with pytest.raises(ParseError):
        coerce_native(True, id_col)
    with pytest.raises(ParseError):
        coerce_native(2.5, id_col)
    assert coerce_native(date(2026, 1, 1), make_column("d", "date")) == date(2026, 1, 1)
    assert coerce_native({"a": 1}, make_column("doc", "jsonb")) == '{"a": 1}'


def test_to_text_external_forms() -> None:
    assert to_text(None) is None
    assert to_text(True) == "t"
    assert to_text(b"\x0a") == "\\x0a"
    assert to_text(date(2026, 3, 1)) == "2026-03-01"
    assert to_text(Decimal("1.50")) == "1.50"
