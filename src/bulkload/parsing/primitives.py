from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Callable
from uuid import UUID

from .types import Column, RejectCode


@dataclass(frozen=True, slots=True)
class ParseError(Exception):
    """Handles rejected fields, with additonal rejection details from error messages."""
    code: RejectCode            # used to classify rejection type encountered
    detail: str                 # error message encountered that led to rejection.


## -- type names

# every accepted spelling -> canonical (Postgres internal) name
_TYPE_ALIASES: dict[str, str] = {
    "smallint": "int2", "int2": "int2",
    "integer": "int4", "int": "int4", "int4": "int4",
    "bigint": "int8", "int8": "int8",
    "numeric": "numeric", "decimal": "numeric",
    "real": "float4", "float4": "float4",
    "double precision": "float8", "float8": "float8", "float": "float8",
    "boolean": "bool", "bool": "bool",
    "text": "text",
    "character varying": "varchar", "varchar": "varchar",
    "character": "bpchar", "char": "bpchar", "bpchar": "bpchar",
    "date": "date",
    "timestamp": "timestamp", "timestamp without time zone": "timestamp",
    "timestamptz": "timestamptz", "timestamp with time zone": "timestamptz",
    "bytea": "bytea",
    "json": "json", "jsonb": "jsonb",
    "uuid": "uuid",
}

# argument types a filter function may not declare
POLYMORPHIC_TYPES = frozenset({
    "anyelement", "anyarray", "anynonarray", "anyenum", "anyrange", "anymultirange",
    "anycompatible", "anycompatiblearray", "anycompatiblenonarray", "anycompatiblerange",
    "internal",
})

# physical storage (length, alignment); -1 length is variable width
_STORAGE: dict[str, tuple[int, str]] = {
    "int2": (2, "s"), "int4": (4, "i"), "int8": (8, "d"),
    "float4": (4, "i"), "float8": (8, "d"),
    "bool": (1, "c"), "date": (4, "i"),
    "timestamp": (8, "d"), "timestamptz": (8, "d"),
    "uuid": (16, "c"),
}

_VARHDRSZ = 4
_TYPE_SPEC = re.compile(r"^\s*([a-z ]+?)\s*(?:\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\))?\s*$", re.IGNORECASE)


def canonical_type(name: str) -> str:
    """Map a SQL type spelling onto its canonical name. Raises `ValueError` on unknown types."""
    key = " ".join(name.strip().lower().split())
    if key in POLYMORPHIC_TYPES:
        return key
    try:
        return _TYPE_ALIASES[key]
    except KeyError:
        raise ValueError(f"unsupported type: {name!r}") from None


def parse_type_spec(spec: str) -> tuple[str, int]:
    """
    Split a type declaration such as `varchar(20)` or `numeric(12,2)` into
    `(canonical_name, typmod)`, using the Postgres typmod encoding.
    """
    m = _TYPE_SPEC.match(spec)
    if m is None:
        raise ValueError(f"invalid type declaration: {spec!r}")
    name = canonical_type(m.group(1))
    if m.group(2) is None:
        return name, -1
    first = int(m.group(2))
    if name == "numeric":
        scale = int(m.group(3) or 0)
        return name, ((first << 16) | scale) + _VARHDRSZ
    if name in ("varchar", "bpchar"):
        return name, first + _VARHDRSZ
    if name in ("timestamp", "timestamptz"):
        return name, first
    raise ValueError(f"type {name} takes no modifier: {spec!r}")


def format_type(name: str, typmod: int = -1) -> str:
    """Render a canonical type back into a declaration, the inverse of `parse_type_spec`."""
    if typmod < 0:
        return name
    if name == "numeric":
        p, s = _numeric_precision(typmod)
        return f"numeric({p},{s})"
    if name in ("varchar", "bpchar"):
        return f"{name}({typmod - _VARHDRSZ})"
    return f"{name}({typmod})"


def storage_of(type_name: str) -> tuple[int, str]:
    """Physical `(length, alignment)` of a type, used to match dropped columns."""
    return _STORAGE.get(type_name, (-1, "i"))


def _numeric_precision(typmod: int) -> tuple[int, int]:
    t = typmod - _VARHDRSZ
    return (t >> 16) & 0xFFFF, t & 0xFFFF


## -- text parsers (input is the decoded field text)

_INT_RANGES = {
    "int2": (-(2 ** 15), 2 ** 15 - 1),
    "int4": (-(2 ** 31), 2 ** 31 - 1),
    "int8": (-(2 ** 63), 2 ** 63 - 1),
}


def parse_int(v: str, *, field: str, type_name: str = "int8") -> int:
    """Parse integers. Raise on non `int` or values out of range for `type_name`."""
    s = v.strip()
    try:
        # Non `int` guard: "12.3" or "1e-4" should fail, not be sneakily coerced to `int`
        if ("." in s) or ("e" in s.lower()):
            raise ValueError(f"input number is non-integer: {s!r}")
        n = int(s)
    except ValueError:
        raise ParseError(RejectCode.invalid_int, f"{field}: invalid input syntax for integer: {v!r}")
    lo, hi = _INT_RANGES[type_name]
    if not lo <= n <= hi:
        raise ParseError(RejectCode.invalid_int, f"{field}: value {v!r} is out of range for type {type_name}")
    return n


def parse_numeric(v: str, *, field: str, typmod: int = -1) -> Decimal:
    """
    Parse a decimal, then enforce the precision/scale of `typmod` the way
    Postgres `numeric(p,s)` does: round to `s` places, reject more than `p` digits.
    """
    try:
        d = Decimal(v.strip())
    except (InvalidOperation, ValueError):
        raise ParseError(RejectCode.invalid_numeric, f"{field}: invalid numeric value {v!r}")
    if not d.is_finite() and not d.is_nan():
        raise ParseError(RejectCode.invalid_numeric, f"{field}: invalid numeric value {v!r}")
    if typmod < 0 or d.is_nan():
        return d

    precision, scale = _numeric_precision(typmod)
    try:
        d2 = d.quantize(Decimal(1).scaleb(-scale), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        d2 = None
    # integral digits must fit into precision - scale
    integral = len(d2.as_tuple().digits) - scale if d2 is not None and d2 != 0 else 0
    if d2 is None or integral > precision - scale:
        raise ParseError(
            RejectCode.invalid_numeric,
            f"{field}: numeric field overflow, precision {precision} scale {scale}: {v!r}",
        )
    return d2


def parse_float(v: str, *, field: str) -> float:
    s = v.strip()
    try:
        return float(s)
    except ValueError:
        raise ParseError(RejectCode.invalid_float, f"{field}: invalid input syntax for type double precision: {v!r}")


def parse_bool(v: str, *, field: str) -> bool:
    s = v.strip().lower()
    # the allowed bool matches
    if s in ("1", "true", "t", "yes", "y", "on"): return True
    if s in ("0", "false", "f", "no", "n", "off"): return False
    raise ParseError(RejectCode.invalid_bool, f"{field}: invalid input syntax for type boolean: {v!r}")


def parse_date(v: str, *, field: str) -> date:
    """Parse date. Raise on non successful `date` coercion."""
    try:
        return date.fromisoformat(v.strip())
    except ValueError:
        # reuses invalid_timestamp per the fixed reject-code typings
        raise ParseError(RejectCode.invalid_timestamp, f"{field}: invalid date (expected YYYY-MM-DD): {v!r}")


def parse_timestamp(v: str, *, field: str, with_tz: bool) -> datetime:
    """
    Accepts the ISO forms:
    - `2026-02-10T12:34:56Z`
    - `2026-02-10 12:34:56+00:00`
    - `2026-02-10T12:34:56`  (assumption: UTC if tz missing and `with_tz`)

    `timestamp` (without time zone) columns reject an explicit offset.
    """
    # normalization, convert some common non-conformitory iso
    s = v.strip().replace("Z", "+00:00")
    s = s.replace(" ", "T", 1)  # allows space-separated

    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        raise ParseError(RejectCode.invalid_timestamp, f"{field}: invalid timestamp (ISO): {v!r}")

    if with_tz:
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt
    if dt.tzinfo is not None:
        raise ParseError(RejectCode.invalid_timestamp, f"{field}: time zone not allowed for timestamp: {v!r}")
    return dt


def parse_text(v: str, *, field: str, type_name: str = "text", typmod: int = -1) -> str:
    """
    Text-like values. `varchar(n)` rejects longer input,
    `char(n)` rejects longer input and pads shorter input with blanks.
    """
    if typmod < 0 or type_name == "text":
        return v
    limit = typmod - _VARHDRSZ
    if len(v.rstrip(" ")) > limit:
        raise ParseError(RejectCode.invalid_text, f"{field}: value too long for type {format_type(type_name, typmod)}")
    if type_name == "bpchar":
        return v[:limit].ljust(limit)
    return v[:limit] if len(v) > limit else v


def parse_bytea(v: str, *, field: str) -> bytes:
    """Hex format (`\\x0a0b`) only."""
    s = v.strip()
    if not s.startswith("\\x"):
        raise ParseError(RejectCode.invalid_text, f"{field}: bytea must be hex encoded (\\x...): {v!r}")
    try:
        return bytes.fromhex(s[2:])
    except ValueError:
        raise ParseError(RejectCode.invalid_text, f"{field}: invalid hexadecimal data: {v!r}")


def parse_json(v: str, *, field: str) -> str:
    """Validate JSON text, return it unchanged."""
    try:
        json.loads(v)
    except ValueError:
        raise ParseError(RejectCode.invalid_text, f"{field}: invalid input syntax for type json: {v!r}")
    return v


def parse_uuid(v: str, *, field: str) -> UUID:
    try:
        return UUID(v.strip())
    except ValueError:
        raise ParseError(RejectCode.invalid_text, f"{field}: invalid input syntax for type uuid: {v!r}")


## -- per column coercion

Coercer = Callable[[Any], Any]


def text_coercer(column: Column) -> Coercer:
    """
    Build the input function for one column: field text -> typed value.
    Resolved once per load, then called for every record.
    """
    t, name, mod = column.type_name, column.name, column.typmod

    if t in _INT_RANGES:
        return lambda v: parse_int(v, field=name, type_name=t)
    if t == "numeric":
        return lambda v: parse_numeric(v, field=name, typmod=mod)
    if t in ("float4", "float8"):
        return lambda v: parse_float(v, field=name)
    if t == "bool":
        return lambda v: parse_bool(v, field=name)
    if t == "date":
        return lambda v: parse_date(v, field=name)
    if t in ("timestamp", "timestamptz"):
        return lambda v: parse_timestamp(v, field=name, with_tz=(t == "timestamptz"))
    if t in ("text", "varchar", "bpchar"):
        return lambda v: parse_text(v, field=name, type_name=t, typmod=mod)
    if t == "bytea":
        return lambda v: parse_bytea(v, field=name)
    if t in ("json", "jsonb"):
        return lambda v: parse_json(v, field=name)
    if t == "uuid":
        return lambda v: parse_uuid(v, field=name)
    raise ValueError(f"no input function for type {t}")


def coerce_native(value: Any, column: Column) -> Any:
    """
    Coerce an already decoded value (binary fields, function results) to the
    column type. Strings go through the text input function.
    """
    if value is None:
        return None
    if isinstance(value, str):
        return text_coercer(column)(value)

    t, name = column.type_name, column.name
    if t in _INT_RANGES:
        if isinstance(value, bool) or not isinstance(value, int):
            try:
                integral = isinstance(value, (float, Decimal)) and value == int(value)
            except (ValueError, OverflowError, ArithmeticError):
                integral = False        # NaN or infinity
            if not integral:
                raise ParseError(RejectCode.invalid_int, f"{name}: expected integer, got {value!r}")
            value = int(value)
        return parse_int(str(value), field=name, type_name=t)
    if t == "numeric" and isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return parse_numeric(str(value), field=name, typmod=column.typmod)
    if t in ("float4", "float8") and isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return float(value)
    if t == "bool" and isinstance(value, bool):
        return value
    if t == "date" and isinstance(value, date) and not isinstance(value, datetime):
        return value
    if t in ("timestamp", "timestamptz") and isinstance(value, datetime):
        return value if t == "timestamp" or value.tzinfo else value.replace(tzinfo=timezone.utc)
    if t == "bytea" and isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if t in ("json", "jsonb") and isinstance(value, (dict, list)):
        return json.dumps(value)
    if t == "uuid" and isinstance(value, UUID):
        return value
    raise ParseError(RejectCode.invalid_text, f"{name}: cannot coerce {type(value).__name__} to {t}")


## -- external text representation

def to_text(value: Any) -> str | None:
    """Render a typed value the way the target engine prints it (`None` stays null)."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "t" if value else "f"
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "\\x" + bytes(value).hex()
    return str(value)
