"""
Control file resolution: `KEYWORD = value` directives from a control file and
an inline options block, turned into one immutable `LoadConfiguration`.
"""
from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Sequence

from bulkload.errors import ConfigurationError
from bulkload.ingest.readers import STDIN
from bulkload.parsing.formats.base import BaseParser, parse_bool_option
from bulkload.parsing.registry import ParserKind, create_parser, parse_parser_kind
from bulkload.parsing.tokenizer import UnterminatedQuote, find_unquoted, quote_value, unquote

UNLIMITED = sys.maxsize
DEFAULT_QUOTA = 50
DEFAULT_WORKERS = 4
DEFAULT_BUFFER_SIZE = 500


class WriterKind(str, Enum):
    DIRECT = "DIRECT"
    BUFFERED = "BUFFERED"
    PARALLEL = "PARALLEL"


class DuplicatePolicy(str, Enum):
    ERROR = "ERROR"             # reject the new row
    REMOVE_NEW = "REMOVE_NEW"   # keep the existing row, drop the new one
    REMOVE_OLD = "REMOVE_OLD"   # delete the existing row(s), insert the new one


@dataclass(frozen=True, slots=True)
class Directive:
    keyword: str
    value: str
    line: int


@dataclass(frozen=True)
class LoadConfiguration:
    """Everything one load needs to know, fixed once resolved."""
    table: str                          # qualified `schema.name`
    infile: str
    logfile: str
    parse_badfile: str
    duplicate_badfile: str
    parser_kind: ParserKind
    writer_kind: WriterKind = WriterKind.DIRECT
    max_parse_errors: int = DEFAULT_QUOTA
    max_duplicate_errors: int = DEFAULT_QUOTA
    limit: int = UNLIMITED
    on_duplicate: DuplicatePolicy = DuplicatePolicy.ERROR
    verbose: bool = False
    workers: int = DEFAULT_WORKERS
    buffer_size: int = DEFAULT_BUFFER_SIZE
    parser_options: tuple[Directive, ...] = ()      # forwarded to the parser, in order

    @property
    def schema_name(self) -> str:
        return self.table.split(".", 1)[0]

    @property
    def table_name(self) -> str:
        return self.table.split(".", 1)[1]


## -- directive lines

def parse_directive_line(text: str, line: int) -> Directive | None:
    """One control line -> directive, `None` for blank and comment-only lines."""
    cut = find_unquoted(text, "#", quote='"', escape="\\")
    if cut >= 0:
        text = text[:cut]
    text = text.strip()
    if not text:
        return None

    eq = find_unquoted(text, "=", quote='"', escape="\\")
    if eq < 0:
        raise ConfigurationError(f'invalid input "{text}"', line=line)
    keyword = text[:eq].strip()
    value = text[eq + 1:].strip()
    if not keyword:
        raise ConfigurationError(f'invalid input "{text}"', line=line)
    try:
        value = unquote(value, quote='"', escape="\\") if value else value
    except UnterminatedQuote:
        raise ConfigurationError("unterminated quoted field", line=line, keyword=keyword, value=value) from None
    return Directive(keyword=keyword, value=value, line=line)


def read_directives(control_file: str | Path | None, options: str | Sequence[str] | None = None) -> list[Directive]:
    """Directives from the control file, then from the options; line numbers run across both."""
    lines: list[str] = []
    if control_file:
        try:
            lines.extend(Path(control_file).read_text(encoding="utf-8").splitlines())
        except OSError as e:
            raise ConfigurationError(f'could not open control file "{control_file}": {e.strerror}') from None
    if options:
        lines.extend(options.splitlines() if isinstance(options, str) else options)

    out: list[Directive] = []
    for i, text in enumerate(lines, start=1):
        d = parse_directive_line(text, i)
        if d is not None:
            out.append(d)
    return out


## -- values

def parse_quota(d: Directive) -> int:
    """Error quota: `-1`, `INFINITE` or `UNLIMITED` mean no limit."""
    s = d.value.strip()
    if s.upper() in ("INFINITE", "UNLIMITED"):
        return UNLIMITED
    n = _int_value(d, minimum=-1)
    return UNLIMITED if n == -1 else n


def parse_limit(d: Directive) -> int:
    if d.value.strip().upper() in ("INFINITE", "UNLIMITED"):
        return UNLIMITED
    return _int_value(d, minimum=0)


def _int_value(d: Directive, *, minimum: int) -> int:
    try:
        n = int(d.value.strip())
    except ValueError:
        raise ConfigurationError(f"invalid integer for {d.keyword.upper()}", line=d.line, keyword=d.keyword, value=d.value) from None
    if n < minimum:
        raise ConfigurationError(f"{d.keyword.upper()} must be >= {minimum}", line=d.line, keyword=d.keyword, value=d.value)
    return n


def _choice(d: Directive, enum: type[Enum]) -> Enum:
    try:
        return enum(d.value.strip().upper())
    except ValueError:
        raise ConfigurationError(f'invalid {d.keyword.upper()} "{d.value}"', line=d.line, keyword=d.keyword, value=d.value) from None


def _qualify_table(d: Directive) -> str:
    parts = [p.strip() for p in d.value.split(".")]
    if not all(parts) or len(parts) > 2:
        raise ConfigurationError("invalid TABLE name", line=d.line, keyword=d.keyword, value=d.value)
    return ".".join(parts) if len(parts) == 2 else f"public.{parts[0]}"


## -- resolution

# alias -> canonical keyword
_ALIASES = {"LOADER": "WRITER", "MAX_ERR_CNT": "PARSE_ERRORS", "LIMIT": "LOAD", "OFFSET": "SKIP"}

_READER_KEYWORDS = frozenset({
    "TABLE", "INFILE", "LOGFILE", "PARSE_BADFILE", "DUPLICATE_BADFILE", "TYPE", "WRITER",
    "PARSE_ERRORS", "DUPLICATE_ERRORS", "LOAD", "ON_DUPLICATE", "VERBOSE", "WORKERS", "BUFFER_SIZE",
})


def log_dir() -> Path:
    """Where default log and bad files go: `BULKLOAD_LOG_DIR`, else the working directory."""
    return Path(os.getenv("BULKLOAD_LOG_DIR") or os.getcwd()).absolute()


def default_paths(
    *, infile: str, parser_kind: ParserKind, table: str, database: str, now: datetime
) -> tuple[str, str, str]:
    """Default `(logfile, parse_badfile, duplicate_badfile)` for a load started at `now`."""
    schema, name = table.split(".", 1)
    prefix = log_dir() / f"{now:%Y%m%d%H%M%S}_{database}_{schema}_{name}."
    ext = ""
    if parser_kind is not ParserKind.FUNCTION and infile.lower() != STDIN:
        ext = Path(infile).suffix.lstrip(".")
    return f"{prefix}log", f"{prefix}prs.{ext}", f"{prefix}dup.csv"


def apply_parser_options(parser: BaseParser, directives: Sequence[Directive]) -> None:
    """Forward format keywords to the parser; a keyword it rejects fails with its line."""
    seen: set[str] = set()
    for d in directives:
        kw = _ALIASES.get(d.keyword.upper(), d.keyword.upper())
        if kw in seen and kw not in parser.repeatable:
            raise ConfigurationError(f'duplicate keyword "{d.keyword}"', line=d.line, keyword=d.keyword, value=d.value)
        seen.add(kw)
        try:
            known = parser.param(d.keyword, d.value)
        except ConfigurationError as e:
            raise ConfigurationError(e.message, line=d.line, keyword=d.keyword, value=d.value) from None
        if not known:
            raise ConfigurationError(f'invalid keyword "{d.keyword}"', line=d.line, keyword=d.keyword, value=d.value)


def build_parser(config: LoadConfiguration) -> BaseParser:
    """A fresh parser for `config`, with its format keywords applied."""
    parser = create_parser(config.parser_kind)
    apply_parser_options(parser, config.parser_options)
    return parser


def resolve_configuration(
    control_file: str | Path | None,
    options: str | Sequence[str] | None = None,
    *,
    now: datetime | None = None,
    database: str = "postgres",
) -> LoadConfiguration:
    """
    Resolve the control file and the options block into a configuration.

    Each directive may be given once across both sources (repeatable format
    keywords aside). Deterministic for equal inputs and equal `now`.
    """
    now = now or datetime.now()
    values: dict[str, object] = {}
    seen: dict[str, Directive] = {}
    deferred: list[Directive] = []

    for d in read_directives(control_file, options):
        kw = _ALIASES.get(d.keyword.upper(), d.keyword.upper())
        if kw not in _READER_KEYWORDS:
            deferred.append(d)
            continue
        if kw in seen:
            raise ConfigurationError(f'duplicate keyword "{d.keyword}"', line=d.line, keyword=d.keyword, value=d.value)
        seen[kw] = d

        if kw == "TABLE":
            values["table"] = _qualify_table(d)
        elif kw in ("INFILE", "LOGFILE", "PARSE_BADFILE", "DUPLICATE_BADFILE"):
            if not d.value:
                raise ConfigurationError(f"{kw} must not be empty", line=d.line, keyword=d.keyword, value=d.value)
            values[kw.lower()] = d.value
        elif kw == "TYPE":
            try:
                values["parser_kind"] = parse_parser_kind(d.value)
            except ConfigurationError as e:
                raise ConfigurationError(e.message, line=d.line, keyword=d.keyword, value=d.value) from None
        elif kw == "WRITER":
            values["writer_kind"] = _choice(d, WriterKind)
        elif kw == "PARSE_ERRORS":
            values["max_parse_errors"] = parse_quota(d)
        elif kw == "DUPLICATE_ERRORS":
            values["max_duplicate_errors"] = parse_quota(d)
        elif kw == "LOAD":
            values["limit"] = parse_limit(d)
        elif kw == "ON_DUPLICATE":
            values["on_duplicate"] = _choice(d, DuplicatePolicy)
        elif kw == "VERBOSE":
            try:
                values["verbose"] = parse_bool_option(kw, d.value)
            except ConfigurationError as e:
                raise ConfigurationError(e.message, line=d.line, keyword=d.keyword, value=d.value) from None
        elif kw == "WORKERS":
            values["workers"] = _int_value(d, minimum=1)
        elif kw == "BUFFER_SIZE":
            values["buffer_size"] = _int_value(d, minimum=1)

    for required, key in (("TYPE", "parser_kind"), ("TABLE", "table"), ("INFILE", "infile")):
        if key not in values:
            raise ConfigurationError(f"no {required} specified")

    # format keywords go to the parser once TYPE is known
    parser_options = tuple(deferred)
    apply_parser_options(create_parser(values["parser_kind"]), parser_options)   # type: ignore[arg-type]

    logfile, parse_badfile, duplicate_badfile = default_paths(
        infile=values["infile"],                # type: ignore[arg-type]
        parser_kind=values["parser_kind"],      # type: ignore[arg-type]
        table=values["table"],                  # type: ignore[arg-type]
        database=database,
        now=now,
    )
    values.setdefault("logfile", logfile)
    values.setdefault("parse_badfile", parse_badfile)
    values.setdefault("duplicate_badfile", duplicate_badfile)

    config = LoadConfiguration(parser_options=parser_options, **values)    # type: ignore[arg-type]
    _check_distinct(config)
    return config


def _check_distinct(config: LoadConfiguration) -> None:
    paths = [config.infile, config.logfile, config.parse_badfile, config.duplicate_badfile]
    normalized = [os.path.abspath(p) for p in paths]
    if len(set(normalized)) != len(normalized):
        raise ConfigurationError(
            "INFILE, PARSE_BADFILE, DUPLICATE_BADFILE and LOGFILE cannot set the same file name."
        )


def _limit_text(n: int) -> str:
    return "INFINITE" if n == UNLIMITED else str(n)


def dump_params(config: LoadConfiguration, parser: BaseParser | None = None) -> list[str]:
    """The parameters in effect, one `KEYWORD = value` line each."""
    lines = [
        f"INFILE = {quote_value(config.infile)}",
        f"PARSE_BADFILE = {quote_value(config.parse_badfile)}",
        f"DUPLICATE_BADFILE = {quote_value(config.duplicate_badfile)}",
        f"LOGFILE = {quote_value(config.logfile)}",
        f"TABLE = {config.table}",
        f"PARSE_ERRORS = {_limit_text(config.max_parse_errors)}",
        f"DUPLICATE_ERRORS = {_limit_text(config.max_duplicate_errors)}",
        f"ON_DUPLICATE = {config.on_duplicate.value}",
        f"VERBOSE = {'YES' if config.verbose else 'NO'}",
        f"LOAD = {_limit_text(config.limit)}",
        f"WRITER = {config.writer_kind.value}",
    ]
    if config.writer_kind is not WriterKind.DIRECT:
        lines.append(f"BUFFER_SIZE = {config.buffer_size}")
    if config.writer_kind is WriterKind.PARALLEL:
        lines.append(f"WORKERS = {config.workers}")
    return lines + (parser or build_parser(config)).dump_params()
