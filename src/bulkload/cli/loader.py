from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any, BinaryIO, Optional, Sequence

from bulkload.context import CancelToken, LoadContext
from bulkload.db.store import TargetStore, TargetTable
from bulkload.errors import RecordError
from bulkload.ingest.badfiles import DuplicateBadFile, ParseBadFile, render_csv_row
from bulkload.ingest.checker import Checker
from bulkload.ingest.control import LoadConfiguration, WriterKind, build_parser, dump_params, resolve_configuration
from bulkload.ingest.filter import Filter
from bulkload.ingest.readers import open_input
from bulkload.ingest.summary import LoadResult, StopReason
from bulkload.parsing.formats.base import BaseParser
from bulkload.parsing.formats.function import FunctionParser
from bulkload.parsing.schema import RowFormer
from bulkload.parsing.types import Row, Schema
from bulkload.utils.logging import open_load_log
from bulkload.writers.base import Writer, WriteOutcome, WriteStatus
from bulkload.writers.buffered import BufferedWriter
from bulkload.writers.direct import DirectWriter
from bulkload.writers.parallel import ParallelWriter


def _reason_code_to_text(x: Any) -> str:
    """Converts enum-like (value `__attr__`) or plain strings of a given value to `str`."""
    if hasattr(x, "value"):
        return str(getattr(x, "value"))
    return str(x)


def _live_values(schema: Schema, row: Row) -> Row:
    return tuple(v for c, v in zip(schema.columns, row) if not c.dropped)


def create_writer(config: LoadConfiguration, table: TargetTable, store: TargetStore, cancel: CancelToken) -> Writer:
    """Writer for `config.writer_kind`. Parallel workers open their own table sessions."""
    if config.writer_kind is WriterKind.BUFFERED:
        return BufferedWriter(table, config.on_duplicate, buffer_size=config.buffer_size)
    if config.writer_kind is WriterKind.PARALLEL:
        return ParallelWriter(
            lambda: store.open_table(config.table),
            table.schema,
            table.unique_keys,
            config.on_duplicate,
            workers=config.workers,
            buffer_size=config.buffer_size,
            cancel=cancel,
        )
    return DirectWriter(table, config.on_duplicate)


class Loader:
    """
    One load, end to end:
      - open the target table, build Parser / Filter / Checker / Writer,
      - per record: parse -> filter (optional) -> check -> write,
            - record errors -> PARSE_BADFILE, counted against PARSE_ERRORS,
            - unique key conflicts -> DUPLICATE_BADFILE, counted against DUPLICATE_ERRORS,
      - stop at end of input, at the LOAD limit or when a quota is exceeded.

    Raises only on non-recoverable errors (cancellation, storage, writer,
    I/O); whatever the writer had not committed is rolled back.
    Quota stops are returned as results.
    """

    def __init__(self, config: LoadConfiguration, store: TargetStore, *, cancel: Optional[CancelToken] = None):
        self.config = config
        self.store = store
        self.cancel = cancel or CancelToken()

    def run(self, input_stream: Optional[BinaryIO] = None) -> LoadResult:
        config = self.config
        with open_load_log(config.logfile) as log:
            ctx = LoadContext(log=log, cancel=self.cancel)
            log.info("bulkload started", table=config.table, infile=config.infile, started=datetime.now().isoformat(timespec="seconds"))
            try:
                return self._run(ctx, input_stream)
            except BaseException as e:
                log.critical("bulkload failed", error=str(e) or type(e).__name__, error_type=type(e).__name__)
                raise

    def _run(self, ctx: LoadContext, input_stream: Optional[BinaryIO]) -> LoadResult:
        config = self.config
        log = ctx.log
        table = self.store.open_table(config.table)
        parser: Optional[BaseParser] = None
        writer: Optional[Writer] = None
        parse_bad = ParseBadFile(config.parse_badfile)
        dup_bad = DuplicateBadFile(config.duplicate_badfile)

        try:
            parser = build_parser(config)
            for line in dump_params(config, parser):
                log.info(line)

            ## -- Filter decides what a record is parsed into
            flt: Optional[Filter] = None
            if parser.filter_name:
                flt = Filter(parser.filter_name)
                former = RowFormer(flt.init(table.functions, table.schema), defaults=flt.defaults)
            else:
                former = RowFormer(table.schema)

            checker = Checker(
                table.schema,
                table.constraints,
                check_constraints=parser.check_constraints,
                encoding=parser.encoding,
                table=table,
            )

            ## -- bind the input
            stream: Optional[BinaryIO] = None
            owns_stream = False
            if isinstance(parser, FunctionParser):
                parser.bind(table.functions, config.infile)
            elif input_stream is not None:
                stream = input_stream
            else:
                stream, owns_stream = open_input(config.infile), True
            parser.init(former, stream, checker, owns_stream=owns_stream)

            writer = create_writer(config, table, self.store, ctx.cancel)

            stop = self._loop(ctx, parser, flt, checker, writer, table, parse_bad, dup_bad)

            result = writer.finish()
            if self._settle(ctx, writer.drain(), dup_bad, table.schema) and stop in (StopReason.END_OF_INPUT, StopReason.ROW_LIMIT):
                stop = StopReason.DUPLICATE_QUOTA
            table.commit()
            skipped = parser.term()
            parser = None
        except BaseException:
            if writer is not None:
                writer.close(on_error=True)
            table.rollback()
            raise
        finally:
            if parser is not None:
                parser.term()
            parse_bad.close()
            dup_bad.close()
            table.close()

        counters = ctx.counters
        summary = LoadResult(
            table_name=config.table,
            input_path=config.infile,
            rows_loaded=result.rows_loaded,
            rows_skipped=counters.parse_errors + counters.duplicate_errors + skipped,
            parse_errors=counters.parse_errors,
            duplicate_errors=counters.duplicate_errors,
            parser_skipped=skipped,
            stop_reason=stop,
            logfile=config.logfile,
            parse_badfile=config.parse_badfile,
            duplicate_badfile=config.duplicate_badfile,
        )
        for line in summary.render_log():
            log.info(line)
        log.info("bulkload finished", stop=stop.value, succeeded=summary.succeeded)
        return summary

    def _loop(
        self,
        ctx: LoadContext,
        parser: BaseParser,
        flt: Optional[Filter],
        checker: Checker,
        writer: Writer,
        table: TargetTable,
        parse_bad: ParseBadFile,
        dup_bad: DuplicateBadFile,
    ) -> StopReason:
        config = self.config
        ctx.cursor = parser.cursor
        offered = 0

        while True:
            ctx.cancel.check()
            # rows the writer has not refused yet count as committed
            if offered - writer.rejected >= config.limit:
                return StopReason.ROW_LIMIT

            ## -- Parsing -> Filtering -> Checking. Record errors are absorbed up to the quota.
            try:
                row = parser.read()
                if row is None:
                    return StopReason.END_OF_INPUT
                if flt is not None:
                    row = flt.apply(row, table, parser.cursor)
                if checker.enabled:
                    checker.validate_constraints(row)
            except RecordError as e:
                if self._parse_error(ctx, parser, e, parse_bad):
                    return StopReason.PARSE_QUOTA
                continue

            ## -- Writing
            offered += 1
            if self._settle(ctx, writer.insert(row, parser.cursor.count), dup_bad, table.schema):
                return StopReason.DUPLICATE_QUOTA

    def _parse_error(self, ctx: LoadContext, parser: BaseParser, e: RecordError, parse_bad: ParseBadFile) -> bool:
        """Log, count and dump one bad record. Returns whether PARSE_ERRORS is exceeded."""
        ctx.counters.parse_errors += 1
        n = ctx.counters.parse_errors
        message = f"Parse error Record {n}: Input Record {parser.cursor.count}: Rejected"
        if e.field > 0:
            message += f" - column {e.field}"
        message += f". {e.detail}"

        extra: dict[str, Any] = {"code": _reason_code_to_text(e.code)}
        if self.config.verbose:
            extra["record"] = parser.current_record
        ctx.log.warning(message, **extra)

        exceeded = n > self.config.max_parse_errors
        if exceeded:
            ctx.log.warning(f"Maximum parse error count exceeded - {n} error(s) found in input file")
        parser.dump_record(parse_bad)
        return exceeded

    def _settle(self, ctx: LoadContext, outcomes: Sequence[WriteOutcome], dup_bad: DuplicateBadFile, schema: Schema) -> bool:
        """Book the writer's outcomes. Returns whether DUPLICATE_ERRORS is exceeded."""
        exceeded = False
        for o in outcomes:
            if o.status is WriteStatus.COMMITTED:
                continue
            for displaced in o.displaced:
                ctx.counters.duplicate_errors += 1
                n = ctx.counters.duplicate_errors
                dup_bad.write_row(_live_values(schema, displaced))

                extra: dict[str, Any] = {"status": o.status.value}
                if self.config.verbose:
                    extra["row"] = render_csv_row(_live_values(schema, displaced))
                ctx.log.warning(f"Duplicate error Record {n}: Input Record {o.record}: {_describe(o.status)}", **extra)

                if n > self.config.max_duplicate_errors and not exceeded:
                    exceeded = True
                    ctx.log.warning(f"Maximum duplicate error count exceeded - {n} error(s) found in input file")
        return exceeded


def _describe(status: WriteStatus) -> str:
    if status is WriteStatus.REMOVED_OLD:
        return "existing row replaced"
    if status is WriteStatus.REMOVED_NEW:
        return "new row discarded"
    return "Rejected"


def load_file(
    store: TargetStore,
    control_file: str | Path | None,
    options: str | Sequence[str] | None = None,
    *,
    now: Optional[datetime] = None,
    cancel: Optional[CancelToken] = None,
    input_stream: Optional[BinaryIO] = None,
) -> LoadResult:
    """
    Resolve a control file (plus inline options) and run the load against `store`.
    `input_stream` replaces INFILE for file based formats.
    """
    config = resolve_configuration(control_file, options, now=now, database=store.database)
    return Loader(config, store, cancel=cancel).run(input_stream)
