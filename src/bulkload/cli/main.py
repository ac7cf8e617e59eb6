from __future__ import annotations

import argparse
import signal
import sys
from typing import Any

from bulkload.context import CancelToken
from bulkload.db.postgres import PostgresStore
from bulkload.errors import BulkLoadError, ConfigurationError, FilterDefinitionError, LoadCancelled, StoreError
from bulkload.cli.loader import Loader
from bulkload.ingest.control import dump_params, resolve_configuration
from bulkload.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_QUOTA = 1          # stopped by PARSE_ERRORS / DUPLICATE_ERRORS
EXIT_CONFIG = 2         # control file, options or filter definition rejected
EXIT_FAILED = 3         # storage, writer or I/O failure, or cancelled


def _options(values: list[str] | None) -> list[str]:
    """`-o KEY=VALUE` arguments as directive lines."""
    out = []
    for v in values or []:
        if "=" not in v:
            raise ConfigurationError(f"option must be KEY=VALUE: {v!r}")
        key, value = v.split("=", 1)
        out.append(f"{key.strip()} = {value.strip()}")
    return out


def main(argv: list[str] | None = None) -> int:
    """
    A CLI for bulk loading files into a Postgres table.

    The `cmd` options are:
    ## load:
    Runs the load described by a control file.
    - `CONTROL` as the path to the control file,
    - `-o KEY=VALUE` (repeatable) adds or completes directives,
    - `--dsn` as the target database (default `BULKLOAD_DSN`).

    A one-line summary prints in the terminal upon completion of a load.

    ### Example load usage:
    - `bulkload load orders.ctl -o INFILE=/data/orders.csv -o WRITER=PARALLEL`

    ## params:
    Prints the parameters a control file resolves to.
    """
    p = argparse.ArgumentParser(prog="bulkload")
    p.add_argument("--log-level", default="INFO", help="Console log level.")
    p.add_argument("--json-logs", action="store_true", help="Console logs as JSON lines.")
    sub = p.add_subparsers(dest="cmd", required=True)

    # load cmd
    load = sub.add_parser("load", help="Load an input into a table as a control file describes.")
    load.add_argument("control", help="Path to the control file.")
    load.add_argument("-o", "--option", action="append", dest="options", metavar="KEY=VALUE", help="Extra directive.")
    load.add_argument("--dsn", default=None, help="Target database DSN (default: BULKLOAD_DSN).")

    # params cmd
    params = sub.add_parser("params", help="Print the resolved load parameters.")
    params.add_argument("control", help="Path to the control file.")
    params.add_argument("-o", "--option", action="append", dest="options", metavar="KEY=VALUE", help="Extra directive.")
    params.add_argument("--database", default="postgres", help="Database name used in default file names.")

    args = p.parse_args(argv)
    configure_logging(args.log_level, json_output=args.json_logs)

    try:
        if args.cmd == "params":
            config = resolve_configuration(args.control, _options(args.options), database=args.database)
            print("\n".join(dump_params(config)))
            return EXIT_OK

        if args.cmd == "load":
            return _load(args)
    except (ConfigurationError, FilterDefinitionError) as e:
        logger.error("invalid configuration", error=str(e))
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG

    return EXIT_CONFIG


def _load(args: Any) -> int:
    try:
        store = PostgresStore(args.dsn)
    except StoreError as e:
        logger.error("database unavailable", error=str(e))
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILED
    config = resolve_configuration(args.control, _options(args.options), database=store.database)

    cancel = CancelToken()
    previous = signal.signal(signal.SIGINT, lambda signum, frame: cancel.cancel())
    try:
        summary = Loader(config, store, cancel=cancel).run()
    except (ConfigurationError, FilterDefinitionError):
        raise
    except LoadCancelled as e:
        logger.warning("load cancelled", table=config.table)
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILED
    except (BulkLoadError, OSError) as e:
        logger.error("load failed", table=config.table, error=str(e))
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILED
    finally:
        signal.signal(signal.SIGINT, previous)

    print(summary.render_one_line())
    if not summary.succeeded:
        logger.warning("load stopped by error quota", stop=summary.stop_reason.value, logfile=summary.logfile)
        return EXIT_QUOTA
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
