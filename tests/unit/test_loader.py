from __future__ import annotations

import io
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable

import pytest

from bulkload.context import CancelToken
from bulkload.db.memory import MemoryStore
from bulkload.errors import FilterDefinitionError, LoadCancelled, StoreError
from bulkload.cli.loader import load_file
from bulkload.ingest.summary import StopReason
from bulkload.parsing.schema import make_column

NOW = datetime(2026, 1, 2, 3, 4, 5)


@pytest.fixture()
def run(store: MemoryStore, sink_options: list[str], write_file: Callable[..., Path]):
    """Load `data` as a CSV file into `items`, extra directives as keyword options."""
    def _run(data: str | bytes, *extra: str, target: MemoryStore = store, **kwargs):
        infile = write_file("input.csv", data)
        options = [f"INFILE = {infile}", *sink_options, *extra]
        ctl = write_file("load.ctl", "TABLE = items\nTYPE = CSV\n")
        return load_file(target, ctl, options, now=NOW, **kwargs)
    return _run


def _read(tmp_path: Path, name: str) -> str:
    p = tmp_path / name
    return p.read_text(encoding="utf-8") if p.exists() else ""


def test_three_rows_one_bad(run, store: MemoryStore, tmp_path: Path) -> None:
    """The second record is rejected, the other two land."""
    summary = run("1,apple,\nx,banana,\n3,cherry,\n", "PARSE_ERRORS = 1")
    assert summary.succeeded
    assert summary.stop_reason is StopReason.END_OF_INPUT
    assert (summary.rows_loaded, summary.parse_errors, summary.rows_skipped) == (2, 1, 1)
    assert store.rows("items") == [(1, "apple", None), (3, "cherry", None)]
    assert _read(tmp_path, "load.prs") == "x,banana,\n"

    log = _read(tmp_path, "load.log")
    assert "Parse error Record 1: Input Record 2: Rejected - column 1." in log
    assert "2 Rows successfully loaded." in log
    assert "1 Rows not loaded due to parse errors." in log


@pytest.mark.parametrize("quota, stop, loaded", [(3, StopReason.END_OF_INPUT, 3), (2, StopReason.PARSE_QUOTA, 2)])
def test_parse_quota_boundary(run, quota: int, stop: StopReason, loaded: int, tmp_path: Path) -> None:
    """N errors pass a quota of N; the N+1st stops the load and keeps what was written."""
    data = "a,x,\n1,ok,\nb,x,\n2,ok,\nc,x,\n3,ok,\n"
    summary = run(data, f"PARSE_ERRORS = {quota}")
    assert summary.stop_reason is stop
    assert summary.rows_loaded == loaded
    assert summary.parse_errors == 3
    assert summary.succeeded is (stop is StopReason.END_OF_INPUT)
    if stop is StopReason.PARSE_QUOTA:
        assert "Maximum parse error count exceeded - 3 error(s) found in input file" in _read(tmp_path, "load.log")


def test_zero_quota_stops_on_the_first_error(run, store: MemoryStore) -> None:
    summary = run("1,a,\nbad,b,\n2,c,\n", "PARSE_ERRORS = 0")
    assert summary.stop_reason is StopReason.PARSE_QUOTA
    assert store.rows("items") == [(1, "a", None)]


def test_bad_records_round_trip(run, store: MemoryStore, tmp_path: Path, write_file) -> None:
    """The parse bad file holds the rejected records verbatim and reloads to the same errors."""
    data = b'1,a,\n"x\ny",multi,\n2,b,1.5\nzz,"no newline at end",'
    first = run(data, "PARSE_ERRORS = -1")
    assert first.rows_loaded == 2
    assert first.parse_errors == 2
    dumped = (tmp_path / "load.prs").read_bytes()
    assert dumped == b'"x\ny",multi,\nzz,"no newline at end",\n'

    again = write_file("again.csv", dumped)
    second = load_file(
        store,
        None,
        [
            "TABLE = items", "TYPE = CSV", f"INFILE = {again}", "PARSE_ERRORS = -1",
            f"LOGFILE = {tmp_path / 'again.log'}",
            f"PARSE_BADFILE = {tmp_path / 'again.prs'}",
            f"DUPLICATE_BADFILE = {tmp_path / 'again.dup'}",
        ],
        now=NOW,
    )
    assert (second.rows_loaded, second.parse_errors) == (0, 2)
    assert (tmp_path / "again.prs").read_bytes() == dumped


def test_row_limit(run, store: MemoryStore) -> None:
    summary = run("1,a,\n2,b,\n3,c,\n", "LOAD = 2")
    assert summary.stop_reason is StopReason.ROW_LIMIT
    assert summary.succeeded
    assert [r[0] for r in store.rows("items")] == [1, 2]


def test_row_limit_counts_committed_rows_only(run, seeded: MemoryStore) -> None:
    """A rejected duplicate does not use up the LOAD limit."""
    summary = run("1,dup,\n2,b,\n3,c,\n4,d,\n", "LOAD = 2")
    assert summary.stop_reason is StopReason.ROW_LIMIT
    assert (summary.rows_loaded, summary.duplicate_errors) == (2, 1)
    assert sorted(r[0] for r in seeded.rows("items")) == [1, 2, 3]


def test_skip_counts_as_skipped(run, store: MemoryStore) -> None:
    summary = run("id,name,price\n1,a,2.50\n", "SKIP = 1")
    assert summary.parser_skipped == 1
    assert summary.rows_skipped == 1
    assert store.rows("items") == [(1, "a", Decimal("2.50"))]


@pytest.fixture()
def seeded(store: MemoryStore) -> MemoryStore:
    table = store.open_table("items")
    table.insert((1, "old", None))
    table.commit()
    return store


@pytest.mark.parametrize(
    "policy, loaded, kept, dumped",
    [
        ("ERROR", 1, "old", "1,new,\n"),
        ("REMOVE_NEW", 2, "old", "1,new,\n"),
        ("REMOVE_OLD", 2, "new", "1,old,\n"),
    ],
)
def test_on_duplicate_policies(run, seeded: MemoryStore, tmp_path: Path, policy, loaded, kept, dumped) -> None:
    summary = run("1,new,\n2,b,\n", f"ON_DUPLICATE = {policy}")
    assert summary.succeeded
    assert summary.rows_loaded == loaded
    assert summary.duplicate_errors == 1
    assert dict((r[0], r[1]) for r in seeded.rows("items")) == {1: kept, 2: "b"}
    assert _read(tmp_path, "load.dup.csv") == dumped
    assert "Duplicate error Record 1: Input Record 1:" in _read(tmp_path, "load.log")


def test_duplicate_quota(run, seeded: MemoryStore) -> None:
    summary = run("1,new,\n2,b,\n", "DUPLICATE_ERRORS = 0")
    assert summary.stop_reason is StopReason.DUPLICATE_QUOTA
    assert not summary.succeeded
    assert summary.duplicate_errors == 1


def test_buffered_writer_reports_duplicates_at_finish(run, seeded: MemoryStore, tmp_path: Path) -> None:
    summary = run("1,new,\n2,b,\n2,again,\n", "WRITER = BUFFERED", "BUFFER_SIZE = 100")
    assert summary.rows_loaded == 1
    assert summary.duplicate_errors == 2
    assert _read(tmp_path, "load.dup.csv") == "1,new,\n2,again,\n"


def test_parallel_writer_end_to_end(run, store: MemoryStore) -> None:
    data = "".join(f"{i},n{i},\n" for i in range(4000))
    summary = run(data, "WRITER = PARALLEL", "WORKERS = 4", "BUFFER_SIZE = 100")
    assert summary.rows_loaded == 4000
    assert len(store.rows("items")) == 4000


def test_not_null_and_check_constraints_are_parse_errors(write_file, sink_options, tmp_path: Path) -> None:
    store = MemoryStore()
    store.create_table(
        "items",
        [make_column("id", "integer", nullable=False), make_column("name", "text"), make_column("price", "numeric(8,2)")],
        checks={"items_price_check": lambda r: None if r["price"] is None else r["price"] >= 0},
    )
    infile = write_file("in.csv", ",nameless,\n1,neg,-1\n2,ok,1\n")
    summary = load_file(
        store, None,
        ["TABLE = items", "TYPE = CSV", f"INFILE = {infile}", "CHECK_CONSTRAINTS = YES", *sink_options],
        now=NOW,
    )
    assert (summary.rows_loaded, summary.parse_errors) == (1, 2)
    log = _read(tmp_path, "load.log")
    assert 'violates not-null constraint' in log
    assert 'violates check constraint' in log


def test_filter_end_to_end(run, store: MemoryStore, tmp_path: Path) -> None:
    def label(i, name):
        if name == "boom":
            raise ValueError("refused")
        return (i, name.upper(), Decimal(i))

    store.functions.register("label", label, arg_types=["integer", "text"])
    summary = run("1,a\n2,boom\n3,c\n", "FILTER = label")
    assert summary.rows_loaded == 2
    assert summary.parse_errors == 1
    assert store.rows("items") == [(1, "A", Decimal("1.00")), (3, "C", Decimal("3.00"))]
    assert _read(tmp_path, "load.prs") == "2,boom\n"


def test_filter_definition_errors_fail_before_reading(run, store: MemoryStore) -> None:
    store.functions.register("many", lambda i: iter([i]), arg_types=["integer"], returns_set=True)
    with pytest.raises(FilterDefinitionError):
        run("1\n", "FILTER = many")


def test_function_input(store: MemoryStore, sink_options: list[str], tmp_path: Path) -> None:
    store.functions.register(
        "series",
        lambda n: ((i, f"row {i}", None) for i in range(1, n + 1)),
        arg_types=["integer"],
        returns_set=True,
    )
    summary = load_file(store, None, ["TABLE = items", "TYPE = FUNCTION", "INFILE = series(5)", *sink_options], now=NOW)
    assert summary.rows_loaded == 5
    assert [r[0] for r in store.rows("items")] == [1, 2, 3, 4, 5]


def test_input_stream_replaces_infile(store: MemoryStore, sink_options: list[str]) -> None:
    summary = load_file(
        store, None, ["TABLE = items", "TYPE = TUPLE", "INFILE = stdin", *sink_options],
        now=NOW, input_stream=io.BytesIO(b'(1,"from stdin",)\n'),
    )
    assert summary.rows_loaded == 1
    assert store.rows("items") == [(1, "from stdin", None)]


def test_cancellation_rolls_back_uncommitted_rows(store: MemoryStore, sink_options: list[str], tmp_path: Path) -> None:
    cancel = CancelToken()

    def rows():
        for i in range(1, 10):
            if i == 3:
                cancel.cancel()
            yield (i, "x", None)

    store.functions.register("rows", rows, returns_set=True)
    with pytest.raises(LoadCancelled):
        load_file(store, None, ["TABLE = items", "TYPE = FUNCTION", "INFILE = rows()", *sink_options], now=NOW, cancel=cancel)
    assert store.rows("items") == []
    assert "bulkload failed" in _read(tmp_path, "load.log")


def test_missing_table_is_fatal(run) -> None:
    empty = MemoryStore()
    with pytest.raises(StoreError):
        run("1,a,\n", target=empty)
