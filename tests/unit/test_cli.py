from __future__ import annotations

from pathlib import Path

import pytest

from bulkload.cli.main import EXIT_CONFIG, EXIT_FAILED, EXIT_OK, EXIT_QUOTA, main
from bulkload.db.memory import MemoryStore


@pytest.fixture()
def control(tmp_path: Path, sink_options: list[str], write_file) -> Path:
    infile = write_file("input.csv", "1,a,\nx,b,\n2,c,\n")
    return write_file("load.ctl", "\n".join(["TABLE = items", "TYPE = CSV", f"INFILE = {infile}", *sink_options]) + "\n")


@pytest.fixture()
def fake_postgres(store: MemoryStore, monkeypatch: pytest.MonkeyPatch) -> MemoryStore:
    """The CLI talks to the in-memory store instead of Postgres."""
    monkeypatch.setattr("bulkload.cli.main.PostgresStore", lambda dsn: store)
    return store


def test_cli_help_prints_and_exits_zero(capsys: pytest.CaptureFixture[str]) -> None:
    """CLI is accessible."""
    # Argparse exits via SystemExit for -h
    with pytest.raises(SystemExit) as e:
        main(["-h"])

    assert e.value.code == 0
    out = capsys.readouterr().out
    assert "usage: bulkload" in out
    assert "load" in out
    assert "params" in out


def test_cli_params_prints_resolved_parameters(control: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["params", str(control), "-o", "DELIMITER=|", "-o", "PARSE_ERRORS=-1"]) == EXIT_OK
    out = capsys.readouterr().out.splitlines()
    assert "TABLE = public.items" in out
    assert "PARSE_ERRORS = INFINITE" in out
    assert 'DELIMITER = "|"' in out


def test_cli_params_rejects_bad_configuration(control: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["params", str(control), "-o", "TYPE=CSV"]) == EXIT_CONFIG
    assert "duplicate keyword" in capsys.readouterr().err
    assert main(["params", str(control), "-o", "no-equals-sign"]) == EXIT_CONFIG


def test_cli_load_prints_summary(control: Path, fake_postgres: MemoryStore, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["load", str(control)]) == EXIT_OK
    out = capsys.readouterr().out
    assert "public.items: loaded=2 skipped=1 parse_errors=1 duplicate_errors=0 stop=END_OF_INPUT" in out
    assert len(fake_postgres.rows("items")) == 2


def test_cli_load_quota_stop_exits_one(control: Path, fake_postgres: MemoryStore, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["load", str(control), "-o", "PARSE_ERRORS=0"]) == EXIT_QUOTA
    assert "stop=PARSE_QUOTA" in capsys.readouterr().out


def test_cli_load_failure_exits_three(tmp_path: Path, sink_options: list[str], write_file, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("bulkload.cli.main.PostgresStore", lambda dsn: MemoryStore())
    infile = write_file("input.csv", "1,a,\n")
    ctl = write_file("load.ctl", "\n".join(["TABLE = missing", "TYPE = CSV", f"INFILE = {infile}", *sink_options]))
    assert main(["load", str(ctl)]) == EXIT_FAILED
