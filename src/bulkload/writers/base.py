from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from bulkload.db.store import TargetTable
from bulkload.errors import UniqueViolation
from bulkload.ingest.control import DuplicatePolicy
from bulkload.parsing.types import Row

# rows between two commits of the direct writer
COMMIT_INTERVAL = 500


class WriteStatus(str, Enum):
    COMMITTED = "COMMITTED"
    REMOVED_OLD = "REMOVED_OLD"     # existing row(s) deleted, new row stored
    REMOVED_NEW = "REMOVED_NEW"     # new row dropped, existing row kept
    REJECTED = "REJECTED"           # ON_DUPLICATE = ERROR


@dataclass(frozen=True, slots=True)
class WriteOutcome:
    """How one offered row was settled. `displaced` rows go to the duplicate bad file."""
    status: WriteStatus
    row: Row
    record: int                                     # input record ordinal
    displaced: tuple[Row, ...] = field(default_factory=tuple)

    @property
    def loaded(self) -> bool:
        return self.status is not WriteStatus.REJECTED


@dataclass(frozen=True, slots=True)
class WriterResult:
    rows_loaded: int
    rows_rejected: int


def settle(table: TargetTable, row: Row, record: int, policy: DuplicatePolicy) -> WriteOutcome:
    """Insert one row, resolving a unique key collision by `policy`."""
    try:
        table.insert(row)
        return WriteOutcome(WriteStatus.COMMITTED, row, record)
    except UniqueViolation:
        pass

    if policy is DuplicatePolicy.REMOVE_NEW:
        return WriteOutcome(WriteStatus.REMOVED_NEW, row, record, displaced=(row,))
    if policy is DuplicatePolicy.REMOVE_OLD:
        with table.savepoint():
            old = table.remove_conflicts(row)
            table.insert(row)
        return WriteOutcome(WriteStatus.REMOVED_OLD, row, record, displaced=tuple(old))
    return WriteOutcome(WriteStatus.REJECTED, row, record, displaced=(row,))


class Writer:
    """
    Persists rows into the target table.

    `insert` returns the outcomes it settled (possibly for earlier rows),
    `finish` settles and commits everything left, `drain` hands over the
    outcomes `finish` settled.
    """

    name = "BASE"

    def __init__(self, table: TargetTable, policy: DuplicatePolicy):
        self.table = table
        self.policy = policy
        self.loaded = 0
        self.rejected = 0
        self._settled: list[WriteOutcome] = []

    def _count(self, outcomes: list[WriteOutcome]) -> list[WriteOutcome]:
        for o in outcomes:
            if o.loaded:
                self.loaded += 1
            else:
                self.rejected += 1
        return outcomes

    def insert(self, row: Row, record: int) -> list[WriteOutcome]:
        raise NotImplementedError

    def finish(self) -> WriterResult:
        raise NotImplementedError

    def drain(self) -> list[WriteOutcome]:
        out, self._settled = self._settled, []
        return out

    def close(self, on_error: bool) -> None:
        """Discard unflushed state; on error roll back uncommitted work."""
        if on_error:
            self.table.rollback()
