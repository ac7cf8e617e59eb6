from __future__ import annotations

from bulkload.db.store import TargetTable
from bulkload.ingest.control import DuplicatePolicy
from bulkload.parsing.types import Row

from .base import COMMIT_INTERVAL, Writer, WriteOutcome, WriterResult, settle


class DirectWriter(Writer):
    """Row at a time through the engine's insert path; uniqueness is checked on every row."""

    name = "DIRECT"

    def __init__(self, table: TargetTable, policy: DuplicatePolicy, *, commit_interval: int = COMMIT_INTERVAL):
        super().__init__(table, policy)
        self.commit_interval = commit_interval
        self._uncommitted = 0

    def insert(self, row: Row, record: int) -> list[WriteOutcome]:
        outcome = settle(self.table, row, record, self.policy)
        self._uncommitted += 1
        if self._uncommitted >= self.commit_interval:
            self.table.commit()
            self._uncommitted = 0
        return self._count([outcome])

    def finish(self) -> WriterResult:
        self.table.commit()
        self._uncommitted = 0
        return WriterResult(rows_loaded=self.loaded, rows_rejected=self.rejected)
