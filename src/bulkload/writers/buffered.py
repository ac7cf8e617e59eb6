from __future__ import annotations

from bulkload.db.store import TargetTable
from bulkload.errors import UniqueViolation
from bulkload.ingest.control import DEFAULT_BUFFER_SIZE, DuplicatePolicy
from bulkload.parsing.types import Row

from .base import Writer, WriteOutcome, WriterResult, WriteStatus, settle


class BufferedWriter(Writer):
    """
    Stages rows and stores them in bulk.

    A flush tries one batch insert; when any staged row collides, the batch
    is rolled back and settled row by row in input order. Each flush commits.
    """

    name = "BUFFERED"

    def __init__(self, table: TargetTable, policy: DuplicatePolicy, *, buffer_size: int = DEFAULT_BUFFER_SIZE):
        super().__init__(table, policy)
        self.buffer_size = buffer_size
        self._buffer: list[tuple[Row, int]] = []

    def insert(self, row: Row, record: int) -> list[WriteOutcome]:
        self._buffer.append((row, record))
        if len(self._buffer) >= self.buffer_size:
            return self._count(self.flush())
        return []

    def flush(self) -> list[WriteOutcome]:
        if not self._buffer:
            return []
        staged, self._buffer = self._buffer, []
        try:
            self.table.insert_many([row for row, _ in staged])
            outcomes = [WriteOutcome(WriteStatus.COMMITTED, row, record) for row, record in staged]
        except UniqueViolation:
            outcomes = [settle(self.table, row, record, self.policy) for row, record in staged]
        self.table.commit()
        return outcomes

    def finish(self) -> WriterResult:
        self._settled.extend(self._count(self.flush()))
        return WriterResult(rows_loaded=self.loaded, rows_rejected=self.rejected)

    def close(self, on_error: bool) -> None:
        self._buffer = []
        super().close(on_error)
