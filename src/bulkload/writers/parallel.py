from __future__ import annotations

import itertools
import queue
import threading
import zlib
from typing import Any, Callable, Optional

from bulkload.context import CancelToken
from bulkload.db.store import TargetTable, key_of
from bulkload.errors import LoadCancelled, WriterError
from bulkload.ingest.control import DEFAULT_BUFFER_SIZE, DEFAULT_WORKERS, DuplicatePolicy
from bulkload.parsing.primitives import to_text
from bulkload.parsing.types import Row, Schema

from .base import Writer, WriteOutcome, WriterResult
from .buffered import BufferedWriter
from .direct import DirectWriter

_FINISH = object()      # settle what is left and commit
_ABORT = object()       # discard and roll back

# staged items per worker before `insert` blocks
_QUEUE_DEPTH = 1024


def partition(key: tuple[Any, ...], n: int) -> int:
    """Stable worker index for a unique key value (same key, same worker, every run)."""
    text = "\x1f".join(to_text(v) or "" for v in key)
    return zlib.crc32(text.encode("utf-8")) % n


class _Worker:
    """One thread draining its queue into its own sink on its own table session."""

    def __init__(self, index: int, sink: Writer, outcomes: queue.Queue, cancel: CancelToken):
        self.index = index
        self.sink = sink
        self.inbox: queue.Queue = queue.Queue(maxsize=_QUEUE_DEPTH)
        self.outcomes = outcomes
        self.cancel = cancel
        self.result: Optional[WriterResult] = None
        self.error: Optional[BaseException] = None
        self._closed = False
        self.thread = threading.Thread(target=self._run, name=f"bulkload-writer-{index}", daemon=True)

    def _run(self) -> None:
        while True:
            item = self.inbox.get()
            if item is _ABORT:
                self._close(on_error=True)
                return
            if self.error is not None:
                # failed: keep consuming so the producer never blocks
                if item is _FINISH:
                    return
                continue
            try:
                if item is _FINISH:
                    self.result = self.sink.finish()
                    for o in self.sink.drain():
                        self.outcomes.put(o)
                    self._close(on_error=False)
                    return
                self.cancel.check()
                row, record = item
                for o in self.sink.insert(row, record):
                    self.outcomes.put(o)
            except BaseException as e:
                self.error = e
                self._close(on_error=True)
                if item is _FINISH:
                    return

    def _close(self, on_error: bool) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.sink.close(on_error)
        finally:
            self.sink.table.close()


class ParallelWriter(Writer):
    """
    Fans rows out to a fixed pool of worker threads.

    Rows are routed by a stable hash of the first unique key (round robin
    when the table has none or the key has a null), so every key value is
    written by exactly one worker. Any worker failure fails the load.
    """

    name = "PARALLEL"

    def __init__(
        self,
        open_table: Callable[[], TargetTable],
        schema: Schema,
        unique_keys: tuple[tuple[str, ...], ...],
        policy: DuplicatePolicy,
        *,
        workers: int = DEFAULT_WORKERS,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        cancel: Optional[CancelToken] = None,
    ):
        self.policy = policy
        self.schema = schema
        self.key = unique_keys[0] if unique_keys else None
        self.cancel = cancel or CancelToken()
        self.loaded = 0
        self.rejected = 0
        self._settled: list[WriteOutcome] = []
        self._outcomes: queue.Queue = queue.Queue()
        self._round_robin = itertools.cycle(range(workers))
        self._workers: list[_Worker] = []
        self._finished = False

        try:
            for i in range(workers):
                table = open_table()
                sink: Writer
                if buffer_size > 1:
                    sink = BufferedWriter(table, policy, buffer_size=buffer_size)
                else:
                    sink = DirectWriter(table, policy)
                self._workers.append(_Worker(i, sink, self._outcomes, self.cancel))
        except BaseException:
            for w in self._workers:
                w.sink.table.close()
            raise
        for w in self._workers:
            w.thread.start()

    def _route(self, row: Row) -> _Worker:
        if self.key is not None:
            kv = key_of(self.schema, self.key, row)
            if kv is not None:
                return self._workers[partition(kv, len(self._workers))]
        return self._workers[next(self._round_robin)]

    def _raise_failure(self) -> None:
        for w in self._workers:
            if w.error is not None:
                if isinstance(w.error, LoadCancelled):
                    raise w.error
                raise WriterError(f"parallel writer worker {w.index} failed: {w.error}") from w.error

    def _collect(self) -> list[WriteOutcome]:
        out: list[WriteOutcome] = []
        while True:
            try:
                out.append(self._outcomes.get_nowait())
            except queue.Empty:
                return self._count(out)

    def insert(self, row: Row, record: int) -> list[WriteOutcome]:
        self._raise_failure()
        w = self._route(row)
        while True:
            try:
                w.inbox.put((row, record), timeout=0.1)
                break
            except queue.Full:
                self._raise_failure()
                self.cancel.check()
        return self._collect()

    def finish(self) -> WriterResult:
        """Wait for every worker to settle and commit its rows."""
        self._finished = True
        for w in self._workers:
            w.inbox.put(_FINISH)
        for w in self._workers:
            w.thread.join()
        self._settled.extend(self._collect())
        self._raise_failure()
        return WriterResult(rows_loaded=self.loaded, rows_rejected=self.rejected)

    def close(self, on_error: bool) -> None:
        if self._finished:
            return
        self._finished = True
        for w in self._workers:
            w.inbox.put(_ABORT)
        for w in self._workers:
            w.thread.join()
