from __future__ import annotations

import sys
from pathlib import Path
from typing import BinaryIO, Iterator


STDIN = "stdin"     # INFILE value that reads the process standard input


def open_input(locator: str) -> BinaryIO:
    """
    Open an input source in binary mode.

    Records are decoded later by the checker, so the exact bytes read can be
    dumped to the parse bad file verbatim.
    """
    if locator.lower() == STDIN:
        return sys.stdin.buffer
    return Path(locator).open("rb")


def stream_lines(f: BinaryIO) -> Iterator[bytes]:
    """
    Yields raw physical lines, terminator included.

    The last line may lack its `\\n` when the file does not end with one.
    """
    for line in f:
        yield line


def stream_fixed_records(f: BinaryIO, stride: int) -> Iterator[bytes]:
    """
    Yields `stride`-sized records.

    A short trailing chunk is still yielded, the parser decides what it means.
    """
    while True:
        chunk = f.read(stride)
        if not chunk:
            return
        yield chunk


def strip_newline(line: bytes) -> bytes:
    """Drop one trailing `\\n` or `\\r\\n`."""
    if line.endswith(b"\r\n"):
        return line[:-2]
    if line.endswith(b"\n"):
        return line[:-1]
    return line
