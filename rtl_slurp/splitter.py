"""Record splitter: turns byte chunks from a growing file into complete lines.

Lines end at ``\\r``, ``\\n`` or ``\\r\\n``. A line whose ``\\r`` is the last
byte of a chunk is held back until the next chunk shows whether a ``\\n``
belongs to the same terminator, or until ``flush()`` at the end of the
available input.
"""

import re
from typing import Iterator

_TERMINATOR = re.compile(rb"\r\n|\r|\n")

LF = 0x0A


class RecordSplitter:
    """Restartable byte-stream-to-line decoder.

    Each emitted line comes with the number of bytes it consumed: its own
    content, its terminator, and any empty-line terminators skipped since
    the previous emitted line. Summing the consumed counts of the lines
    handled so far gives the offset just past the last emitted line.
    """

    def __init__(self):
        self._partial = bytearray()
        self._carried = 0
        self._pending_cr = False

    @property
    def buffered(self) -> int:
        """Bytes fed in but not yet attributed to an emitted line."""
        return len(self._partial) + self._carried + (1 if self._pending_cr else 0)

    @property
    def pending_cr(self) -> bool:
        return self._pending_cr

    def reset(self):
        """Forget partial data so the next chunk starts a fresh read position."""
        self._partial.clear()
        self._carried = 0
        self._pending_cr = False

    def _complete(self, term_len: int) -> tuple[bytes, int] | None:
        consumed = self._carried + len(self._partial) + term_len
        if not self._partial:
            # empty line
            self._carried = consumed
            return None
        line = bytes(self._partial)
        self._partial.clear()
        self._carried = 0
        return line, consumed

    def feed(self, chunk: bytes) -> Iterator[tuple[bytes, int]]:
        """Yield ``(line, consumed)`` for every line completed by *chunk*."""
        if not chunk:
            return
        start = 0
        if self._pending_cr:
            self._pending_cr = False
            term_len = 1
            if chunk[0] == LF:
                term_len = 2
                start = 1
            done = self._complete(term_len)
            if done is not None:
                yield done

        for match in _TERMINATOR.finditer(chunk, start):
            self._partial += chunk[start:match.start()]
            if match.group() == b"\r" and match.end() == len(chunk):
                self._pending_cr = True
                return
            start = match.end()
            done = self._complete(match.end() - match.start())
            if done is not None:
                yield done

        self._partial += chunk[start:]

    def flush(self) -> Iterator[tuple[bytes, int]]:
        """End of the available input: a held ``\\r`` ends its line."""
        if self._pending_cr:
            self._pending_cr = False
            done = self._complete(1)
            if done is not None:
                yield done


def split_all(data: bytes, chunk_size: int | None = None) -> list[tuple[bytes, int]]:
    """Split *data* in one go, or chunk by chunk when *chunk_size* is given."""
    splitter = RecordSplitter()
    if not chunk_size:
        out = list(splitter.feed(data))
    else:
        out = []
        for i in range(0, len(data), chunk_size):
            out.extend(splitter.feed(data[i:i + chunk_size]))
    out.extend(splitter.flush())
    return out
