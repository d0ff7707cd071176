"""Bounded output buffer — in-memory capture of an agent's stdout/stderr.

Design Notes:
- The buffer keeps only the most recent ``max_chars`` characters. Older
  output is silently discarded once the cap is exceeded; full logs are not
  archived anywhere.
- Chunks are stored in a ``collections.deque``; the head chunk is trimmed
  in place when the cap is crossed, so appends stay O(chunk).
"""

from __future__ import annotations

from collections import deque


class OutputBuffer:
    """Character ring buffer for one run's output.

    Parameters
    ----------
    max_chars:
        Maximum number of characters retained (default 10,000).
    """

    def __init__(self, max_chars: int = 10_000) -> None:
        if max_chars <= 0:
            raise ValueError(f"max_chars must be positive, got {max_chars}")
        self._max_chars = max_chars
        self._chunks: deque[str] = deque()
        self._size = 0
        self._total = 0

    # ── Write path ───────────────────────────────────────────────────────

    def append(self, text: str) -> None:
        if not text:
            return
        self._total += len(text)
        if len(text) >= self._max_chars:
            self._chunks.clear()
            self._chunks.append(text[-self._max_chars :])
            self._size = self._max_chars
            return

        self._chunks.append(text)
        self._size += len(text)
        while self._size > self._max_chars:
            excess = self._size - self._max_chars
            head = self._chunks[0]
            if len(head) <= excess:
                self._chunks.popleft()
                self._size -= len(head)
            else:
                self._chunks[0] = head[excess:]
                self._size -= excess

    # ── Query path ───────────────────────────────────────────────────────

    def text(self) -> str:
        return "".join(self._chunks)

    def tail(self, n: int) -> str:
        """The last ``n`` characters currently retained."""
        if n <= 0:
            return ""
        return self.text()[-n:]

    # ── Introspection ────────────────────────────────────────────────────

    @property
    def size(self) -> int:
        """Current number of characters in the buffer."""
        return self._size

    @property
    def maxlen(self) -> int:
        """Maximum capacity of the buffer."""
        return self._max_chars

    @property
    def total_written(self) -> int:
        """Characters ever appended, including those since dropped."""
        return self._total
