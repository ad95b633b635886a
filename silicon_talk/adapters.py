"""
Typed-input sources for the input arbiter.

Each source implements the ``DataAdapter`` protocol (``__aiter__`` yielding
one user line per item) so it can be handed to ``InputArbiter.pump_text``.
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Protocol, TextIO, runtime_checkable

DEFAULT_STOP_WORDS = frozenset({"/quit", "/exit"})


@runtime_checkable
class DataAdapter(Protocol):
    """Common protocol for all input sources."""

    def __aiter__(self) -> AsyncIterator[str]: ...


class StdinAdapter:
    """Reads user lines from a text stream without blocking the event loop.

    Blank lines are skipped. Iteration ends at EOF or when a stop word
    (``/quit`` by default) is entered. ``before_read`` runs on the loop
    before each read, e.g. to print a prompt marker.
    """

    def __init__(
        self,
        stream: TextIO | None = None,
        stop_words: Iterable[str] = DEFAULT_STOP_WORDS,
        before_read: Callable[[], None] | None = None,
    ) -> None:
        self.stream = stream
        self.stop_words = frozenset(stop_words)
        self.before_read = before_read

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        while True:
            if self.before_read is not None:
                self.before_read()
            line: str | None = await loop.run_in_executor(None, self._read_line)
            if line is None:
                break
            if not line:
                continue
            if line in self.stop_words:
                break
            yield line

    def _read_line(self) -> str | None:
        raw = (self.stream or sys.stdin).readline()
        if not raw:
            return None
        return raw.strip()

    def __repr__(self) -> str:
        return f"StdinAdapter(stop_words={sorted(self.stop_words)!r})"


class IterableAdapter:
    """Wraps a synchronous iterable of lines (scripted conversations, tests)."""

    def __init__(self, lines: Iterable[str]) -> None:
        self.lines = lines

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        for line in self.lines:
            yield line
            await asyncio.sleep(0)

    def __repr__(self) -> str:
        return f"IterableAdapter(lines={self.lines!r})"
