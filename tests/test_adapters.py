"""Tests for silicon_talk.adapters (typed input sources)."""

import io

from silicon_talk.adapters import DataAdapter, IterableAdapter, StdinAdapter


async def collect(adapter):
    return [line async for line in adapter]


class TestStdinAdapter:
    async def test_skips_blank_lines_and_stops_at_quit(self):
        adapter = StdinAdapter(io.StringIO("a\n\n  b  \n/quit\nc\n"))
        assert await collect(adapter) == ["a", "b"]

    async def test_stops_at_eof(self):
        assert await collect(StdinAdapter(io.StringIO("only\n"))) == ["only"]

    async def test_before_read_runs_per_read(self):
        prompts = []
        adapter = StdinAdapter(io.StringIO("x\n"), before_read=lambda: prompts.append(">"))
        await collect(adapter)
        assert prompts == [">", ">"]

    async def test_custom_stop_words(self):
        adapter = StdinAdapter(io.StringIO("a\nbye\nb\n"), stop_words={"bye"})
        assert await collect(adapter) == ["a"]


class TestIterableAdapter:
    async def test_yields_every_line(self):
        assert await collect(IterableAdapter(["x", "", "y"])) == ["x", "", "y"]

    def test_protocol(self):
        assert isinstance(IterableAdapter([]), DataAdapter)
        assert isinstance(StdinAdapter(io.StringIO()), DataAdapter)
