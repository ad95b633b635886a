"""Shared fakes for the inference engine, its sessions, and the speech recognizer."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from silicon_talk.config import TalkConfig
from silicon_talk.gateway import InferenceGateway
from silicon_talk.orchestrator import TurnOrchestrator
from silicon_talk.protocols import RecognitionEvent, TranscriptFragment


def envelope(answer: str, topics=(), thinking=None) -> str:
    """A well-formed model answer in the turn-prompt JSON format."""
    return json.dumps(
        {
            "thinking": thinking or {"満足度の推測": "普通"},
            "topics": list(topics),
            "answer": answer,
        },
        ensure_ascii=False,
    )


class FakeSession:
    """Blocking-only session. ``status``/``download_progress`` exist only when given."""

    def __init__(self, responses=None, *, status=None, download_progress=None, prompt_error=None):
        self.responses = list(responses or [])
        if status is not None:
            self.status = status
        if download_progress is not None:
            self.download_progress = download_progress
        self.prompt_error = prompt_error
        self.prompts: list[str] = []

    async def prompt(self, text: str) -> str:
        self.prompts.append(text)
        await asyncio.sleep(0)
        if self.prompt_error is not None:
            raise self.prompt_error
        return self.responses.pop(0) if self.responses else ""


class StreamingSession(FakeSession):
    """Session that also streams. Each call consumes the next list of chunks."""

    def __init__(self, streams=None, *, fail_after=None, stream_error=None, **kwargs):
        super().__init__(**kwargs)
        self.streams = [list(chunks) for chunks in (streams or [])]
        self.fail_after = fail_after
        self.stream_error = stream_error or RuntimeError("engine crashed mid-stream")
        self.delivered = 0

    async def prompt_streaming(self, text: str):
        self.prompts.append(text)
        chunks = self.streams.pop(0) if self.streams else []
        for index, chunk in enumerate(chunks):
            if self.fail_after is not None and index == self.fail_after:
                raise self.stream_error
            await asyncio.sleep(0)
            self.delivered += 1
            yield chunk


class GatedSession(FakeSession):
    """Holds every prompt (and stream, after its first chunk) until ``gate`` is set."""

    def __init__(self, responses=None, first_chunk="", **kwargs):
        super().__init__(responses, **kwargs)
        self.gate = asyncio.Event()
        self.first_chunk = first_chunk

    async def prompt(self, text: str) -> str:
        self.prompts.append(text)
        await self.gate.wait()
        return self.responses.pop(0) if self.responses else ""

    def streaming(self) -> GatedSession:
        self.prompt_streaming = self._prompt_streaming
        return self

    async def _prompt_streaming(self, text: str):
        self.prompts.append(text)
        yield self.first_chunk
        await self.gate.wait()
        rest = self.responses.pop(0) if self.responses else ""
        if rest:
            yield rest


def make_mock_engine(session=None, create_error=None):
    engine = MagicMock()
    if create_error is not None:
        engine.create = AsyncMock(side_effect=create_error)
    else:
        engine.create = AsyncMock(return_value=session if session is not None else FakeSession())
    return engine


class FakeRecognizer:
    """Records lifecycle calls; tests drive events with ``emit`` and ``end``."""

    def __init__(self, fail_start: bool = False, fail_restart: bool = False):
        self.lang = ""
        self.continuous = False
        self.interim_results = False
        self.on_start = None
        self.on_result = None
        self.on_error = None
        self.on_end = None
        self.fail_start = fail_start
        self.fail_restart = fail_restart
        self.starts = 0
        self.stops = 0

    def start(self) -> None:
        if self.fail_start or (self.fail_restart and self.starts > 0):
            raise RuntimeError("not-allowed")
        self.starts += 1
        if self.on_start is not None:
            self.on_start()

    def stop(self) -> None:
        self.stops += 1

    def emit(self, *fragments: tuple[str, bool], result_index: int = 0) -> None:
        results = [TranscriptFragment(text, is_final) for text, is_final in fragments]
        self.on_result(RecognitionEvent(results, result_index))

    def end(self) -> None:
        if self.on_end is not None:
            self.on_end()

    def error(self, exc: Exception) -> None:
        if self.on_error is not None:
            self.on_error(exc)


@pytest.fixture
def fast_config() -> TalkConfig:
    return TalkConfig(
        poll_interval_seconds=0.01,
        sent_stage_delay_seconds=0.01,
        first_chunk_timeout_seconds=1.0,
        chunk_idle_timeout_seconds=1.0,
    )


async def make_ready_orchestrator(session, config: TalkConfig) -> TurnOrchestrator:
    """Orchestrator bound to ``session`` whose availability check already ran."""
    gateway = InferenceGateway(make_mock_engine(session), language=config.language)
    orchestrator = TurnOrchestrator(gateway, config)
    await orchestrator.check_ai_availability()
    return orchestrator
