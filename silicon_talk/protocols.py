"""
Consumed interfaces: the inference engine and the speech recognizer.

Both are injected collaborators. ``AppleFMEngine`` binds the inference-engine
protocol to the on-device Apple Foundation Models SDK; tests and other hosts
supply their own implementations.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any, Protocol, runtime_checkable

from .exceptions import EngineError, require_apple_fm

logger = logging.getLogger("silicon_talk")

SYSTEM_INSTRUCTIONS = (
    "You are the conversational agent of a local-first chat app running entirely on-device. "
    "Reply in natural Japanese unless the user writes in another language."
)


# ---------------------------------------------------------------------------
# Inference engine
# ---------------------------------------------------------------------------


@runtime_checkable
class InferenceSession(Protocol):
    """A session handed out by the engine.

    Optional attributes, read with ``getattr``:

    - ``status``: ``"available" | "downloading" | "downloadable" | "not-available"``
    - ``download_progress``: float in ``0..1``
    - ``prompt_streaming(text)``: async iterator of incremental text segments
    """

    async def prompt(self, text: str) -> str: ...


@runtime_checkable
class InferenceEngine(Protocol):
    async def create(self, *, language: str) -> InferenceSession: ...


class AppleFMSession:
    """One Foundation Models session per prompt, exposing the engine session contract."""

    def __init__(
        self,
        fm: ModuleType,
        model: Any,
        instructions: str,
        available: bool,
        reason: Any = None,
    ) -> None:
        self._fm = fm
        self._model = model
        self._instructions = instructions
        self._available = available
        self._reason = reason
        self.status = _status_from_availability(available, reason)
        self.download_progress: float | None = None

    def _new_session(self) -> Any:
        if not self._available:
            raise EngineError(f"Foundation Model is not available: {self._reason}")
        return self._fm.LanguageModelSession(model=self._model, instructions=self._instructions)

    async def prompt(self, text: str) -> str:
        session = self._new_session()
        return str(await session.respond(text))

    async def prompt_streaming(self, text: str) -> AsyncIterator[str]:
        """Yield only the new text of each cumulative snapshot the SDK streams."""
        session = self._new_session()
        emitted = ""
        async for snapshot in session.stream_response(text):
            current = str(snapshot)
            if not current.startswith(emitted):
                logger.debug(
                    "[SiliconTalk AppleFM] Snapshot does not extend emitted text; skipping."
                )
                continue
            delta = current[len(emitted) :]
            if delta:
                emitted = current
                yield delta


class AppleFMEngine:
    """``InferenceEngine`` backed by ``apple_fm_sdk.SystemLanguageModel``."""

    def __init__(self, instructions: str = SYSTEM_INSTRUCTIONS, fm: ModuleType | None = None):
        self._fm = fm if fm is not None else require_apple_fm("AppleFMEngine")
        self.instructions = instructions

    async def create(self, *, language: str) -> AppleFMSession:
        model = self._fm.SystemLanguageModel()
        available, reason = model.is_available()
        logger.debug(
            "[SiliconTalk AppleFM] create(language=%s): available=%s reason=%s",
            language,
            available,
            reason,
        )
        return AppleFMSession(self._fm, model, self.instructions, bool(available), reason)


def _status_from_availability(available: bool, reason: Any) -> str:
    if available:
        return "available"
    text = str(reason or "").lower()
    if "not ready" in text or "notready" in text or "download" in text:
        return "downloading"
    return "not-available"


# ---------------------------------------------------------------------------
# Speech recognizer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TranscriptFragment:
    transcript: str
    is_final: bool


@dataclass(frozen=True)
class RecognitionEvent:
    """Ordered recognizer output: fragments from ``result_index`` onward."""

    results: list[TranscriptFragment] = field(default_factory=list)
    result_index: int = 0


@runtime_checkable
class SpeechRecognizer(Protocol):
    """Continuous recognizer. Callbacks are assigned by the input arbiter."""

    lang: str
    continuous: bool
    interim_results: bool
    on_start: Callable[[], None] | None
    on_result: Callable[[RecognitionEvent], None] | None
    on_error: Callable[[Exception], None] | None
    on_end: Callable[[], None] | None

    def start(self) -> None: ...

    def stop(self) -> None: ...
