"""
Input Arbiter: typed text and speech transcripts feeding one turn pipeline.

Interim transcripts only update ``orchestrator.speech_draft``; final
transcripts clear the draft and are submitted as if typed. Submissions that
arrive while a turn is in flight are dropped by the orchestrator's turn lock,
never queued.

Recognizer callbacks must be invoked on the event-loop thread.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from .adapters import DataAdapter
from .config import DEFAULT_SPEECH_LOCALE
from .exceptions import RecognizerError
from .orchestrator import TurnOrchestrator
from .protocols import RecognitionEvent, SpeechRecognizer

logger = logging.getLogger("silicon_talk.speech")

RecognizerFactory = Callable[[], SpeechRecognizer]

# Error-then-end cycles without a result in between before voice mode is turned off.
RECOGNIZER_FAILURE_LIMIT = 3


def split_transcripts(event: RecognitionEvent) -> tuple[str, str]:
    """Return ``(interim, final)`` text for the fragments from the resume point on."""
    interim: list[str] = []
    final: list[str] = []
    for fragment in event.results[event.result_index :]:
        text = (fragment.transcript or "").strip()
        if not text:
            continue
        (final if fragment.is_final else interim).append(text)
    return "".join(interim), "".join(final)


class InputArbiter:
    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        recognizer_factory: RecognizerFactory | None = None,
        locale: str = DEFAULT_SPEECH_LOCALE,
    ) -> None:
        self.orchestrator = orchestrator
        self.recognizer_factory = recognizer_factory
        self.locale = locale
        self.voice_enabled = False
        self.is_recognizing = False
        self._recognizer: SpeechRecognizer | None = None
        self._pending: set[asyncio.Task] = set()
        self._last_error: Exception | None = None
        self._failed_cycles = 0
        self._unsubscribe = orchestrator.subscribe(self._on_orchestrator_change)

    @property
    def speech_supported(self) -> bool:
        return self.recognizer_factory is not None

    @property
    def voice_permitted(self) -> bool:
        return bool(self.orchestrator.ai_available)

    @property
    def voice_live(self) -> bool:
        return self.voice_enabled and self._recognizer is not None

    @property
    def live_source(self) -> str:
        return "voice" if self.voice_live else "text"

    # ------------------------------------------------------------------
    # Typed input
    # ------------------------------------------------------------------

    async def submit_text(self, text: str) -> bool:
        return await self.orchestrator.submit_turn(text)

    async def pump_text(self, source: DataAdapter) -> int:
        """Submit every line of ``source`` in order; returns how many were accepted."""
        accepted = 0
        async for line in source:
            if await self.submit_text(line):
                accepted += 1
        return accepted

    # ------------------------------------------------------------------
    # Voice mode
    # ------------------------------------------------------------------

    def set_voice_enabled(self, enabled: bool) -> None:
        self.voice_enabled = enabled
        self._sync_recognizer()

    def toggle_voice(self) -> bool:
        self.set_voice_enabled(not self.voice_enabled)
        return self.voice_enabled

    def _on_orchestrator_change(self, field_name: str) -> None:
        if field_name == "ai_available":
            self._sync_recognizer()

    def _sync_recognizer(self) -> None:
        if not self.voice_enabled or not self.voice_permitted:
            self._stop_recognizer()
            return
        if not self.speech_supported:
            logger.info("[SiliconTalk Speech] Speech recognition unsupported; voice mode off.")
            self.voice_enabled = False
            return
        if self._recognizer is None:
            self._start_recognizer()

    def _start_recognizer(self) -> None:
        assert self.recognizer_factory is not None
        recognizer = self.recognizer_factory()
        recognizer.lang = self.locale
        recognizer.continuous = True
        recognizer.interim_results = True
        recognizer.on_start = lambda: self._on_start(recognizer)
        recognizer.on_result = lambda event: self._on_result(recognizer, event)
        recognizer.on_error = lambda exc: self._on_error(recognizer, exc)
        recognizer.on_end = lambda: self._on_end(recognizer)
        self._recognizer = recognizer
        self._last_error = None
        self._failed_cycles = 0
        try:
            recognizer.start()
        except Exception as exc:
            self._fail(RecognizerError(f"recognizer failed to start: {exc}"))

    def _stop_recognizer(self) -> None:
        recognizer = self._recognizer
        self._recognizer = None
        self.is_recognizing = False
        if recognizer is None:
            return
        recognizer.on_end = None
        try:
            recognizer.stop()
        except Exception:
            logger.debug("[SiliconTalk Speech] Recognizer stop failed.", exc_info=True)

    def _fail(self, error: RecognizerError) -> None:
        logger.warning("[SiliconTalk Speech] %s; voice mode off.", error)
        self.voice_enabled = False
        self._stop_recognizer()
        self.orchestrator.set_speech_draft("")

    def _on_start(self, recognizer: SpeechRecognizer) -> None:
        if recognizer is self._recognizer:
            self.is_recognizing = True

    def _on_error(self, recognizer: SpeechRecognizer, exc: Exception) -> None:
        if recognizer is self._recognizer:
            self.is_recognizing = False
            self._last_error = exc
            logger.warning("[SiliconTalk Speech] Recognizer error: %s", exc)

    def _on_end(self, recognizer: SpeechRecognizer) -> None:
        if recognizer is not self._recognizer:
            return
        self.is_recognizing = False
        if not (self.voice_enabled and self.voice_permitted):
            return
        error, self._last_error = self._last_error, None
        if error is not None:
            self._failed_cycles += 1
            if self._failed_cycles >= RECOGNIZER_FAILURE_LIMIT:
                self._fail(
                    RecognizerError(
                        f"recognizer failed {self._failed_cycles} times in a row: {error}"
                    )
                )
                return
        logger.info("[SiliconTalk Speech] Recognizer ended unexpectedly; restarting.")
        try:
            recognizer.start()
        except Exception as exc:
            self._fail(RecognizerError(f"recognizer failed to restart: {exc}"))

    def _on_result(self, recognizer: SpeechRecognizer, event: RecognitionEvent) -> None:
        if recognizer is not self._recognizer:
            return
        self._last_error = None
        self._failed_cycles = 0
        interim, final = split_transcripts(event)
        if final:
            self.orchestrator.set_speech_draft("")
            self._dispatch(final)
        elif interim:
            self.orchestrator.set_speech_draft(interim)

    def _dispatch(self, text: str) -> None:
        if self.orchestrator.is_loading:
            logger.info("[SiliconTalk Speech] Turn in flight; dropping transcript.")
            return
        task = asyncio.get_running_loop().create_task(self.orchestrator.submit_turn(text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every transcript submission dispatched so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def close(self) -> None:
        self.voice_enabled = False
        self._stop_recognizer()
        self._unsubscribe()
