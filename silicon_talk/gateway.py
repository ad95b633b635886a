"""
Inference Gateway: session creation, prompting, and status normalization.

The engine's status contract differs between versions: some sessions expose a
``status`` field, others only reveal their state through the text of the
exception a prompt raises. ``check_status`` handles both, and every piece of
text sniffing goes through ``translate_engine_failure`` and its table.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass

from .exceptions import (
    DownloadInProgress,
    DownloadRequired,
    EngineError,
    EngineUnavailable,
    SiliconTalkError,
)
from .models import ModelStatus, StatusKind
from .protocols import InferenceEngine, InferenceSession

logger = logging.getLogger("silicon_talk.gateway")

PROBE_PROMPT = "テスト"

STATUS_FIELD_MAP: dict[str, StatusKind] = {
    "available": StatusKind.READY,
    "downloading": StatusKind.DOWNLOADING,
    "downloadable": StatusKind.DOWNLOADABLE,
    "not-available": StatusKind.NOT_AVAILABLE,
}

# Checked in order; the first substring found in the lowered message wins.
# Brittle by nature: replace once the engine reports structured errors.
ERROR_SUBSTRING_STATUS: tuple[tuple[str, StatusKind], ...] = (
    ("download", StatusKind.DOWNLOADING),
    ("not available", StatusKind.NOT_AVAILABLE),
    ("unavailable", StatusKind.NOT_AVAILABLE),
    ("user gesture", StatusKind.DOWNLOADABLE),
)

STATUS_MESSAGES: dict[StatusKind, str] = {
    StatusKind.CHECKING: "AI機能を確認中...",
    StatusKind.READY: "モデルが利用可能です",
    StatusKind.DOWNLOADING: "モデルをダウンロード中です",
    StatusKind.DOWNLOADABLE: "モデルをダウンロードできます",
    StatusKind.NOT_AVAILABLE: "モデルが利用できません",
    StatusKind.ERROR: "モデルでエラーが発生しました",
    StatusKind.UNKNOWN: "モデル状態が不明です",
}
ENGINE_ABSENT_MESSAGE = "AI機能が利用できません。設定を確認してください。"
STATUS_CHECK_FAILED_MESSAGE = "モデルの状態確認でエラーが発生しました"


def translate_engine_failure(exc: BaseException) -> StatusKind:
    """Map an engine exception to the status it implies."""
    if isinstance(exc, EngineUnavailable):
        return StatusKind.NOT_AVAILABLE
    if isinstance(exc, DownloadInProgress):
        return StatusKind.DOWNLOADING
    if isinstance(exc, DownloadRequired):
        return StatusKind.DOWNLOADABLE
    message = str(exc).lower()
    for needle, status in ERROR_SUBSTRING_STATUS:
        if needle in message:
            return status
    return StatusKind.ERROR


def as_gateway_error(exc: BaseException) -> SiliconTalkError:
    """Normalize any engine exception into the gateway's error taxonomy."""
    if isinstance(exc, SiliconTalkError):
        return exc
    status = translate_engine_failure(exc)
    if status is StatusKind.DOWNLOADING:
        return DownloadInProgress(str(exc))
    if status is StatusKind.DOWNLOADABLE:
        return DownloadRequired(str(exc))
    if status is StatusKind.NOT_AVAILABLE:
        return EngineUnavailable(str(exc))
    return EngineError(str(exc) or type(exc).__name__)


@dataclass(frozen=True)
class DownloadRequest:
    started: bool
    error: BaseException | None = None


class InferenceGateway:
    """Wraps an injected ``InferenceEngine``. Never retries on its own."""

    def __init__(
        self,
        engine: InferenceEngine | None,
        language: str = "ja",
        first_chunk_timeout: float = 25.0,
        chunk_idle_timeout: float = 12.0,
    ) -> None:
        self.engine = engine
        self.language = language
        self.first_chunk_timeout = first_chunk_timeout
        self.chunk_idle_timeout = chunk_idle_timeout

    @property
    def engine_present(self) -> bool:
        return self.engine is not None

    async def create_session(self, language: str | None = None) -> InferenceSession:
        if self.engine is None:
            raise EngineUnavailable("no inference engine is present in this host")
        try:
            return await self.engine.create(language=language or self.language)
        except Exception as exc:
            raise as_gateway_error(exc) from exc

    async def check_status(self, language: str | None = None) -> ModelStatus:
        """Probe the engine and return a normalized ``ModelStatus``."""
        if self.engine is None:
            return ModelStatus(StatusKind.NOT_AVAILABLE, ENGINE_ABSENT_MESSAGE)

        try:
            session = await self.engine.create(language=language or self.language)
        except Exception as exc:
            status = translate_engine_failure(exc)
            logger.info("[SiliconTalk Gateway] Session creation failed (%s): %s", status.value, exc)
            message = STATUS_CHECK_FAILED_MESSAGE if status is StatusKind.ERROR else None
            return ModelStatus(status, message or STATUS_MESSAGES[status])

        raw_status = getattr(session, "status", None)
        if raw_status:
            status = STATUS_FIELD_MAP.get(str(raw_status), StatusKind.UNKNOWN)
            progress = _read_progress(session) if status is StatusKind.DOWNLOADING else None
            return ModelStatus(status, STATUS_MESSAGES[status], progress)

        # No status field: a throwaway prompt is the only readiness signal left.
        # TODO: drop this probe once every supported engine exposes ``status``.
        try:
            await session.prompt(PROBE_PROMPT)
        except Exception as exc:
            status = translate_engine_failure(exc)
            logger.info("[SiliconTalk Gateway] Probe prompt failed (%s): %s", status.value, exc)
            return ModelStatus(status, STATUS_MESSAGES[status])
        return ModelStatus(StatusKind.READY, STATUS_MESSAGES[StatusKind.READY])

    async def request_download(self, language: str | None = None) -> DownloadRequest:
        """Ask the engine to acquire the model. Failures are returned, never raised."""
        if self.engine is None:
            return DownloadRequest(False, EngineUnavailable("no inference engine is present"))
        try:
            await self.engine.create(language=language or self.language)
        except Exception as exc:
            logger.warning("[SiliconTalk Gateway] Download request failed.", exc_info=True)
            return DownloadRequest(False, exc)
        logger.info("[SiliconTalk Gateway] Model download requested.")
        return DownloadRequest(True)

    def supports_streaming(self, session: InferenceSession) -> bool:
        return callable(getattr(session, "prompt_streaming", None))

    async def prompt(self, prompt_text: str, session: InferenceSession | None = None) -> str:
        """Issue one blocking prompt and return the full text."""
        if session is None:
            session = await self.create_session()
        start = time.perf_counter()
        try:
            text = await session.prompt(prompt_text)
        except Exception as exc:
            raise as_gateway_error(exc) from exc
        logger.debug(
            "[SiliconTalk Gateway] Prompt answered in %.3fs (%d chars).",
            time.perf_counter() - start,
            len(text or ""),
        )
        return text or ""

    async def prompt_stream(
        self,
        prompt_text: str,
        on_chunk: Callable[[str], None],
        session: InferenceSession | None = None,
        should_continue: Callable[[], bool] | None = None,
    ) -> str:
        """Stream one prompt, calling ``on_chunk`` per segment in arrival order.

        Delivery stops as soon as ``should_continue`` returns False; the text
        accumulated so far is returned in that case.
        """
        if session is None:
            session = await self.create_session()
        if not self.supports_streaming(session):
            raise EngineError("session does not support streaming")

        chunks: list[str] = []
        stream: AsyncIterator[str] = session.prompt_streaming(prompt_text)  # type: ignore[attr-defined]
        start = time.perf_counter()
        try:
            while True:
                timeout = self.chunk_idle_timeout if chunks else self.first_chunk_timeout
                try:
                    chunk = await asyncio.wait_for(anext(stream), timeout=timeout)
                except StopAsyncIteration:
                    break
                except TimeoutError as exc:
                    label = "response stream" if chunks else "first response chunk"
                    raise EngineError(
                        f"Timed out waiting for {label} after {timeout:.0f}s."
                    ) from exc
                except SiliconTalkError:
                    raise
                except Exception as exc:
                    raise as_gateway_error(exc) from exc

                if should_continue is not None and not should_continue():
                    logger.info("[SiliconTalk Gateway] Stream abandoned by caller.")
                    break
                if not chunk:
                    continue
                chunks.append(chunk)
                on_chunk(chunk)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception:
                    logger.debug("[SiliconTalk Gateway] Stream close failed.", exc_info=True)

        logger.debug(
            "[SiliconTalk Gateway] Stream finished in %.3fs (%d chunks).",
            time.perf_counter() - start,
            len(chunks),
        )
        return "".join(chunks)


def _read_progress(session: InferenceSession) -> float | None:
    raw = getattr(session, "download_progress", None)
    if raw is None:
        return None
    try:
        return min(max(float(raw), 0.0), 1.0)
    except (TypeError, ValueError):
        return None
