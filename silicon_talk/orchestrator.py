"""
Turn Orchestrator: sequences one user message through one AI turn at a time.

A turn moves through::

    Idle -> Submitted -> StatusChecking -> Blocked(<status>) | Thinking -> Settled -> Idle

The orchestrator owns the rendered message list, the prompting history, the
conversation context, the rolling summary, and the ephemeral turn status. It
exposes them as plain attributes plus a change-notification hook so any
presentation layer (the CLI, a GUI, tests) can bind to it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from .config import TalkConfig
from .context import extract_name, merge_topics
from .gateway import ENGINE_ABSENT_MESSAGE, DownloadRequest, InferenceGateway
from .models import (
    USABLE_STATUSES,
    ConversationContext,
    EphemeralStatus,
    Message,
    ModelStatus,
    PlainMessage,
    Sender,
    StatusKind,
    StructuredMessage,
    TurnStage,
)
from .monitor import AvailabilityMonitor
from .prompts import build_turn_prompt, recover_response
from .protocols import InferenceSession
from .scheduling import ScheduledTask, call_later
from .summarizer import Summarizer

logger = logging.getLogger("silicon_talk")

LOG_COMMAND = "/log"
ERROR_APOLOGY = "申し訳ございません。エラーが発生しました。"
BLOCKED_STATUS_TEXT: dict[StatusKind, str] = {
    StatusKind.DOWNLOADABLE: "モデルをダウンロードする必要があります。ダウンロードを開始してください。",
    StatusKind.NOT_AVAILABLE: "モデルが利用できません。設定を確認してください。",
    StatusKind.ERROR: "申し訳ございません。AI機能でエラーが発生しました。",
    StatusKind.UNKNOWN: "モデルの状態が不明です。しばらくしてから再度お試しください。",
    StatusKind.CHECKING: "AI機能を確認中です。しばらくしてから再度お試しください。",
}

ChangeListener = Callable[[str], None]


def downloading_text(status: ModelStatus) -> str:
    percent = status.progress_percent
    progress = f" ({percent}%完了)" if percent is not None else ""
    return f"ダウンロード中...{progress}"


class TurnLock:
    """Non-queuing lock: a second acquire while held is rejected, not awaited."""

    def __init__(self) -> None:
        self._held = False

    @property
    def locked(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        if self._held:
            return False
        self._held = True
        return True

    def release(self) -> None:
        self._held = False


class TurnOrchestrator:
    def __init__(
        self,
        gateway: InferenceGateway,
        config: TalkConfig | None = None,
        monitor: AvailabilityMonitor | None = None,
        summarizer: Summarizer | None = None,
    ) -> None:
        self.config = config or TalkConfig()
        self.gateway = gateway
        self.monitor = monitor or AvailabilityMonitor(
            gateway, self.config.poll_interval_seconds, self.config.language
        )
        self.summarizer = summarizer or Summarizer(gateway)

        self.messages: list[Message] = []
        self.history: list[Message] = []
        self.context = ConversationContext()
        self.conversation_summary = ""
        self.ai_ephemeral = EphemeralStatus.inactive()
        self.ai_available: bool | None = None
        self.input = ""
        self.speech_draft = ""
        self.expanded_messages: set[int] = set()
        self.is_summarizing = False

        self._lock = TurnLock()
        self._generation = 0
        self._turn_serial = 0
        self._active_turn = 0
        self._stream_placeholder: PlainMessage | None = None
        self._sent_timer: ScheduledTask | None = None
        self._summary_task: asyncio.Task | None = None
        self._listeners: list[ChangeListener] = []
        self.monitor.subscribe(self._on_model_status)

    # ------------------------------------------------------------------
    # Reactive state
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register ``listener(field_name)``; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, *fields: str) -> None:
        for name in fields:
            for listener in list(self._listeners):
                listener(name)

    @property
    def is_loading(self) -> bool:
        return self._lock.locked

    @property
    def model_status(self) -> ModelStatus:
        return self.monitor.status

    @property
    def input_enabled(self) -> bool:
        return bool(self.ai_available) and not self.is_loading

    def _on_model_status(self, status: ModelStatus) -> None:
        if status.status is StatusKind.READY and not self.ai_available:
            self.ai_available = True
            self._notify("ai_available")
        self._notify("model_status")

    def set_input(self, text: str) -> None:
        self.input = text
        self._notify("input")

    def set_speech_draft(self, text: str) -> None:
        self.speech_draft = text
        self._notify("speech_draft")

    def _set_ephemeral(self, status: EphemeralStatus) -> None:
        self.ai_ephemeral = status
        self._notify("ai_ephemeral")

    def ai_turn_count(self) -> int:
        return sum(1 for message in self.history if message.sender is Sender.AI)

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------

    async def check_ai_availability(self) -> ModelStatus:
        """Initial probe: decides ``ai_available`` and starts polling if downloading."""
        if not self.gateway.engine_present:
            self.monitor.set_status(ModelStatus(StatusKind.NOT_AVAILABLE, ENGINE_ABSENT_MESSAGE))
            self.ai_available = False
            self._notify("ai_available")
            return self.monitor.status

        status = await self.monitor.check()
        self.ai_available = status.status in USABLE_STATUSES
        self._notify("ai_available")
        return status

    async def begin_model_download(self) -> DownloadRequest:
        """User-triggered download start; polling resumes until a terminal state."""
        return await self.monitor.begin_download()

    async def _current_status(self) -> ModelStatus:
        if self.monitor.status.status is StatusKind.READY:
            return self.monitor.status
        return await self.monitor.check()

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def handle_send_message(self) -> bool:
        value = (self.input or "").strip()
        if not value:
            return False
        return await self.submit_turn(value)

    async def submit_turn(self, user_text: str) -> bool:
        """Run one turn. Returns False when the submission was dropped."""
        text = (user_text or "").strip()
        if not text or self.is_loading or not self.ai_available:
            logger.debug(
                "[SiliconTalk Turn] Dropped submission (empty=%s, loading=%s, available=%s).",
                not text,
                self.is_loading,
                self.ai_available,
            )
            return False

        if text == LOG_COMMAND:
            self._append_log_message()
            self.set_input("")
            return True

        if not self._lock.try_acquire():
            return False

        self._turn_serial += 1
        turn = self._turn_serial
        self._active_turn = turn
        generation = self._generation
        started = time.perf_counter()
        self._notify("is_loading")

        user_message = PlainMessage(sender=Sender.USER, text=text)
        prior_history = list(self.history)
        self.messages.append(user_message)
        self.history.append(user_message)
        if self.context.remember_name(extract_name(text)):
            logger.info("[SiliconTalk Turn] Learned user name.")
            self._notify("context")
        self.input = ""
        self.speech_draft = ""
        self._notify("messages", "input", "speech_draft")

        self._set_ephemeral(EphemeralStatus.at(TurnStage.RECEIVED))
        self._sent_timer = call_later(
            self.config.sent_stage_delay_seconds,
            lambda: self._advance_to_sent(turn),
            name="ephemeral-sent",
        )

        try:
            ai_message = await self._run_turn(text, prior_history, generation)
        except Exception:
            logger.warning(
                "[SiliconTalk Turn] Turn %d failed; settling with apology.", turn, exc_info=True
            )
            ai_message = PlainMessage(sender=Sender.AI, text=ERROR_APOLOGY)

        try:
            self._settle(ai_message, generation)
        finally:
            if self._sent_timer is not None:
                self._sent_timer.cancel()
                self._sent_timer = None
            self._stream_placeholder = None
            self._active_turn = 0
            self._lock.release()
            self._set_ephemeral(EphemeralStatus.inactive())
            self._notify("is_loading")
            logger.info(
                "[SiliconTalk Turn] Turn %d settled in %.3fs.", turn, time.perf_counter() - started
            )
        return True

    def _advance_to_sent(self, turn: int) -> None:
        if self._active_turn == turn and self.ai_ephemeral.stage is TurnStage.RECEIVED:
            self._set_ephemeral(EphemeralStatus.at(TurnStage.SENT))

    async def _run_turn(
        self, text: str, prior_history: list[Message], generation: int
    ) -> Message:
        status = await self._current_status()
        if status.status is StatusKind.DOWNLOADING:
            return StructuredMessage.from_status(status, downloading_text(status))
        if status.status is not StatusKind.READY:
            text_for_status = BLOCKED_STATUS_TEXT.get(
                status.status, BLOCKED_STATUS_TEXT[StatusKind.ERROR]
            )
            return StructuredMessage.from_status(status, text_for_status)

        self._set_ephemeral(EphemeralStatus.at(TurnStage.THINKING))
        prompt = build_turn_prompt(
            text,
            self.context,
            prior_history,
            summary=self.conversation_summary,
            history_turns=self.config.prompt_history_turns,
        )

        session = await self.gateway.create_session()
        if self.config.streaming and self.gateway.supports_streaming(session):
            raw = await self._stream(prompt, session, generation)
        else:
            raw = await self.gateway.prompt(prompt, session=session)

        recovered = recover_response(raw)
        return StructuredMessage(
            sender=Sender.AI,
            display_text=recovered.display_text,
            full_response=recovered.full_response,
            is_json=recovered.is_json,
            topics=recovered.topics,
        )

    async def _stream(
        self, prompt: str, session: InferenceSession, generation: int
    ) -> str:
        placeholder = PlainMessage(sender=Sender.AI, text="", streaming=True)
        self._stream_placeholder = placeholder
        self.messages.append(placeholder)
        self._notify("messages")

        def is_live() -> bool:
            return generation == self._generation and any(m is placeholder for m in self.messages)

        def on_chunk(chunk: str) -> None:
            if is_live():
                placeholder.append_chunk(chunk)
                self._notify("messages")

        return await self.gateway.prompt_stream(
            prompt, on_chunk, session=session, should_continue=is_live
        )

    def _settle(self, ai_message: Message, generation: int) -> None:
        if generation != self._generation:
            logger.info("[SiliconTalk Turn] Conversation was reset mid-turn; dropping response.")
            return

        placeholder = self._stream_placeholder
        index = next(
            (i for i, message in enumerate(self.messages) if message is placeholder), None
        )
        if placeholder is not None and index is not None:
            self.messages[index] = ai_message
        else:
            self.messages.append(ai_message)
        self.history.append(ai_message)

        if isinstance(ai_message, StructuredMessage) and ai_message.topics:
            self.context.topics = merge_topics(self.context.topics, ai_message.topics)
            self._notify("context")
        self._notify("messages")
        self._maybe_summarize()

    # ------------------------------------------------------------------
    # Summarization
    # ------------------------------------------------------------------

    def _maybe_summarize(self) -> None:
        count = self.ai_turn_count()
        if self.is_summarizing or count == 0 or count % self.config.summary_every_ai_turns:
            return
        self.is_summarizing = True
        self._summary_task = asyncio.get_running_loop().create_task(
            self._summarize(self._generation), name="history-summary"
        )

    async def _summarize(self, generation: int) -> None:
        snapshot = list(self.history)
        try:
            result = await self.summarizer.summarize(
                snapshot, self.conversation_summary, self.context
            )
        except asyncio.CancelledError:
            logger.info("[SiliconTalk Summary] Summarization cancelled.")
            raise
        except Exception:
            logger.warning("[SiliconTalk Summary] Summarization failed.", exc_info=True)
            if generation == self._generation:
                self.is_summarizing = False
            return

        if generation != self._generation:
            return
        self.conversation_summary = result.summary
        self.context.topics = merge_topics(self.context.topics, result.topics)
        self.history = self.history[-self.config.history_keep_after_summary :]
        self.is_summarizing = False
        self._notify("conversation_summary", "context")

    async def wait_for_summary(self) -> None:
        task = self._summary_task
        if task is not None and not task.done():
            await task

    # ------------------------------------------------------------------
    # Debug command / UI actions
    # ------------------------------------------------------------------

    def _append_log_message(self) -> None:
        lines = [
            f"会話履歴 ({len(self.history)}件)",
            f"AIターン数: {self.ai_turn_count()}",
            f"要約: {self.conversation_summary or '(なし)'}",
            f"要約処理中: {'はい' if self.is_summarizing else 'いいえ'}",
        ]
        lines.extend(
            f"{message.sender.value}: {message.display_text or 'メッセージなし'}"
            for message in self.history
        )
        self.messages.append(PlainMessage(sender=Sender.SYSTEM, text="\n".join(lines)))
        self._notify("messages")

    def toggle_message_expansion(self, index: int) -> bool:
        """Flip whether message ``index`` shows its full response. Returns the new state."""
        if index in self.expanded_messages:
            self.expanded_messages.discard(index)
            expanded = False
        else:
            self.expanded_messages.add(index)
            expanded = True
        self._notify("expanded_messages")
        return expanded

    def reset_conversation(self) -> None:
        """Forget everything; an in-flight turn stops writing and its response is dropped."""
        self._generation += 1
        if self._summary_task is not None and not self._summary_task.done():
            self._summary_task.cancel()
        self._summary_task = None
        self.is_summarizing = False
        self.messages = []
        self.history = []
        self.context = ConversationContext()
        self.conversation_summary = ""
        self.expanded_messages = set()
        self.speech_draft = ""
        logger.info("[SiliconTalk Turn] Conversation reset.")
        self._notify(
            "messages", "context", "conversation_summary", "expanded_messages", "speech_draft"
        )

    async def aclose(self) -> None:
        """Stop timers and background work."""
        self.monitor.stop()
        if self._sent_timer is not None:
            self._sent_timer.cancel()
        task = self._summary_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
