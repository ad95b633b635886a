"""
Availability Monitor: owns the model status and polls while the model downloads.

Transitions come only from ``InferenceGateway.check_status`` observations::

    checking    -> ready | downloading | downloadable | not-available | error
    downloading -> downloading (every poll) | ready | error | ...

Polling runs on a fixed interval with no backoff and stops as soon as the
probe reports anything other than ``downloading``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from .gateway import STATUS_MESSAGES, DownloadRequest, InferenceGateway
from .models import ModelStatus, StatusKind
from .scheduling import ScheduledTask

logger = logging.getLogger("silicon_talk.monitor")

DOWNLOAD_STARTING_MESSAGE = "モデルのダウンロードを開始しています..."

StatusListener = Callable[[ModelStatus], None]


class AvailabilityMonitor:
    def __init__(
        self,
        gateway: InferenceGateway,
        poll_interval: float = 3.0,
        language: str | None = None,
    ) -> None:
        self.gateway = gateway
        self.poll_interval = poll_interval
        self.language = language
        self.status = ModelStatus(StatusKind.CHECKING, STATUS_MESSAGES[StatusKind.CHECKING])
        self._listeners: list[StatusListener] = []
        self._poller: ScheduledTask | None = None

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def polling(self) -> bool:
        return self._poller is not None and self._poller.running

    def set_status(self, status: ModelStatus) -> None:
        previous = self.status
        self.status = status
        if previous != status:
            logger.info(
                "[SiliconTalk Monitor] %s -> %s%s",
                previous.status.value,
                status.status.value,
                f" ({status.progress_percent}%)" if status.progress is not None else "",
            )
        for listener in list(self._listeners):
            listener(status)

    async def _observe(self) -> ModelStatus:
        try:
            status = await self.gateway.check_status(self.language)
        except Exception:
            logger.warning("[SiliconTalk Monitor] Status check failed.", exc_info=True)
            status = ModelStatus(StatusKind.ERROR, STATUS_MESSAGES[StatusKind.ERROR])
        self.set_status(status)
        return status

    async def check(self) -> ModelStatus:
        """Probe once; begin polling if the model is downloading."""
        status = await self._observe()
        if status.status is StatusKind.DOWNLOADING and not self.polling:
            self.start_polling()
        return status

    async def _poll_once(self) -> bool:
        status = await self._observe()
        keep_polling = status.status is StatusKind.DOWNLOADING
        if not keep_polling:
            logger.info("[SiliconTalk Monitor] Polling stopped at '%s'.", status.status.value)
        return keep_polling

    def start_polling(self) -> None:
        """(Re)start the fixed-interval poll loop."""
        self.stop()
        logger.info("[SiliconTalk Monitor] Polling every %.1fs.", self.poll_interval)
        self._poller = ScheduledTask(
            self._poll_once, self.poll_interval, name="availability-poll"
        ).start()

    def stop(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            self._poller = None

    async def wait_until_settled(self) -> ModelStatus:
        """Wait for the current poll loop (if any) to reach a non-downloading state."""
        if self._poller is not None:
            await self._poller.wait()
        return self.status

    async def begin_download(self) -> DownloadRequest:
        """Report the download as starting, ask the engine for it, and restart polling."""
        self.set_status(ModelStatus(StatusKind.DOWNLOADING, DOWNLOAD_STARTING_MESSAGE))
        request = await self.gateway.request_download(self.language)
        if not request.started:
            logger.warning("[SiliconTalk Monitor] Download did not start: %s", request.error)
        self.start_polling()
        return request
