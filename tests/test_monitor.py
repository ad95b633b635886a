"""Tests for silicon_talk.monitor (availability polling and download start)."""

from unittest.mock import AsyncMock

from silicon_talk.gateway import InferenceGateway
from silicon_talk.models import ModelStatus, StatusKind
from silicon_talk.monitor import DOWNLOAD_STARTING_MESSAGE, AvailabilityMonitor

from .conftest import FakeSession, make_mock_engine


def make_monitor(engine, poll_interval=0.01):
    return AvailabilityMonitor(InferenceGateway(engine), poll_interval=poll_interval)


def recorded(monitor):
    seen = []
    monitor.subscribe(lambda status: seen.append(status.status))
    return seen


# ========================================================================
# Single check
# ========================================================================


class TestCheck:
    async def test_initial_status_is_checking(self):
        monitor = make_monitor(make_mock_engine())
        assert monitor.status.status is StatusKind.CHECKING

    async def test_ready_does_not_poll(self):
        monitor = make_monitor(make_mock_engine(FakeSession(status="available")))
        status = await monitor.check()
        assert status.status is StatusKind.READY
        assert monitor.polling is False

    async def test_gateway_exception_becomes_error(self):
        monitor = make_monitor(make_mock_engine())
        monitor.gateway.check_status = AsyncMock(side_effect=RuntimeError("probe crashed"))
        status = await monitor.check()
        assert status.status is StatusKind.ERROR

    async def test_unsubscribe(self):
        monitor = make_monitor(make_mock_engine(FakeSession(status="available")))
        seen = []
        unsubscribe = monitor.subscribe(seen.append)
        unsubscribe()
        await monitor.check()
        assert seen == []


# ========================================================================
# Polling
# ========================================================================


class TestPolling:
    async def test_downloading_polls_until_ready(self):
        engine = make_mock_engine()
        engine.create.side_effect = [
            FakeSession(status="downloading", download_progress=0.1),
            FakeSession(status="downloading", download_progress=0.6),
            FakeSession(status="available"),
        ]
        monitor = make_monitor(engine)
        seen = recorded(monitor)

        status = await monitor.check()
        assert status.status is StatusKind.DOWNLOADING
        assert monitor.polling is True

        final = await monitor.wait_until_settled()
        assert final.status is StatusKind.READY
        assert monitor.polling is False
        assert seen == [StatusKind.DOWNLOADING, StatusKind.DOWNLOADING, StatusKind.READY]
        assert engine.create.await_count == 3

    async def test_polling_stops_on_error(self):
        engine = make_mock_engine()
        engine.create.side_effect = [
            FakeSession(status="downloading", download_progress=0.1),
            RuntimeError("boom"),
        ]
        monitor = make_monitor(engine)
        await monitor.check()
        final = await monitor.wait_until_settled()
        assert final.status is StatusKind.ERROR
        assert monitor.polling is False

    async def test_repeated_check_keeps_single_poller(self):
        monitor = make_monitor(
            make_mock_engine(FakeSession(status="downloading", download_progress=0.3)),
            poll_interval=10,
        )
        await monitor.check()
        poller = monitor._poller
        await monitor.check()
        assert monitor._poller is poller
        monitor.stop()

    async def test_stop(self):
        monitor = make_monitor(
            make_mock_engine(FakeSession(status="downloading", download_progress=0.3))
        )
        await monitor.check()
        monitor.stop()
        assert monitor.polling is False
        assert (await monitor.wait_until_settled()).status is StatusKind.DOWNLOADING


# ========================================================================
# begin_download
# ========================================================================


class TestBeginDownload:
    async def test_reports_starting_then_polls_to_ready(self):
        engine = make_mock_engine()
        engine.create.side_effect = [FakeSession(), FakeSession(status="available")]
        monitor = make_monitor(engine)
        statuses = []
        monitor.subscribe(statuses.append)

        request = await monitor.begin_download()
        assert request.started is True
        assert statuses[0] == ModelStatus(StatusKind.DOWNLOADING, DOWNLOAD_STARTING_MESSAGE)

        final = await monitor.wait_until_settled()
        assert final.status is StatusKind.READY

    async def test_failed_start_still_polls(self):
        engine = make_mock_engine()
        engine.create.side_effect = [
            RuntimeError("requires a user gesture"),
            FakeSession(status="downloadable"),
        ]
        monitor = make_monitor(engine)
        request = await monitor.begin_download()
        assert request.started is False
        final = await monitor.wait_until_settled()
        assert final.status is StatusKind.DOWNLOADABLE
