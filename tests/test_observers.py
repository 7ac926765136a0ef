"""Unit tests for job status observers.

Each observer is tested independently against hand-built snapshots.
"""

import logging
from datetime import datetime, timezone

import pytest

from gpjobs.core.interfaces.observers import JobObserver
from gpjobs.core.managers.observers import (
    BusyStateObserver,
    CallbackObserver,
    LoggingObserver,
    StatusHistoryObserver,
)
from gpjobs.core.models.job import FailureKind, JobFailure, JobSnapshot, JobStatus, ResultPayload


# --- Test Fixtures ---

def make_snapshot(status, messages=(), version=1, **kwargs):
    return JobSnapshot(
        id="job-42",
        status=status,
        messages=tuple(messages),
        created=datetime.now(timezone.utc),
        version=version,
        **kwargs,
    )


@pytest.fixture
def started():
    return make_snapshot(JobStatus.started, ["Executing"], version=2)


@pytest.fixture
def succeeded():
    return make_snapshot(JobStatus.succeeded, version=3, result=ResultPayload(layer_url="R1"))


@pytest.fixture
def failed():
    return make_snapshot(
        JobStatus.failed,
        version=3,
        error=JobFailure(kind=FailureKind.service, message="ERROR 000735"),
    )


class TestStatusHistoryObserver:
    @pytest.mark.asyncio
    async def test_records_in_delivery_order(self, started, succeeded):
        observer = StatusHistoryObserver()

        await observer.on_status_changed(started)
        await observer.on_status_changed(succeeded)

        assert observer.statuses == [JobStatus.started, JobStatus.succeeded]
        assert observer.terminal is succeeded

    def test_no_terminal_before_completion(self):
        assert StatusHistoryObserver().terminal is None

    def test_implements_protocol(self):
        assert isinstance(StatusHistoryObserver(), JobObserver)
        assert isinstance(LoggingObserver(), JobObserver)


class TestLoggingObserver:
    @pytest.mark.asyncio
    async def test_reports_latest_message(self, started, caplog):
        with caplog.at_level(logging.INFO, logger="gpjobs"):
            await LoggingObserver().on_status_changed(started)

        assert "status=started message=Executing" in caplog.text

    @pytest.mark.asyncio
    async def test_reports_completion(self, succeeded, caplog):
        with caplog.at_level(logging.INFO, logger="gpjobs"):
            await LoggingObserver().on_status_changed(succeeded)

        assert "job job-42 is complete" in caplog.text

    @pytest.mark.asyncio
    async def test_reports_failure_as_warning(self, failed, caplog):
        with caplog.at_level(logging.INFO, logger="gpjobs"):
            await LoggingObserver().on_status_changed(failed)

        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        assert "unable to run job job-42: ERROR 000735" in record.getMessage()

    @pytest.mark.asyncio
    async def test_failed_submission_has_placeholder_id(self, caplog):
        rejected = JobSnapshot(
            id=None,
            status=JobStatus.failed,
            created=datetime.now(timezone.utc),
            version=2,
            error=JobFailure(kind=FailureKind.submission, message="Invalid query"),
        )
        with caplog.at_level(logging.INFO, logger="gpjobs"):
            await LoggingObserver().on_status_changed(rejected)

        message = caplog.records[-1].getMessage()
        assert "unable to run job -: Invalid query" in message
        assert "None" not in message

    @pytest.mark.asyncio
    async def test_uses_injected_logger(self, succeeded, caplog):
        custom = logging.getLogger("gpjobs.tests.console")
        with caplog.at_level(logging.INFO, logger="gpjobs.tests.console"):
            await LoggingObserver(custom).on_status_changed(succeeded)

        assert caplog.records[-1].name == "gpjobs.tests.console"


class TestCallbackObserver:
    @pytest.mark.asyncio
    async def test_sync_callback(self, started):
        seen = []
        await CallbackObserver(seen.append).on_status_changed(started)
        assert seen == [started]

    @pytest.mark.asyncio
    async def test_async_callback(self, started):
        seen = []

        async def record(snapshot):
            seen.append(snapshot.status)

        await CallbackObserver(record).on_status_changed(started)
        assert seen == [JobStatus.started]

    def test_equality_follows_callback(self):
        def callback(snapshot):
            pass

        assert CallbackObserver(callback) == CallbackObserver(callback)
        assert len({CallbackObserver(callback), CallbackObserver(callback)}) == 1


class TestBusyStateObserver:
    @pytest.mark.asyncio
    async def test_toggles_on_in_flight_and_off_at_end(self, started, succeeded):
        changes = []
        observer = BusyStateObserver(changes.append)
        paused = make_snapshot(JobStatus.paused, version=3)

        await observer.on_status_changed(started)
        await observer.on_status_changed(paused)
        await observer.on_status_changed(succeeded)

        assert changes == [True, False]

    @pytest.mark.asyncio
    async def test_failed_submission_never_turns_busy(self, failed):
        changes = []
        await BusyStateObserver(changes.append).on_status_changed(failed)
        assert changes == []

    @pytest.mark.asyncio
    async def test_async_callback_is_awaited(self, started):
        changes = []

        async def on_busy(busy):
            changes.append(busy)

        await BusyStateObserver(on_busy).on_status_changed(started)
        assert changes == [True]
