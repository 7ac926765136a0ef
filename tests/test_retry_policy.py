"""Retry of transient failures: TenacityRetryAdapter and its use by the controller."""

import asyncio

import pytest

from gpjobs.adapters.retry_tenacity import TenacityRetryAdapter
from gpjobs.core.cancellation import CancellationToken
from gpjobs.core.config import JobControllerConfig
from gpjobs.core.exceptions import CommunicationError, ServiceError
from gpjobs.core.managers.job_controller import JobController
from gpjobs.core.managers.observers import StatusHistoryObserver
from gpjobs.core.models.job import FailureKind, JobParameters, JobStatus

from fakes import ScriptedRemoteJobClient, snapshot


class FlakyCall:
    """Async callable failing `failures` times before returning `value`."""

    def __init__(self, failures: int, error: Exception, value: str = "ok"):
        self.failures = failures
        self.error = error
        self.value = value
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


@pytest.fixture
def adapter():
    return TenacityRetryAdapter(attempts=3, wait_initial=0.01, wait_max=0.02)


@pytest.fixture
def parameters():
    return JobParameters(inputs={"Query": "1=1"})


class TestTenacityRetryAdapter:
    @pytest.mark.asyncio
    async def test_returns_after_transient_failures(self, adapter):
        call = FlakyCall(failures=2, error=CommunicationError("reset by peer"))

        assert await adapter.execute(call) == "ok"
        assert call.calls == 3

    @pytest.mark.asyncio
    async def test_reraises_after_last_attempt(self, adapter):
        call = FlakyCall(failures=10, error=CommunicationError("reset by peer"))

        with pytest.raises(CommunicationError):
            await adapter.execute(call)
        assert call.calls == 3

    @pytest.mark.asyncio
    async def test_non_transient_error_is_not_retried(self, adapter):
        call = FlakyCall(failures=10, error=ServiceError("job not found", upstream_status=404))

        with pytest.raises(ServiceError):
            await adapter.execute(call)
        assert call.calls == 1

    @pytest.mark.asyncio
    async def test_call_time_overrides(self, adapter):
        call = FlakyCall(failures=10, error=ValueError("bad"))

        with pytest.raises(ValueError):
            await adapter.execute(call, attempts=5, exception_types=(ValueError,))
        assert call.calls == 5

    @pytest.mark.asyncio
    async def test_passes_arguments_through(self, adapter):
        async def add(a, b, scale=1):
            return (a + b) * scale

        assert await adapter.execute(add, 1, 2, scale=10) == 30

    @pytest.mark.asyncio
    async def test_token_interrupts_backoff(self):
        slow = TenacityRetryAdapter(attempts=10, wait_initial=5.0, wait_max=5.0)
        call = FlakyCall(failures=10, error=CommunicationError("unreachable"))
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)

        with pytest.raises(CommunicationError):
            await asyncio.wait_for(slow.execute(call, token=token), 1)
        # One attempt before the cancelled sleep, at most one after it
        assert call.calls <= 2

    @pytest.mark.asyncio
    async def test_set_token_stops_after_first_failure(self, adapter):
        token = CancellationToken()
        token.cancel()
        call = FlakyCall(failures=10, error=CommunicationError("unreachable"))

        with pytest.raises(CommunicationError):
            await adapter.execute(call, token=token)
        assert call.calls == 1


class TestControllerRetry:
    @pytest.fixture
    def config(self):
        return JobControllerConfig(
            poll_interval=0.01,
            status_max_attempts=3,
            status_retry_base_wait=0.01,
            status_retry_max_wait=0.02,
            request_timeout=1.0,
        )

    @pytest.mark.asyncio
    async def test_transient_errors_are_invisible_to_observers(self, config, parameters):
        history = StatusHistoryObserver()
        client = ScriptedRemoteJobClient(
            steps=[
                CommunicationError("reset"),
                CommunicationError("reset"),
                snapshot(JobStatus.started, "Executing"),
                CommunicationError("reset"),
                snapshot(JobStatus.succeeded),
            ]
        )
        controller = JobController(
            client, config=config, retry_port=TenacityRetryAdapter(), observers=[history]
        )

        await controller.submit(parameters)
        outcome = await asyncio.wait_for(controller.await_outcome(), 2)

        assert outcome.succeeded
        assert history.statuses == [JobStatus.started, JobStatus.succeeded]
        assert client.status_calls == 5

    @pytest.mark.asyncio
    async def test_exhausted_retries_fail_with_communication_error(self, config, parameters):
        client = ScriptedRemoteJobClient(default=CommunicationError("connection refused"))
        controller = JobController(client, config=config, retry_port=TenacityRetryAdapter())

        await controller.submit(parameters)
        outcome = await asyncio.wait_for(controller.await_outcome(), 2)

        assert outcome.failed
        assert outcome.error.kind == FailureKind.communication
        assert "3 attempts" in outcome.error.message
        assert client.status_calls == 3

    @pytest.mark.asyncio
    async def test_without_retry_port_first_error_is_fatal(self, config, parameters):
        client = ScriptedRemoteJobClient(default=CommunicationError("connection refused"))
        controller = JobController(client, config=config)

        await controller.submit(parameters)
        outcome = await asyncio.wait_for(controller.await_outcome(), 2)

        assert outcome.error.kind == FailureKind.communication
        assert client.status_calls == 1

    @pytest.mark.asyncio
    async def test_slow_status_request_times_out_and_is_retried(self, parameters):
        config = JobControllerConfig(
            poll_interval=0.01,
            status_max_attempts=3,
            status_retry_base_wait=0.01,
            status_retry_max_wait=0.02,
            request_timeout=0.05,
        )

        async def stalled():
            await asyncio.sleep(5)
            return snapshot(JobStatus.started)

        client = ScriptedRemoteJobClient(steps=[stalled, snapshot(JobStatus.succeeded)])
        controller = JobController(client, config=config, retry_port=TenacityRetryAdapter())

        await controller.submit(parameters)
        outcome = await asyncio.wait_for(controller.await_outcome(), 2)

        assert outcome.succeeded
        assert client.status_calls == 2
