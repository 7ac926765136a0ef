"""Lightweight port implementations shared by the controller tests.

These implement `RemoteJobClientPort` for real (no mocks) so the controller is
exercised against realistic behavior without a network.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Union

from gpjobs.core.interfaces.remote_job_client import RemoteJobClientPort
from gpjobs.core.models.job import (
    Extent,
    JobHandle,
    JobParameters,
    JobStatus,
    ResultPayload,
    StatusSnapshot,
)

# A scripted status step: a snapshot, an exception to raise, or an async callable
# producing either (used to hold a request in flight).
Step = Union[StatusSnapshot, Exception, Callable[[], Awaitable[StatusSnapshot]]]


def snapshot(status: JobStatus, message: Optional[str] = None, error: Optional[str] = None) -> StatusSnapshot:
    return StatusSnapshot(status=status, latest_message=message, error=error)


def result_payload(layer_url: str = "R1") -> ResultPayload:
    return ResultPayload(
        layer_url=layer_url,
        extent=Extent(xmin=-13_000_000, ymin=4_000_000, xmax=-12_900_000, ymax=4_100_000, wkid=3857),
        outputs={"Output_Features": {"features": []}},
    )


class ScriptedRemoteJobClient(RemoteJobClientPort):
    """Replays scripted status steps; once exhausted, repeats `default`."""

    def __init__(
        self,
        steps: Optional[List[Step]] = None,
        default: Optional[Step] = None,
        result: Optional[Union[ResultPayload, Callable[[], Awaitable[ResultPayload]]]] = None,
        submit_error: Optional[Exception] = None,
        result_error: Optional[Exception] = None,
        cancel_error: Optional[Exception] = None,
        handle: Optional[JobHandle] = None,
    ):
        self._steps = list(steps or [])
        self._default = default if default is not None else snapshot(JobStatus.started)
        self._result = result or result_payload()
        self._submit_error = submit_error
        self._result_error = result_error
        self._cancel_error = cancel_error
        self._handle = handle or JobHandle(job_id="job-1", status_url="http://service.test/jobs/job-1")
        self.submit_calls: List[JobParameters] = []
        self.status_calls = 0
        self.result_calls = 0
        self.cancel_calls: List[JobHandle] = []

    async def __aenter__(self):  # pragma: no cover trivial
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):  # pragma: no cover trivial
        return False

    async def close(self) -> None:  # pragma: no cover trivial
        pass

    async def submit(self, parameters: JobParameters) -> JobHandle:
        self.submit_calls.append(parameters)
        if self._submit_error is not None:
            raise self._submit_error
        return self._handle

    async def fetch_status(self, handle: JobHandle) -> StatusSnapshot:
        self.status_calls += 1
        step = self._steps.pop(0) if self._steps else self._default
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return await step()
        return step

    async def fetch_result(self, handle: JobHandle) -> ResultPayload:
        self.result_calls += 1
        if self._result_error is not None:
            raise self._result_error
        if callable(self._result):
            return await self._result()
        return self._result

    async def cancel(self, handle: JobHandle) -> None:
        self.cancel_calls.append(handle)
        if self._cancel_error is not None:
            raise self._cancel_error


class HeldResponse:
    """Async step that blocks until `release()`; `entered` is set once the request is in flight.

    Works for status steps and for the scripted result.
    """

    def __init__(self, response: Union[StatusSnapshot, ResultPayload]):
        self.response = response
        self.entered = asyncio.Event()
        self._released = asyncio.Event()

    def release(self) -> None:
        self._released.set()

    async def __call__(self) -> Union[StatusSnapshot, ResultPayload]:
        self.entered.set()
        await self._released.wait()
        return self.response


async def wait_until(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
    """Spin the loop until `predicate()` is truthy."""

    async def _spin() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_spin(), timeout)
