"""JobController: owns the lifecycle of one remote job.

Responsibilities:
1. Submit the job through the remote client (at most once per controller).
2. Drive a background polling task until the job reaches a terminal state.
3. Publish every status transition to attached observers, in order.
4. Honor cooperative cancellation through a shared CancellationToken.
5. Resolve exactly one terminal JobOutcome (result, error or canceled).

State machine (see ALLOWED_TRANSITIONS):

    created -> submitting -> started <-> paused -> succeeded | failed
                                started | paused -> canceling_requested -> canceled

`submitting` is transient and not published. A terminal status the service
reports while cancellation is pending is honored as-is: cancellation only
takes effect before the next status request is issued, and is ignored once
the service has reported a terminal status. Snapshots are delivered through
a queue in transition order, so observers may call back into the controller.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
from collections import deque
from typing import Any, Awaitable, Callable, List, Optional

from gpjobs.core.cancellation import CancellationToken
from gpjobs.core.config import JobControllerConfig
from gpjobs.core.exceptions import (
    CommunicationError,
    InvalidStateError,
    JobCanceledError,
    JobError,
    ServiceError,
    SubmissionError,
)
from gpjobs.core.interfaces.observers import JobObserver
from gpjobs.core.interfaces.remote_job_client import RemoteJobClientPort
from gpjobs.core.interfaces.retry import RetryPort
from gpjobs.core.logging_config import job_id_var
from gpjobs.core.models.job import (
    IN_FLIGHT_STATUSES,
    FailureKind,
    Job,
    JobFailure,
    JobHandle,
    JobOutcome,
    JobParameters,
    JobSnapshot,
    JobStatus,
    ResultPayload,
    StatusSnapshot,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.created: frozenset({JobStatus.submitting}),
    JobStatus.submitting: frozenset({JobStatus.started, JobStatus.failed}),
    JobStatus.started: frozenset(
        {
            JobStatus.paused,
            JobStatus.succeeded,
            JobStatus.failed,
            JobStatus.canceling_requested,
            JobStatus.canceled,
        }
    ),
    JobStatus.paused: frozenset(
        {
            JobStatus.started,
            JobStatus.succeeded,
            JobStatus.failed,
            JobStatus.canceling_requested,
            JobStatus.canceled,
        }
    ),
    JobStatus.canceling_requested: frozenset(
        {JobStatus.succeeded, JobStatus.failed, JobStatus.canceled}
    ),
    JobStatus.succeeded: frozenset(),
    JobStatus.failed: frozenset(),
    JobStatus.canceled: frozenset(),
}


class JobController:
    """Drives one remote job from submission to a single terminal outcome.

    Attributes:
        config: Immutable configuration (poll interval, retry bound, timeouts)
    """

    def __init__(
        self,
        client: RemoteJobClientPort,
        config: Optional[JobControllerConfig] = None,
        retry_port: Optional[RetryPort] = None,  # None means single attempts
        token: Optional[CancellationToken] = None,
        observers: Optional[List[JobObserver]] = None,
    ) -> None:
        self._client = client
        self.config = config or JobControllerConfig()
        self._retry = retry_port
        self._token = token or CancellationToken()
        self._observers: List[JobObserver] = []
        for observer in observers or []:
            self.attach(observer)

        self._job = Job()
        self._handle: Optional[JobHandle] = None
        self._submitted = False
        self._outcome: Optional[JobOutcome] = None
        self._terminal = asyncio.Event()
        # Snapshots waiting for delivery, in transition order; one dispatcher at a time.
        self._pending: deque[JobSnapshot] = deque()
        self._dispatching = False
        # Set once the service reported a terminal status; cancellation no longer applies.
        self._terminal_observed = False
        self._poll_task: Optional[asyncio.Task] = None
        self._forced_stop = False
        self._remote_cancel_sent = False

    # ----------------- Read accessors -----------------
    @property
    def status(self) -> JobStatus:
        return self._job.status

    @property
    def job_id(self) -> Optional[str]:
        return self._job.id

    @property
    def token(self) -> CancellationToken:
        return self._token

    @property
    def done(self) -> bool:
        return self._terminal.is_set()

    @property
    def outcome(self) -> Optional[JobOutcome]:
        return self._outcome if self._terminal.is_set() else None

    def snapshot(self) -> JobSnapshot:
        return self._job.snapshot()

    # ----------------- Observers -----------------
    def attach(self, observer: JobObserver) -> None:
        """Subscribe to future transitions; past ones are not replayed."""
        if observer not in self._observers:
            self._observers.append(observer)

    def detach(self, observer: JobObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def _notify(self, snapshot: JobSnapshot) -> None:
        """Notify all observers in attach order, isolating their failures."""
        for observer in list(self._observers):
            try:
                await asyncio.wait_for(
                    observer.on_status_changed(snapshot), self.config.observer_timeout
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"[observer:timeout] on_status_changed exceeded {self.config.observer_timeout}s "
                    f"observer={type(observer).__name__} status={snapshot.status}"
                )
            except Exception as exc:
                logger.error(
                    f"[observer:error] on_status_changed failed observer={type(observer).__name__} "
                    f"status={snapshot.status} error={exc}"
                )

    # ----------------- Lifecycle operations -----------------
    async def submit(self, parameters: JobParameters) -> None:
        """Submit the job and start polling; returns once the submit request resolved.

        A rejected or unreachable submission does not raise: the job goes to
        `failed` and the failure is delivered to observers and `await_outcome`.
        """
        if self._submitted:
            raise InvalidStateError("submit() may only be called once per JobController")
        self._submitted = True

        logger.info(
            f"[job:submit] submitting mode={parameters.execution_mode} inputs={list(parameters.inputs.keys())}"
        )
        await self._transition(JobStatus.submitting, notify=False)

        try:
            handle = await self._call(self._client.submit, parameters)
        except (SubmissionError, CommunicationError, ServiceError) as exc:
            logger.warning(f"[job:submit] submission failed error={exc.message}")
            await self._finalize(
                JobStatus.failed,
                error=JobFailure(
                    kind=FailureKind.submission,
                    message=exc.message or "Submission failed",
                    diagnostic=exc.diagnostic,
                ),
            )
            return
        except Exception as exc:
            logger.error(f"[job:submit] unexpected exception error={exc!r}")
            await self._finalize(
                JobStatus.failed,
                error=JobFailure(
                    kind=FailureKind.submission,
                    message="Unexpected error while submitting job",
                    diagnostic=repr(exc),
                ),
            )
            return

        self._handle = handle
        self._job.id = handle.job_id
        logger.info(f"[job:submit] accepted remote job_id={handle.job_id}")
        await self._transition(JobStatus.started)
        self._start_polling(handle.job_id)

    async def cancel_requested(self) -> None:
        """Request cancellation of an in-flight job.

        No-op unless the job is started or paused and the service has not
        reported a terminal status yet. Sets the shared token before
        observers hear about it, so polling halts even if an observer or the
        cancel request itself is slow. Safe to call from an observer.
        """
        if not self._submitted:
            raise InvalidStateError("cancel_requested() called before submit()")
        if self._terminal_observed or self._job.status not in IN_FLIGHT_STATUSES:
            logger.debug(
                f"[job:cancel] ignored in status={self._job.status} terminal_observed={self._terminal_observed}"
            )
            return
        if not self._apply(JobStatus.canceling_requested):
            return
        self._token.cancel()
        await self._dispatch()
        await self._request_remote_cancel()

    async def await_outcome(self) -> JobOutcome:
        """Suspend until the job is terminal and return its outcome.

        Idempotent: every call after resolution returns the same object. If the
        token is set while waiting and the polling task has not resolved the job
        within `cancel_grace_period`, the task is stopped and the job resolves
        as canceled.
        """
        if not self._submitted:
            raise InvalidStateError("await_outcome() called before submit()")
        if self._terminal.is_set():
            return self._outcome

        terminal_wait = asyncio.ensure_future(self._terminal.wait())
        cancel_wait = asyncio.ensure_future(self._token.wait())
        try:
            await asyncio.wait({terminal_wait, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
            if not self._terminal.is_set():
                logger.debug("[job:await] cancellation observed while awaiting outcome")
                try:
                    await asyncio.wait_for(
                        asyncio.shield(terminal_wait), self.config.cancel_grace_period
                    )
                except asyncio.TimeoutError:
                    await self._force_stop()
                await self._terminal.wait()
        finally:
            for waiter in (terminal_wait, cancel_wait):
                if not waiter.done():
                    waiter.cancel()
        return self._outcome

    async def close(self) -> None:
        """Stop a still running polling task; the job resolves as canceled."""
        if self._poll_task is None or self._poll_task.done():
            return
        self._token.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(self._poll_task), self.config.cancel_grace_period)
        except asyncio.TimeoutError:
            await self._force_stop()

    async def __aenter__(self) -> "JobController":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    # ----------------- Transitions -----------------
    async def _transition(
        self,
        status: JobStatus,
        notify: bool = True,
        result: Optional[ResultPayload] = None,
        error: Optional[JobFailure] = None,
    ) -> bool:
        """Apply one status transition and publish it.

        Returns False when the transition no longer applies (job already terminal
        or already in that status). Raises InvalidStateError for transitions the
        state machine does not allow.
        """
        moved = self._apply(status, notify=notify, result=result, error=error)
        await self._dispatch()
        return moved

    def _apply(
        self,
        status: JobStatus,
        notify: bool = True,
        result: Optional[ResultPayload] = None,
        error: Optional[JobFailure] = None,
    ) -> bool:
        """Change the job state without awaiting; the snapshot is queued for delivery."""
        current = self._job.status
        if current.is_terminal or current == status:
            return False
        if status not in ALLOWED_TRANSITIONS[current]:
            raise InvalidStateError(f"Illegal job transition {current} -> {status}")

        self._job.status = status
        self._job.result = result if status == JobStatus.succeeded else None
        self._job.error = error if status == JobStatus.failed else None
        self._job.version += 1
        self._job.touch()
        logger.debug(f"[job:transition] {current} -> {status} version={self._job.version}")

        if status.is_terminal:
            self._outcome = JobOutcome.from_job(self._job)
        if notify:
            self._pending.append(self._job.snapshot())
        elif status.is_terminal:
            self._terminal.set()
        return True

    async def _dispatch(self) -> None:
        """Deliver queued snapshots in transition order.

        Only one dispatcher runs at a time. A transition made from inside an
        observer is queued and delivered by the running dispatcher once the
        current snapshot has reached every observer.
        """
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._pending:
                snapshot = self._pending.popleft()
                try:
                    await self._notify(snapshot)
                finally:
                    if snapshot.is_terminal:
                        self._terminal.set()
        finally:
            self._dispatching = False

    async def _finalize(
        self,
        status: JobStatus,
        result: Optional[ResultPayload] = None,
        error: Optional[JobFailure] = None,
    ) -> bool:
        finalized = await self._transition(status, result=result, error=error)
        if finalized:
            detail = f" error={error.message}" if error else ""
            logger.info(f"[job:done] status={status}{detail}")
        return finalized

    # ----------------- Remote calls -----------------
    async def _call(self, func: Callable[..., Awaitable[Any]], *args) -> Any:
        """Invoke a remote client method bounded by `request_timeout`."""
        timeout = self.config.request_timeout
        try:
            return await asyncio.wait_for(func(*args), timeout)
        except asyncio.TimeoutError:
            raise CommunicationError(
                f"{getattr(func, '__name__', 'remote call')} timed out after {timeout}s",
                job_id=self._job.id,
            )

    async def _with_retry(
        self, func: Callable[[], Awaitable[Any]], token: Optional[CancellationToken] = None
    ) -> Any:
        if self._retry is None:
            return await func()
        return await self._retry.execute(
            func,
            attempts=self.config.status_max_attempts,
            wait_initial=self.config.status_retry_base_wait,
            wait_max=self.config.status_retry_max_wait,
            exception_types=(CommunicationError,),
            token=token,
        )

    async def _request_remote_cancel(self) -> None:
        if self._remote_cancel_sent or self._handle is None:
            return
        self._remote_cancel_sent = True
        try:
            await self._call(self._client.cancel, self._handle)
            logger.info(f"[job:cancel] cancel requested remotely job_id={self._handle.job_id}")
        except Exception as exc:
            # Remote cancel is advisory; the job still resolves as canceled locally
            logger.warning(
                f"[job:cancel] remote cancel failed job_id={self._handle.job_id} error={exc}"
            )

    # ----------------- Polling -----------------
    def _start_polling(self, job_id: str) -> None:
        context = contextvars.copy_context()
        context.run(job_id_var.set, job_id)
        logger.debug(f"[job:poll] scheduling poll loop job_id={job_id}")
        self._poll_task = asyncio.create_task(self._poll_loop(), context=context)

    async def _poll_loop(self) -> None:
        """Poll remote status until terminal, canceled or stopped.

        Each iteration:
        1. Checks the token (cancellation before a request is issued)
        2. Fetches remote status with bounded retry
        3. Applies the snapshot (messages, transitions, terminal handling)
        4. Sleeps until the next poll, waking early on cancellation
        """
        try:
            while True:
                if self._token.cancelled:
                    await self._resolve_canceled()
                    return

                snapshot = await self._poll_once()
                if snapshot is None:
                    return

                if await self._process_snapshot(snapshot):
                    return

                await self._token.wait(self.config.poll_interval)
        except asyncio.CancelledError:
            logger.debug(f"[job:poll] poll task cancelled forced={self._forced_stop}")
            if self._forced_stop:
                # Stop requested by this controller; the cancellation ends here.
                asyncio.current_task().uncancel()
            await self._resolve_canceled()
            if not self._forced_stop:
                raise
        except Exception as exc:
            logger.error(f"[job:poll] unexpected exception error={exc!r}")
            await self._finalize(
                JobStatus.failed,
                error=JobFailure(
                    kind=FailureKind.service,
                    message="Unexpected error while polling job status",
                    diagnostic=repr(exc),
                ),
            )

    async def _poll_once(self) -> Optional[StatusSnapshot]:
        """Fetch one status snapshot; returns None when the job was resolved instead."""

        async def fetch() -> StatusSnapshot:
            if self._token.cancelled:
                raise JobCanceledError("Canceled before status request", job_id=self._job.id)
            return await self._call(self._client.fetch_status, self._handle)

        try:
            return await self._with_retry(fetch, token=self._token)
        except JobCanceledError:
            await self._resolve_canceled()
        except CommunicationError as exc:
            if self._token.cancelled:
                await self._resolve_canceled()
                return None
            attempts = self.config.status_max_attempts if self._retry is not None else 1
            logger.warning(
                f"[job:poll] status unavailable after {attempts} attempts error={exc.message}"
            )
            await self._finalize(
                JobStatus.failed,
                error=JobFailure(
                    kind=FailureKind.communication,
                    message=f"Lost contact with the service after {attempts} attempts: {exc.message}",
                    diagnostic=exc.diagnostic,
                ),
            )
        except JobError as exc:
            logger.warning(f"[job:poll] service error error={exc.message}")
            await self._finalize(JobStatus.failed, error=exc.to_failure())
        return None

    async def _process_snapshot(self, snapshot: StatusSnapshot) -> bool:
        """Apply a status snapshot. Returns True once the job is terminal."""
        if self._job.append_message(snapshot.latest_message):
            logger.debug(f"[job:poll] message={snapshot.latest_message}")

        remote = snapshot.status
        if remote.is_terminal:
            self._terminal_observed = True
        if remote == JobStatus.succeeded:
            await self._complete_success()
            return True
        if remote == JobStatus.failed:
            message = snapshot.error or snapshot.latest_message or "Remote job failed"
            await self._finalize(
                JobStatus.failed,
                error=JobFailure(kind=FailureKind.service, message=message),
            )
            return True
        if remote == JobStatus.canceled:
            await self._finalize(JobStatus.canceled)
            return True
        if remote in IN_FLIGHT_STATUSES and self._job.status in IN_FLIGHT_STATUSES:
            await self._transition(remote)
            return False

        logger.debug(f"[job:poll] ignoring remote status={remote} local status={self._job.status}")
        return False

    async def _complete_success(self) -> None:
        handle = self._handle
        if handle.immediate_result is not None:
            await self._finalize(JobStatus.succeeded, result=handle.immediate_result)
            return

        async def fetch() -> ResultPayload:
            return await self._call(self._client.fetch_result, handle)

        try:
            # No token here: a service-confirmed success is not overridden by a late cancel.
            result = await self._with_retry(fetch)
        except CommunicationError as exc:
            await self._finalize(
                JobStatus.failed,
                error=JobFailure(
                    kind=FailureKind.communication,
                    message=f"Result could not be retrieved: {exc.message}",
                    diagnostic=exc.diagnostic,
                ),
            )
            return
        except JobError as exc:
            logger.warning(f"[job:result] result fetch failed error={exc.message}")
            await self._finalize(JobStatus.failed, error=exc.to_failure())
            return
        await self._finalize(JobStatus.succeeded, result=result)

    async def _resolve_canceled(self) -> None:
        if self._job.status in IN_FLIGHT_STATUSES:
            await self._transition(JobStatus.canceling_requested)
            await self._request_remote_cancel()
        await self._finalize(JobStatus.canceled)

    async def _force_stop(self) -> None:
        task = self._poll_task
        if task is None or task.done():
            return
        if self._terminal_observed:
            # The service already finished the job; let the task record that outcome.
            logger.debug("[job:poll] terminal status observed; waiting for poll task to finish")
            await asyncio.gather(task, return_exceptions=True)
            return
        logger.warning("[job:poll] polling did not stop in time; cancelling poll task")
        self._forced_stop = True
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
