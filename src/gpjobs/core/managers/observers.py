"""Concrete observer implementations for job status transitions.

This module provides ready-made observers that handle:
- Status history recording
- Console/log reporting of transitions and service messages
- Adapting plain callables (sync or async) to the observer protocol
- Busy indicator toggling for presentation layers
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

from gpjobs.core.models.job import JobSnapshot, JobStatus

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[JobSnapshot], Union[None, Awaitable[None]]]


class StatusHistoryObserver:
    """Records every snapshot it receives, in delivery order."""

    def __init__(self) -> None:
        self.history: List[JobSnapshot] = []

    async def on_status_changed(self, snapshot: JobSnapshot) -> None:
        self.history.append(snapshot)
        logger.debug(f"[observer:history] recorded status={snapshot.status} version={snapshot.version}")

    @property
    def statuses(self) -> List[JobStatus]:
        return [s.status for s in self.history]

    @property
    def terminal(self) -> Optional[JobSnapshot]:
        terminal = [s for s in self.history if s.is_terminal]
        return terminal[-1] if terminal else None


class LoggingObserver:
    """Reports transitions the way an operator console would.

    Success and failure get a dedicated line; any other status reports the
    latest service message.
    """

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._log = log or logger

    async def on_status_changed(self, snapshot: JobSnapshot) -> None:
        job_id = snapshot.id or "-"  # no id when submission failed
        if snapshot.status == JobStatus.succeeded:
            self._log.info(f"[observer:log] job {job_id} is complete")
        elif snapshot.status == JobStatus.failed:
            reason = snapshot.error.message if snapshot.error else "unknown error"
            self._log.warning(f"[observer:log] unable to run job {job_id}: {reason}")
        elif snapshot.status == JobStatus.canceled:
            self._log.info(f"[observer:log] job {job_id} was canceled")
        else:
            self._log.info(
                f"[observer:log] job {job_id} status={snapshot.status} "
                f"message={snapshot.latest_message or '-'}"
            )


class CallbackObserver:
    """Adapts a plain function (sync or async) taking a JobSnapshot."""

    def __init__(self, callback: SnapshotCallback) -> None:
        self._callback = callback

    async def on_status_changed(self, snapshot: JobSnapshot) -> None:
        outcome = self._callback(snapshot)
        if inspect.isawaitable(outcome):
            await outcome

    def __eq__(self, other: Any) -> bool:
        return isinstance(other, CallbackObserver) and other._callback == self._callback

    def __hash__(self) -> int:
        return hash(self._callback)


class BusyStateObserver:
    """Calls `on_busy_changed(True)` once the job is in flight and `False` when it ends.

    Repeated statuses do not re-trigger the callback.
    """

    def __init__(self, on_busy_changed: Callable[[bool], Any]) -> None:
        self._on_busy_changed = on_busy_changed
        self._busy = False

    async def on_status_changed(self, snapshot: JobSnapshot) -> None:
        busy = not snapshot.is_terminal
        if busy == self._busy:
            return
        self._busy = busy
        outcome = self._on_busy_changed(busy)
        if inspect.isawaitable(outcome):
            await outcome
