"""Observer protocol for job status transitions.

Observers decouple presentation side effects (busy indicators, console
reporting, UI updates) from the job controller. The controller calls every
attached observer once per status transition, in transition order, and ends
with exactly one terminal notification carrying either the result or the error.
"""

from typing import Protocol, runtime_checkable

from gpjobs.core.models.job import JobSnapshot


@runtime_checkable
class JobObserver(Protocol):
    """Receives read-only job snapshots on every status change.

    Implementations must not block for long: the polling loop awaits each
    observer (bounded by the controller's observer timeout) before it
    continues. Exceptions raised here are logged and otherwise ignored.
    Any thread-affinity requirement (e.g. a GUI main thread) is the
    observer's own business.
    """

    async def on_status_changed(self, snapshot: JobSnapshot) -> None:
        """Called after the job moved to `snapshot.status`.

        Args:
            snapshot: Immutable copy of the job at the moment of the transition
        """
        ...
