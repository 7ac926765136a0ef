from typing import Protocol, Any, Awaitable, Callable


class RetryPort(Protocol):
    """Abstract retry interface for async remote calls.

    Implementations provide bounded retry with backoff for transient failures.
    The contract keeps the controller decoupled from a specific library.
    """

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:  # pragma: no cover - protocol
        """Execute an async callable with retry semantics.

        Args:
            func: Async callable returning a result.
            *args/**kwargs: Passed to the callable.
            Supported kw overrides (optional): attempts, wait_initial, wait_max,
            exception_types, token (a CancellationToken that stops retrying
            and interrupts backoff sleeps once set).
        Returns:
            Result of the successful invocation.
        Raises:
            Propagates last exception after exhausting attempts.
        """
        ...
