import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, Type

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.stop import stop_base

from gpjobs.core.cancellation import CancellationToken
from gpjobs.core.exceptions import CommunicationError

logger = logging.getLogger(__name__)


class stop_when_cancelled(stop_base):
    """Stop retrying once the cancellation token is set."""

    def __init__(self, token: CancellationToken) -> None:
        self.token = token

    def __call__(self, retry_state: RetryCallState) -> bool:
        return self.token.cancelled


class TenacityRetryAdapter:
    """Tenacity-based retry adapter implementing RetryPort.

    Exponential backoff for async callables. Only `exception_types` are retried
    (CommunicationError by default); anything else propagates on first raise.
    Call-time kwargs override the defaults (attempts, wait_initial, wait_max,
    exception_types). Passing `token=` makes the backoff sleep wake up and the
    retrying stop as soon as the token is set.
    """

    def __init__(
        self,
        attempts: int = 5,
        wait_initial: float = 0.5,
        wait_max: float = 8.0,
        exception_types: Sequence[Type[Exception]] = (CommunicationError,),
    ) -> None:
        self.attempts = attempts
        self.wait_initial = wait_initial
        self.wait_max = wait_max
        self.exception_types = tuple(exception_types)

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        attempts = kwargs.pop("attempts", self.attempts)
        wait_initial = kwargs.pop("wait_initial", self.wait_initial)
        wait_max = kwargs.pop("wait_max", self.wait_max)
        exception_types = tuple(kwargs.pop("exception_types", self.exception_types))
        token: Optional[CancellationToken] = kwargs.pop("token", None)

        stop = stop_after_attempt(attempts)
        sleep = asyncio.sleep
        if token is not None:
            stop = stop | stop_when_cancelled(token)

            async def sleep(seconds: float) -> None:
                await token.wait(seconds)

        retrying = AsyncRetrying(
            stop=stop,
            wait=wait_exponential(multiplier=wait_initial, max=wait_max),
            retry=retry_if_exception_type(exception_types),
            before_sleep=self._log_before_sleep,
            sleep=sleep,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await func(*args, **kwargs)

    @staticmethod
    def _log_before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.debug(
            f"[retry] attempt={retry_state.attempt_number} failed error={exc}; retrying in {wait:.2f}s"
        )
