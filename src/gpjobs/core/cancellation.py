"""Cooperative, set-once cancellation signal.

A token is shared between the caller and a JobController. The caller (or a
deadline timer) sets it; the controller's polling loop and `await_outcome`
observe it. Setting is one-way and idempotent; reading is free.

The token binds lazily to the event loop that first awaits it. `cancel()`
may be called from any thread (e.g. a GUI thread); it hops onto the owning
loop with `call_soon_threadsafe` when needed.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    def __init__(self) -> None:
        self._cancelled = False
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._event: Optional[asyncio.Event] = None
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Set the token. Returns True only for the call that actually set it."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()
            loop, event = self._loop, self._event

        if event is not None and loop is not None:
            if _running_loop() is loop:
                event.set()
            elif not loop.is_closed():
                loop.call_soon_threadsafe(event.set)

        for callback in callbacks:
            self._run_callback(callback)
        return True

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run `callback` once the token is set (immediately if it already is)."""
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        self._run_callback(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    async def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until the token is set or `timeout` elapses. Returns `cancelled`."""
        if self._cancelled:
            return True
        event = self._ensure_event()
        if timeout is None:
            await event.wait()
            return True
        try:
            await asyncio.wait_for(event.wait(), timeout)
        except asyncio.TimeoutError:
            pass
        return self._cancelled

    def cancel_after(self, delay: float) -> asyncio.TimerHandle:
        """Compose a deadline: set the token after `delay` seconds on the running loop."""
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, self.cancel)

    def _ensure_event(self) -> asyncio.Event:
        loop = asyncio.get_running_loop()
        with self._lock:
            if self._event is None:
                self._loop = loop
                self._event = asyncio.Event()
                if self._cancelled:
                    self._event.set()
            elif self._loop is not loop:
                raise RuntimeError("CancellationToken is bound to a different event loop")
            return self._event

    @staticmethod
    def _run_callback(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception as exc:
            logger.error(f"[token:error] cancellation callback failed callback={callback!r} error={exc}")

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None
