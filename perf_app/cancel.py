"""
Cancellation tokens.

A :class:`CancelToken` is passed explicitly into every blocking call of the
harness (requests, stream reads, retry waits, worker pools).  Cancelling it
runs the registered callbacks, which is how in-flight HTTP responses get
closed and how waiters get woken up.  Tokens form a tree: cancelling a
parent cancels every child created with :meth:`CancelToken.child`.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from perf_app.errors import CancellationError

logger = logging.getLogger(__name__)


class CancelToken:
    """One-shot cancellation signal with callbacks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_id = 0

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        """Fire the token.  Calling it again is a no-op."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback %r failed", callback)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register *callback* to run when the token fires.

        The callback runs immediately (in the calling thread) when the token
        is already cancelled.

        Returns:
            A function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                handle = self._next_id
                self._next_id += 1
                self._callbacks[handle] = callback

                def unregister() -> None:
                    with self._lock:
                        self._callbacks.pop(handle, None)

                return unregister

        callback()
        return lambda: None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationError("operation cancelled")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the token fires or *timeout* passes."""
        return self._event.wait(timeout)

    def wait_for(self, event: threading.Event) -> None:
        """
        Block until *event* is set.

        Raises:
            CancellationError: If the token fires first.
        """
        unregister = self.on_cancel(event.set)
        try:
            event.wait()
        finally:
            unregister()
        self.raise_if_cancelled()

    def sleep(self, seconds: float) -> None:
        """Like ``time.sleep`` but raises ``CancellationError`` when cancelled."""
        if self._event.wait(seconds):
            raise CancellationError("operation cancelled")

    def child(self) -> CancelToken:
        """Return a token that is cancelled together with this one."""
        token = CancelToken()
        unregister = self.on_cancel(token.cancel)
        token.on_cancel(unregister)
        return token

