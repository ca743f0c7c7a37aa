"""
Cooperative cancellation shared by the batch runner, the subtitle pipeline,
subprocess jobs and HTTP providers.

A token wraps a threading.Event.  Long-running calls register an abort
callback (kill a process, close an HTTP session) so cancelling reaches the
blocked call instead of only stopping the caller from waiting on it.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Callable, Optional

from clipscribe.core.error_codes import OperationCancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Thread-safe, one-shot cancellation flag with abort callbacks."""

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_id = 0
        self._detach_parent: Callable[[], None] = lambda: None
        if parent is not None:
            self._detach_parent = parent.register(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        """Fire the token; callbacks run once, on the cancelling thread."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.warning("Cancellation callback failed: %s", e)

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to `timeout` seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self, message: str = "Operation cancelled"):
        if self._event.is_set():
            raise OperationCancelled(message)

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Register an abort callback.  Runs immediately if already cancelled.
        Returns a function that unregisters it.
        """
        with self._lock:
            if not self._event.is_set():
                handle = self._next_id
                self._next_id += 1
                self._callbacks[handle] = callback

                def unregister():
                    with self._lock:
                        self._callbacks.pop(handle, None)

                return unregister

        callback()
        return lambda: None

    @contextmanager
    def on_cancel(self, callback: Callable[[], None]):
        """Scope an abort callback to a `with` block."""
        unregister = self.register(callback)
        try:
            yield self
        finally:
            unregister()

    def detach(self):
        """Stop following the parent token once a child's work is done."""
        self._detach_parent()

    def child(self) -> "CancellationToken":
        """A token cancelled with this one, but cancellable on its own."""
        return CancellationToken(parent=self)


def ensure_token(token: CancellationToken | None) -> CancellationToken:
    return token if token is not None else CancellationToken()
