"""Cooperative cancellation handle shared between a caller and a dispatch."""

import asyncio
from collections.abc import Callable

import structlog

logger = structlog.get_logger()


class CancelToken:
    """One-shot cancellation signal.

    The owner calls ``cancel()``; whoever performs the work registers
    callbacks with ``on_cancel()`` to tear down its own primitives (e.g.
    cancelling the task that holds the HTTP stream open). Callbacks run
    synchronously inside ``cancel()``.
    """

    def __init__(self) -> None:
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("cancel_callback_failed")

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register a callback; runs immediately if already cancelled."""
        if self._cancelled:
            callback()
            return
        self._callbacks.append(callback)

    def bind_task(self, task: asyncio.Task) -> None:
        """Cancel the given task when this token is cancelled."""
        self.on_cancel(task.cancel)
