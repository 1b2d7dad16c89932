from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, wait
from typing import TypeVar

from task_market.errors import CallTimeout, TaskCancelled

T = TypeVar("T")

_POLL_S = 0.05


class CancelToken:
    """Cooperative cancellation flag shared by one task's calls."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled by requester") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TaskCancelled(self._reason or "cancelled")

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


def _start_daemon(fn: Callable[[], T], *, name: str) -> Future[T]:
    future: Future[T] = Future()

    def _run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except BaseException as exc:
            future.set_exception(exc)

    # Daemon threads: an abandoned (timed-out) call must not block shutdown.
    threading.Thread(target=_run, name=name, daemon=True).start()
    return future


def call_with_deadline(
    fn: Callable[[], T],
    *,
    timeout_s: float | None,
    token: CancelToken | None = None,
    label: str = "call",
) -> T:
    """Run ``fn`` on its own thread and wait at most ``timeout_s`` for it.

    Raises CallTimeout when the deadline passes and TaskCancelled when the
    token fires first. In both cases the call is abandoned, not joined.
    Exceptions raised by ``fn`` propagate unchanged.
    """
    if token is not None:
        token.raise_if_cancelled()

    future = _start_daemon(fn, name=f"tm_{label}")
    deadline = None if timeout_s is None or timeout_s <= 0 else time.monotonic() + timeout_s

    while True:
        slice_s = _POLL_S
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                future.cancel()
                raise CallTimeout(label, float(timeout_s or 0.0))
            slice_s = min(slice_s, remaining)
        done, _ = wait([future], timeout=slice_s, return_when=FIRST_COMPLETED)
        if done:
            return future.result()
        if token is not None and token.cancelled:
            future.cancel()
            token.raise_if_cancelled()
