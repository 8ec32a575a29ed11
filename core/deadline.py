"""
core/deadline.py -- Caller-supplied deadlines for blocking store and cache calls.

Every Credential Store and Shared Cache Store call may block on I/O. The HTTP
layer creates one Deadline per request; the services run each store call on a
shared worker pool and wait at most deadline.remaining() for it. A call that
does not finish in time raises DeadlineExceeded. The caller is released at the
deadline; the worker thread finishes (or fails) in the background and its
result is discarded.

Usage:
    executor = BoundedExecutor(workers=8)
    user = executor.call(store.get_user, user_id, deadline=Deadline(2.0))
    executor.shutdown()

Layer rule: core/ is the kernel. No imports from api/, auth/, or cache/.
"""

from __future__ import annotations

import concurrent.futures
import time
from collections.abc import Callable
from typing import TypeVar

from core.errors import DeadlineExceeded

T = TypeVar("T")


class Deadline:
    """An absolute point on the monotonic clock after which callers give up."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        self._expires_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._expires_at

    def __repr__(self) -> str:
        return f"Deadline(remaining={self.remaining():.3f}s)"


class BoundedExecutor:
    """Runs blocking calls on a worker pool and bounds the caller's wait.

    With deadline=None the call runs inline on the caller's thread; there is
    nothing to bound and a pool hop would only add latency.
    """

    def __init__(self, workers: int = 8) -> None:
        self._pool = concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="tenantgate-store")
        self._shutdown = False

    def call(self, fn: Callable[..., T], *args, deadline: Deadline | None = None, **kwargs) -> T:
        if deadline is None:
            return fn(*args, **kwargs)
        if deadline.expired:
            raise DeadlineExceeded(f"deadline expired before {getattr(fn, '__name__', 'call')} started")
        future = self._pool.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=deadline.remaining())
        except concurrent.futures.TimeoutError as exc:
            future.cancel()
            raise DeadlineExceeded(
                f"{getattr(fn, '__name__', 'call')} did not complete within {deadline.seconds:.2f}s"
            ) from exc

    def shutdown(self, wait: bool = True) -> None:
        if self._shutdown:
            return
        self._shutdown = True
        self._pool.shutdown(wait=wait, cancel_futures=not wait)
