"""
auth/audit.py -- Fire-and-forget activity logging.

ActivityRecorder hands each audit event to one long-lived worker thread
through a bounded queue.Queue. The request thread only builds the record and
calls put_nowait(); it never waits on the activity_logs table.

Delivery is at-most-once:
  - a full queue drops the new event (warning logged, caller unaffected)
  - a failed write is logged and the event discarded, never retried
  - events still queued when the process dies are lost

record() never raises. Tests call flush() to wait for the queue to drain
before asserting on stored activity.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import logging
import queue
import threading
import time

from auth.models import ActivityLog, utcnow

logger = logging.getLogger("tenantgate.audit")

_STOP = object()


class ActivityRecorder:
    """Bounded queue plus a single writer thread in front of store.create_activity()."""

    def __init__(self, store, maxsize: int = 1000) -> None:
        self._store = store
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._worker: threading.Thread | None = None
        self.dropped = 0
        self.failed = 0

    def start(self) -> "ActivityRecorder":
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(target=self._run, name="tenantgate-audit", daemon=True)
            self._worker.start()
        return self

    def record(
        self,
        action: str,
        tenant_id: str,
        *,
        resource_type: str = "user",
        user_id: str | None = None,
        resource_id: str | None = None,
        success: bool = True,
        error_message: str = "",
        session_id: str = "",
        old_values: dict | None = None,
        new_values: dict | None = None,
        ip_address: str = "",
        user_agent: str = "",
    ) -> bool:
        """Queue one activity entry. Returns False if it was dropped."""
        entry = ActivityLog(
            tenant_id=tenant_id,
            action=action,
            resource_type=resource_type,
            success=success,
            user_id=user_id,
            resource_id=resource_id,
            error_message=error_message,
            session_id=session_id,
            old_values=old_values,
            new_values=new_values,
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=utcnow(),
        )
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            self.dropped += 1
            logger.warning("audit queue full; dropped %s event for tenant %s", action, tenant_id)
            return False
        return True

    def flush(self, timeout: float = 5.0) -> bool:
        """Wait until every queued event has been processed. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        while self._queue.unfinished_tasks:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        """Drain outstanding events and stop the worker."""
        if self._worker is None:
            return
        self.flush(timeout)
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("audit worker did not accept stop signal")
            return
        self._worker.join(timeout)
        self._worker = None

    def _run(self) -> None:
        while True:
            entry = self._queue.get()
            try:
                if entry is _STOP:
                    return
                self._write(entry)
            finally:
                self._queue.task_done()

    def _write(self, entry: ActivityLog) -> None:
        try:
            self._store.create_activity(entry)
        except Exception as exc:  # noqa: BLE001 -- audit writes are best-effort
            self.failed += 1
            logger.error("audit write failed for %s: %s", entry.action, exc)
