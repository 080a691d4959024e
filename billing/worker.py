"""Background job worker for rollover, invoice hand-off and customer notices."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

JobHandler = Callable[[Dict[str, Any]], Any]

_STOP = object()


class BillingWorker:
    """Runs queued jobs on a single daemon thread.

    Jobs are ``(name, payload)`` pairs dispatched to handlers registered by
    name. A failing job is logged and dropped; the periodic rollover closes
    the periods and re-queues the draft invoices it left behind.
    """

    def __init__(self, *, name: str = "billing-worker") -> None:
        self._name = name
        self._handlers: Dict[str, JobHandler] = {}
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def register(self, job: str, handler: JobHandler) -> None:
        self._handlers[job] = handler

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()
        logger.info("Billing worker started")

    def stop(self, timeout: float = 10.0) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            self._queue.put(_STOP)
            thread.join(timeout)
            if thread.is_alive():
                logger.warning("Billing worker did not stop within %.1fs", timeout)
            self._thread = None
        logger.info("Billing worker stopped")

    def enqueue(self, job: str, payload: Optional[Dict[str, Any]] = None) -> None:
        if job not in self._handlers:
            raise ValueError(f"No handler registered for job {job!r}.")
        self._queue.put((job, dict(payload or {})))

    def join(self) -> None:
        """Block until every queued job has been processed."""

        self._queue.join()

    def run_pending(self) -> int:
        """Process queued jobs on the calling thread. Used when the thread is not started."""

        processed = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return processed
            try:
                if item is not _STOP:
                    self._execute(*item)
                    processed += 1
            finally:
                self._queue.task_done()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._execute(*item)
            finally:
                self._queue.task_done()

    def _execute(self, job: str, payload: Dict[str, Any]) -> None:
        handler = self._handlers[job]
        try:
            handler(payload)
        except Exception:  # noqa: BLE001 - keep the worker alive, job is retried by the next sweep
            logger.exception("Billing job %s failed (payload=%s)", job, payload)


def log_trial_notice(payload: Dict[str, Any]) -> None:
    """Default notice sink until a notification channel is wired in."""

    logger.info(
        "Trial for subscription %s (organization %s) ends at %s",
        payload.get("subscription_id"),
        payload.get("organization_id"),
        payload.get("trial_ends_at"),
    )
