"""
StatusPoller -- background status reconciliation.

Contract:
    Calls ``IssuanceService.poll_pending()`` every ``interval_seconds`` on a
    daemon thread of its own, independent of request threads.

Invariants enforced:
    - A failing run never stops the loop.
    - Graceful shutdown: stop() signals the loop and waits for the current
      run to finish.
"""

from __future__ import annotations

import threading

from dte_kernel.logging_config import get_logger
from dte_services.issuance_service import IssuanceService

logger = get_logger("services.status_poller")


class StatusPoller:
    """In-process polling loop for submissions awaiting an outcome.

    Non-goals:
        - NOT a distributed scheduler; run one poller per deployment or
          accept duplicate (idempotent) status queries.
    """

    def __init__(self, service: IssuanceService, interval_seconds: float | None = None):
        self._service = service
        self._interval = (
            interval_seconds
            if interval_seconds is not None
            else service.config.polling.interval_seconds
        )
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def interval_seconds(self) -> float:
        return self._interval

    def run_once(self) -> int:
        """One polling pass (public for testing). Returns the number of checks run."""
        try:
            return len(self._service.poll_pending())
        except Exception:
            logger.exception("status_poll_run_failed")
            return 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="dte-status-poller",
            daemon=True,
        )
        self._thread.start()
        logger.info("status_poller_started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("status_poller_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(timeout=self._interval)
