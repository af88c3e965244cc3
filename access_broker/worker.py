# access_broker/worker.py
"""
Background grant-retry worker.

Every GRANT_RETRY_INTERVAL_SECONDS it asks the engine to retry due grant
obligations. A failing pass is logged and the loop carries on; obligations are
never dropped, only rescheduled.
"""

import threading
from typing import Optional

from access_broker import monitoring


class GrantRetryWorker:
    def __init__(self, engine, interval_seconds: float = 15.0, batch_size: Optional[int] = None):
        self.engine = engine
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        try:
            fulfilled = self.engine.retry_pending_grants(self.batch_size)
        except Exception:
            monitoring.logger.exception("Grant retry pass failed")
            return 0
        if fulfilled:
            monitoring.logger.info("Grant retry pass", extra={"fulfilled": fulfilled})
        return fulfilled

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="grant-retry", daemon=True)
        self._thread.start()
        monitoring.logger.info("Grant retry worker started", extra={"interval_seconds": self.interval_seconds})

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()
