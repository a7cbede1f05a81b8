"""
Background expiry sweep
Optional; lazy expiry on read already keeps decisions correct
"""

import threading
from typing import Optional
import structlog

from .manager import ConsentLifecycleManager
from ..exceptions import StorageUnavailableError

logger = structlog.get_logger(__name__)


class ExpirySweeper:
    """Periodically flips past-due grants to EXPIRED on a daemon thread"""

    def __init__(self, lifecycle: ConsentLifecycleManager, interval_seconds: float = 300.0):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.lifecycle = lifecycle
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        """Run one sweep; returns how many grants were expired"""
        try:
            return self.lifecycle.expire_stale_grants()
        except StorageUnavailableError as e:
            logger.warning("Expiry sweep failed", error=e.message)
            return 0

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="consent-expiry-sweeper",
                                        daemon=True)
        self._thread.start()
        logger.info("Expiry sweeper started", interval_seconds=self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Expiry sweeper stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.run_once()
