# zbory/signing/scheduler.py

import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs `cycle` every `interval` seconds on a daemon thread.

    The stop event doubles as the sleep, so stop() interrupts a waiting
    worker immediately. A failing cycle is logged and the loop continues.
    """

    def __init__(self, cycle: Callable[[], object], interval: float, app=None):
        self.cycle = cycle
        self.interval = interval
        self.app = app
        self.cycles_run = 0
        self._stop = threading.Event()
        self.worker: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self.worker is not None and self.worker.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self.worker = threading.Thread(target=self._run, name='zbory-signing-sync')
        self.worker.daemon = True
        self.worker.start()
        logger.info("Signing synchronizer started (every %ss)", self.interval)

    def stop(self, timeout: Optional[float] = 5):
        self._stop.set()
        if self.worker is not None:
            self.worker.join(timeout)
            if self.worker.is_alive():
                logger.warning("Signing synchronizer did not stop within %ss", timeout)
            self.worker = None

    def run_once(self):
        try:
            if self.app is not None:
                with self.app.app_context():
                    self.cycle()
            else:
                self.cycle()
        except Exception:
            logger.exception("Signing sync cycle failed")
        finally:
            self.cycles_run += 1

    def _run(self):
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)
