import threading
from typing import Callable, Optional

from engine.utils import get_logger

log = get_logger("scheduler.monitor")


class CompletionMonitor:
    """
    Background polling loop.

    Calls `poll` every `interval` seconds until stopped. Polling runs
    outside the scheduler lock, so a slow provider call never blocks
    admission of other tasks.
    """

    def __init__(self, poll: Callable[[], int], interval: float, name: str = "cumulus-monitor"):
        self._poll = poll
        self._interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._name = name

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        log.debug(f"Monitor started (every {self._interval:.2f}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._poll()
            except Exception:
                # keep monitoring the remaining tasks
                log.exception("Polling pass failed")
