"""Debounced scheduling for coalescing bursts of mutations into one export."""

import logging
import threading
import time
from collections.abc import Callable

log = logging.getLogger(__name__)


class Debouncer:
    """Runs action once after `delay` seconds with no further trigger() calls.

    The timer can be driven two ways: start() spawns a single worker thread
    that fires when due, or callers poll fire_if_due() themselves (tests
    pass a fake clock and never sleep).
    """

    def __init__(
        self,
        delay: float,
        action: Callable[[], object],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.delay = delay
        self.action = action
        self.clock = clock
        self._deadline: float | None = None
        self._cond = threading.Condition()
        self._thread: threading.Thread | None = None
        self._stopping = False
        self.fire_count = 0

    @property
    def pending(self) -> bool:
        with self._cond:
            return self._deadline is not None

    @property
    def deadline(self) -> float | None:
        with self._cond:
            return self._deadline

    def trigger(self) -> None:
        """Arm the timer, or push the deadline back if already armed."""
        with self._cond:
            self._deadline = self.clock() + self.delay
            self._cond.notify_all()
        log.debug("Debounce armed, fires in %.2fs", self.delay)

    def cancel(self) -> bool:
        """Drop a pending action. Returns whether one was pending."""
        with self._cond:
            was_pending = self._deadline is not None
            self._deadline = None
            self._cond.notify_all()
        return was_pending

    def fire_if_due(self) -> bool:
        """Run the action if the deadline has passed. Returns whether it ran."""
        with self._cond:
            if self._deadline is None or self.clock() < self._deadline:
                return False
            self._deadline = None
        self._run()
        return True

    def flush(self) -> bool:
        """Run a pending action immediately. Returns whether one was pending."""
        with self._cond:
            if self._deadline is None:
                return False
            self._deadline = None
        self._run()
        return True

    def _run(self) -> None:
        """Run the action, re-arming the timer if it raises so the work is retried."""
        self.fire_count += 1
        log.debug("Debounce fired (%d)", self.fire_count)
        try:
            self.action()
        except Exception:
            with self._cond:
                if self._deadline is None:
                    self._deadline = self.clock() + self.delay
                    self._cond.notify_all()
            raise

    def start(self) -> None:
        """Start the background worker thread."""
        with self._cond:
            if self._thread is not None:
                return
            self._stopping = False
            self._thread = threading.Thread(target=self._worker, name="beads-debounce", daemon=True)
            self._thread.start()

    def stop(self, flush: bool = True) -> None:
        """Stop the worker; run or drop any pending action."""
        with self._cond:
            thread = self._thread
            self._stopping = True
            self._thread = None
            self._cond.notify_all()
        if thread is not None:
            thread.join()
        if flush:
            self.flush()
        else:
            self.cancel()

    def _worker(self) -> None:
        while True:
            with self._cond:
                while not self._stopping:
                    if self._deadline is None:
                        self._cond.wait()
                        continue
                    remaining = self._deadline - self.clock()
                    if remaining <= 0:
                        break
                    self._cond.wait(timeout=remaining)
                if self._stopping:
                    return
            try:
                self.fire_if_due()
            except Exception:
                log.exception("Debounced action failed")
