from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from tradesim.data.exchange import ExchangeAPIError

LOGGER = logging.getLogger(__name__)


class TickScheduler:
    """Fixed-interval tick loop on a ``threading.Event``.

    Ticks never overlap: a tick requested while another one is still running is
    skipped, and slots missed because a tick overran the interval are skipped
    rather than queued. A failing tick is logged and the loop keeps going.
    ``start``/``stop`` only arm and disarm the loop between ticks.
    """

    def __init__(
        self,
        tick: Callable[[], object],
        interval_seconds: float,
        *,
        name: str = "tick-scheduler",
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._tick = tick
        self.interval_seconds = float(interval_seconds)
        self.name = name
        self._clock = clock
        self._stop_event = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.ticks_run = 0
        self.ticks_skipped = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> bool:
        """Run one tick unless another is in progress; returns whether it ran."""
        if not self._tick_lock.acquire(blocking=False):
            self.ticks_skipped += 1
            LOGGER.warning("%s: previous tick still running, skipping", self.name)
            return False
        try:
            self._tick()
            self.ticks_run += 1
        except ExchangeAPIError as exc:
            self.failures += 1
            LOGGER.error("%s: exchange API error: %s", self.name, exc)
        except Exception:
            self.failures += 1
            LOGGER.exception("%s: unhandled tick error", self.name)
        finally:
            self._tick_lock.release()
        return True

    def run_forever(self) -> None:
        next_at = self._clock()
        while not self._stop_event.is_set():
            self.run_once()
            next_at += self.interval_seconds
            now = self._clock()
            if now > next_at:
                missed = int((now - next_at) // self.interval_seconds) + 1
                self.ticks_skipped += missed
                LOGGER.warning(
                    "%s: tick overran the %.1fs interval, skipped %d tick(s)",
                    self.name,
                    self.interval_seconds,
                    missed,
                )
                next_at += missed * self.interval_seconds
            self._stop_event.wait(max(0.0, next_at - now))
        LOGGER.info("%s stopped after %d tick(s)", self.name, self.ticks_run)

    def start(self) -> None:
        if self.is_running:
            LOGGER.warning("%s already running", self.name)
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name=self.name, daemon=True)
        self._thread.start()
        LOGGER.info("%s started interval=%.1fs", self.name, self.interval_seconds)

    def stop(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until ``stop`` is called; True if it was."""
        return self._stop_event.wait(timeout)
