# src/peerlink/scheduler.py
"""
Clocks and periodic tasks.

Every component that sleeps or reads time takes a Clock so tests can drive
time by hand (ManualClock) instead of sleeping for real.

PeriodicTask runs `fn` on its own daemon thread every `interval_s` until
stop(); it waits on a threading.Event so stop() returns promptly.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional, Protocol, runtime_checkable

from peerlink.net.net_logging import log_event

log = logging.getLogger("peerlink.scheduler")


@runtime_checkable
class Clock(Protocol):
    def now_ms(self) -> int: ...
    def sleep(self, seconds: float) -> None: ...


class SystemClock:
    def now_ms(self) -> int:
        return int(time.time() * 1000)

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)


class ManualClock:
    """Deterministic clock for tests. sleep() advances time instantly."""

    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self._now = int(start_ms)
        self._lock = threading.Lock()
        self.slept: list[float] = []

    def now_ms(self) -> int:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += int(round(seconds * 1000))

    def sleep(self, seconds: float) -> None:
        self.slept.append(float(seconds))
        if seconds > 0:
            self.advance(seconds)


class PeriodicTask:
    """Cancellable fixed-interval task on a daemon thread.

    Exceptions raised by `fn` are logged and the schedule continues.
    """

    def __init__(
        self,
        *,
        name: str,
        interval_s: float,
        fn: Callable[[], None],
        initial_delay_s: Optional[float] = None,
    ) -> None:
        if interval_s <= 0:
            raise ValueError("interval_s must be > 0")
        self.name = str(name)
        self.interval_s = float(interval_s)
        self.initial_delay_s = float(interval_s if initial_delay_s is None else initial_delay_s)
        self._fn = fn
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    def start(self) -> None:
        if self._thread is not None:
            return
        # Each run owns its stop event.
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._run, args=(self._stop,), name=f"peerlink-{self.name}", daemon=True
        )
        self._thread.start()

    def stop(self, timeout_s: float = 5.0) -> None:
        """Stop the schedule. A stopped task may be started again."""
        self._stop.set()
        t = self._thread
        if t is not None and t is not threading.current_thread():
            t.join(timeout=timeout_s)
        self._thread = None

    @property
    def running(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive() and not self._stop.is_set()

    def run_once(self) -> None:
        try:
            self._fn()
        except Exception as e:
            log_event(log, "periodic_task_error", level=logging.WARNING, task=self.name, error=repr(e))
        finally:
            self.runs += 1

    def _run(self, stop: threading.Event) -> None:
        if stop.wait(self.initial_delay_s):
            return
        while not stop.is_set():
            self.run_once()
            if stop.wait(self.interval_s):
                return
