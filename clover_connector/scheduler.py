# Scheduler - cancellable timers and the single dispatch thread of the connector
# Socket events, heartbeat/discovery/reconnect timers and completions all run here

import heapq
import itertools
import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Timer:
    """Handle for a scheduled callback"""

    def __init__(self, deadline: float, callback: Callable, args: tuple,
                 interval: Optional[float] = None):
        self.deadline = deadline
        self.callback = callback
        self.args = args
        self.interval = interval
        self.cancelled = False

    def cancel(self):
        self.cancelled = True

    @property
    def repeating(self) -> bool:
        return self.interval is not None


class _BaseScheduler:
    """Deadline-ordered heap shared by the threaded and the manual scheduler"""

    def __init__(self):
        self._heap = []
        self._seq = itertools.count()

    def now(self) -> float:
        raise NotImplementedError

    def call_later(self, delay: float, callback: Callable, *args) -> Timer:
        timer = Timer(self.now() + max(delay, 0.0), callback, args)
        self._push(timer)
        return timer

    def call_soon(self, callback: Callable, *args) -> Timer:
        return self.call_later(0.0, callback, *args)

    def call_every(self, interval: float, callback: Callable, *args,
                   first_delay: Optional[float] = None) -> Timer:
        """Run callback every interval seconds until the timer is cancelled"""
        if interval <= 0:
            raise ValueError("interval must be positive")
        delay = interval if first_delay is None else max(first_delay, 0.0)
        timer = Timer(self.now() + delay, callback, args, interval=interval)
        self._push(timer)
        return timer

    def _push(self, timer: Timer):
        heapq.heappush(self._heap, (timer.deadline, next(self._seq), timer))

    def _run_timer(self, timer: Timer):
        if timer.cancelled:
            return
        if timer.repeating:
            # Rescheduled first so the callback may cancel it
            timer.deadline += timer.interval
            self._push(timer)
        try:
            timer.callback(*timer.args)
        except Exception:
            logger.exception(f"Scheduled callback {getattr(timer.callback, '__name__', timer.callback)} failed")


class ThreadScheduler(_BaseScheduler):
    """Runs callbacks on one worker thread"""

    def __init__(self, name: str = 'clover-scheduler'):
        super().__init__()
        self.name = name
        self._condition = threading.Condition()
        self.running = False
        self.thread = None

    def now(self) -> float:
        return time.monotonic()

    def start(self):
        with self._condition:
            if self.running:
                return
            self.running = True
        self.thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self.thread.start()
        logger.debug("Scheduler started")

    def stop(self, timeout: float = 2.0):
        with self._condition:
            self.running = False
            self._condition.notify_all()
        if self.thread and self.thread.is_alive() and threading.current_thread() is not self.thread:
            self.thread.join(timeout=timeout)
        logger.debug("Scheduler stopped")

    def in_scheduler_thread(self) -> bool:
        return threading.current_thread() is self.thread

    def _push(self, timer: Timer):
        with self._condition:
            super()._push(timer)
            self._condition.notify()

    def _next_due(self) -> Optional[Timer]:
        with self._condition:
            while self.running:
                if not self._heap:
                    self._condition.wait()
                    continue
                delay = self._heap[0][0] - self.now()
                if delay <= 0:
                    return heapq.heappop(self._heap)[2]
                self._condition.wait(delay)
            return None

    def _loop(self):
        while True:
            timer = self._next_due()
            if timer is None:
                break
            self._run_timer(timer)


class ManualScheduler(_BaseScheduler):
    """Deterministic scheduler for tests: virtual clock, callbacks run on the caller's thread"""

    def __init__(self, start: float = 0.0):
        super().__init__()
        self._clock = start
        self._dispatching = False

    def now(self) -> float:
        return self._clock

    def start(self):
        pass

    def stop(self, timeout: float = 2.0):
        pass

    def in_scheduler_thread(self) -> bool:
        return True

    def call_soon(self, callback: Callable, *args) -> Timer:
        timer = super().call_soon(callback, *args)
        # Nested calls are queued and drained by the outer dispatch
        if not self._dispatching:
            self.run_pending()
        return timer

    def run_pending(self):
        self._run_until(self._clock)

    def advance(self, seconds: float):
        target = self._clock + seconds
        self._run_until(target)
        self._clock = max(self._clock, target)

    def pending_count(self) -> int:
        return sum(1 for _, _, timer in self._heap if not timer.cancelled)

    def _run_until(self, target: float):
        if self._dispatching:
            return
        self._dispatching = True
        try:
            while self._heap and self._heap[0][0] <= target:
                deadline, _, timer = heapq.heappop(self._heap)
                if deadline > self._clock:
                    self._clock = deadline
                self._run_timer(timer)
        finally:
            self._dispatching = False
