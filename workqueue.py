# workqueue.py
from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set, Tuple

from errors import ControllerError

logger = logging.getLogger(__name__)

Key = Tuple[str, str, str]  # (kind, namespace, name)


class WorkQueue:
    """Keyed work queue.

    - a key sits in the queue at most once;
    - a key handed to a worker is not handed out again until `done(key)`;
      re-adds in the meantime are remembered and queued on `done`;
    - `add_after` / `add_rate_limited` park keys until they are due.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._cond = threading.Condition()
        self._queue: Deque[Key] = deque()
        self._dirty: Set[Key] = set()
        self._processing: Set[Key] = set()
        self._waiting: List[Tuple[float, int, Key]] = []
        self._due: Dict[Key, float] = {}
        self._seq = itertools.count()
        self._failures: Dict[Key, int] = {}
        self._shutdown = False

    def _add_locked(self, key: Key) -> None:
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add(self, key: Key) -> None:
        with self._cond:
            self._add_locked(key)

    def add_after(self, key: Key, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            due = time.monotonic() + delay
            # only the earliest pending due time per key counts
            if key in self._due and self._due[key] <= due:
                return
            self._due[key] = due
            heapq.heappush(self._waiting, (due, next(self._seq), key))
            self._cond.notify_all()

    def add_rate_limited(self, key: Key) -> float:
        with self._cond:
            n = self._failures.get(key, 0)
            self._failures[key] = n + 1
        delay = min(self.base_delay * (2 ** n), self.max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: Key) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Key) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_due_locked(self) -> Optional[float]:
        """Move due keys into the queue; return seconds until the next one."""
        now = time.monotonic()
        while self._waiting and self._waiting[0][0] <= now:
            due, _, key = heapq.heappop(self._waiting)
            if self._due.get(key) != due:
                continue  # superseded
            del self._due[key]
            self._add_locked(key)
        if self._waiting:
            return self._waiting[0][0] - now
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[Key]:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    return key
                if self._shutdown:
                    return None
                wait = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: Key) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class Workers:
    """N threads draining a WorkQueue into `handler(key) -> Optional[requeue_seconds]`."""

    def __init__(self, queue: WorkQueue, handler: Callable[[Key], Optional[float]], count: int, stop_event: threading.Event):
        self.queue = queue
        self.handler = handler
        self.count = count
        self.stop_event = stop_event
        self._threads: List[threading.Thread] = []

    def process_one(self, key: Key) -> None:
        try:
            delay = self.handler(key)
        except ControllerError as e:
            if e.retryable:
                backoff = self.queue.add_rate_limited(key)
                logger.warning("[worker] %s failed (%s), retry in %.2fs", "/".join(k for k in key if k), e, backoff)
            else:
                self.queue.forget(key)
                logger.error("[worker] %s failed permanently: %s", "/".join(k for k in key if k), e)
        except Exception:
            backoff = self.queue.add_rate_limited(key)
            logger.exception("[worker] %s crashed, retry in %.2fs", "/".join(k for k in key if k), backoff)
        else:
            self.queue.forget(key)
            if delay:
                self.queue.add_after(key, delay)
        finally:
            self.queue.done(key)

    def _run(self) -> None:
        while not self.stop_event.is_set():
            key = self.queue.get(timeout=0.5)
            if key is None:
                continue
            self.process_one(key)

    def start(self) -> None:
        for i in range(self.count):
            t = threading.Thread(target=self._run, name=f"worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)

    def join(self, timeout: float = 5.0) -> None:
        for t in self._threads:
            t.join(timeout=timeout)
