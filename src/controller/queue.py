from __future__ import annotations

import heapq
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from src.common.errors import ReconcileError

from .reconciler import ReconcileResult

logger = logging.getLogger(__name__)

Handler = Callable[[str], ReconcileResult]


class WorkQueue:
    """De-duplicating delay queue with per-key exponential backoff.

    A key being processed is never handed out again until ``done`` is called;
    re-adds during processing are remembered and scheduled afterwards.
    """

    def __init__(
        self,
        backoff_base: float = 1.0,
        backoff_max: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._clock = clock
        self._lock = threading.Lock()
        self._due: Dict[str, float] = {}
        self._heap: List[Tuple[float, str]] = []
        self._failures: Dict[str, int] = {}
        self._processing: Set[str] = set()
        self._dirty: Dict[str, float] = {}

    def add(self, key: str, delay: float = 0.0) -> None:
        with self._lock:
            due = self._clock() + max(0.0, delay)
            if key in self._processing:
                self._dirty[key] = min(due, self._dirty.get(key, due))
                return
            self._schedule(key, due)

    def _schedule(self, key: str, due: float) -> None:
        current = self._due.get(key)
        if current is not None and current <= due:
            return
        self._due[key] = due
        heapq.heappush(self._heap, (due, key))

    def pop_ready(self) -> Optional[str]:
        with self._lock:
            now = self._clock()
            while self._heap:
                due, key = self._heap[0]
                if self._due.get(key) != due:
                    heapq.heappop(self._heap)
                    continue
                if due > now:
                    return None
                heapq.heappop(self._heap)
                del self._due[key]
                self._processing.add(key)
                return key
            return None

    def next_delay(self) -> Optional[float]:
        with self._lock:
            if not self._due:
                return None
            return max(0.0, min(self._due.values()) - self._clock())

    def backoff(self, failures: int) -> float:
        return min(self.backoff_base * (2 ** max(0, failures - 1)), self.backoff_max)

    def done(self, key: str, result: Optional[ReconcileResult] = None, error: Optional[BaseException] = None) -> None:
        with self._lock:
            self._processing.discard(key)
            now = self._clock()
            if error is not None:
                failures = self._failures.get(key, 0) + 1
                self._failures[key] = failures
                self._schedule(key, now + self.backoff(failures))
            else:
                self._failures.pop(key, None)
                if result is not None and result.requeue_after > 0:
                    self._schedule(key, now + result.requeue_after)
            dirty = self._dirty.pop(key, None)
            if dirty is not None:
                self._schedule(key, dirty)

    def failures(self, key: str) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._due)


def process_ready(queue: WorkQueue, handler: Handler) -> int:
    """Run the handler for every key that is due now; return how many ran."""

    processed = 0
    while True:
        key = queue.pop_ready()
        if key is None:
            return processed
        processed += 1
        try:
            result = handler(key)
        except ReconcileError as exc:
            logger.error("Reconcile of %s failed: %s; retrying in %.1fs", key, exc, queue.backoff(queue.failures(key) + 1))
            queue.done(key, error=exc)
            continue
        except Exception as exc:
            logger.exception("Reconcile of %s raised unexpectedly; retrying in %.1fs", key, queue.backoff(queue.failures(key) + 1))
            queue.done(key, error=exc)
            continue
        queue.done(key, result=result)


__all__ = ["WorkQueue", "process_ready"]
