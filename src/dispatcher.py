"""
Work Dispatcher - De-duplicating work queue and reconcile workers.

Delivers "object X may have changed" triggers to the reconciliation engine:

- a key is processed by at most one worker at a time
- adding a key that is already queued is a no-op; adding a key that is
  being processed re-queues it once the current pass is done
- failed passes are retried with per-key exponential backoff and jitter
"""

import asyncio
import logging
import random
from collections import deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

from objects import ObjectKey
from reconciler import ReconcileResult

logger = logging.getLogger(__name__)

ReconcileFn = Callable[[ObjectKey], Awaitable[ReconcileResult]]


class WorkQueue:
    """Queue of object keys with per-key exclusivity and rate limiting."""

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 300.0,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor

        self._queue: Deque[ObjectKey] = deque()
        # Keys waiting to be handed out (dirty), including those that will be
        # re-queued when their current pass finishes.
        self._dirty: Set[ObjectKey] = set()
        self._processing: Set[ObjectKey] = set()
        self._failures: Dict[ObjectKey, int] = {}
        self._timers: Dict[ObjectKey, asyncio.TimerHandle] = {}
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def add(self, key: ObjectKey) -> None:
        """Mark a key as needing reconciliation."""
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._wakeup.set()

    def add_after(self, key: ObjectKey, delay: float) -> None:
        """
        Add a key after a delay.

        If the key is already waiting on a timer, the earlier deadline wins.
        """
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        loop = asyncio.get_running_loop()
        deadline = loop.time() + delay
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= deadline:
                return
            existing.cancel()

        self._timers[key] = loop.call_at(deadline, self._fire_timer, key)

    def _fire_timer(self, key: ObjectKey) -> None:
        self._timers.pop(key, None)
        self.add(key)

    def add_rate_limited(self, key: ObjectKey) -> float:
        """
        Add a key after its backoff delay and count the failure.

        Returns:
            The delay applied, in seconds.
        """
        failures = self._failures.get(key, 0)
        self._failures[key] = failures + 1
        delay = self.backoff_delay(failures)
        self.add_after(key, delay)
        return delay

    def backoff_delay(self, failures: int) -> float:
        """Exponential backoff capped at max_delay, with ±jitter_factor jitter."""
        delay = min(self.base_delay * (2 ** min(failures, 30)), self.max_delay)
        jitter = random.uniform(-self.jitter_factor, self.jitter_factor)
        return delay * (1 + jitter)

    def forget(self, key: ObjectKey) -> None:
        """Reset the failure count of a key."""
        self._failures.pop(key, None)

    def num_requeues(self, key: ObjectKey) -> int:
        return self._failures.get(key, 0)

    async def get(self) -> Optional[ObjectKey]:
        """
        Wait for the next key to process.

        Returns:
            The key, or None once the queue is shut down.
        """
        while True:
            if self._shutting_down:
                return None
            if self._queue:
                key = self._queue.popleft()
                self._dirty.discard(key)
                self._processing.add(key)
                return key
            self._wakeup.clear()
            await self._wakeup.wait()

    def done(self, key: ObjectKey) -> None:
        """Mark a key as processed; re-queue it if it was added meanwhile."""
        self._processing.discard(key)
        if key in self._dirty and not self._shutting_down:
            self._queue.append(key)
            self._wakeup.set()

    def shutdown(self) -> None:
        """Stop handing out keys and wake every waiting worker."""
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._wakeup.set()


class Dispatcher:
    """
    Runs worker tasks that feed queued keys to a reconcile function.

    Outcomes map onto the queue: success forgets the key's failures,
    requeue_after schedules a delayed re-run and failures back off.
    """

    def __init__(self, queue: WorkQueue, reconcile_fn: ReconcileFn, workers: int = 5):
        self.queue = queue
        self.reconcile_fn = reconcile_fn
        self.workers = workers
        self._tasks: List[asyncio.Task] = []

    async def run(self) -> None:
        """Run the workers until the queue is shut down."""
        self._tasks = [
            asyncio.create_task(self._worker(i)) for i in range(self.workers)
        ]
        logger.info(f"Started {self.workers} reconcile workers")
        try:
            # Workers cancelled by stop() must not fail the others
            await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            self._tasks = []

    async def stop(self) -> None:
        """Shut the queue down and cancel workers still in a pass."""
        self.queue.shutdown()
        for task in self._tasks:
            if not task.done():
                task.cancel()

    async def _worker(self, index: int) -> None:
        while True:
            key = await self.queue.get()
            if key is None:
                logger.debug(f"Worker {index} exiting")
                return
            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: ObjectKey) -> None:
        """Run one reconcile pass for ``key`` and requeue as needed."""
        try:
            result = await self.reconcile_fn(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(
                f"Error reconciling {key}, retrying in {delay:.1f}s: {e}",
                exc_info=True,
            )
            return

        if not result.success:
            delay = self.queue.add_rate_limited(key)
            logger.warning(
                f"Reconcile of {key} failed, retrying in {delay:.1f}s: "
                f"{result.message}"
            )
        elif result.requeue_after is not None:
            self.queue.forget(key)
            self.queue.add_after(key, result.requeue_after)
        else:
            self.queue.forget(key)
