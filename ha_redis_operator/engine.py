"""
Reconciliation Engine

Dispatches resource keys to the reconciler registered for their kind:
- One deduplicating WorkQueue per kind with a bounded worker pool
- Strict per-key serialization: a key being processed is never handed to a
  second worker; re-adds while processing are deferred until it is done
- Requeue policy per error kind (backoff, parked, reduced frequency)
- Level-triggered resync at the interval the reconciler returns

"""

import asyncio
import logging
from typing import Optional, Dict, List, Set, Protocol

from .config import OperatorConfig
from .errors import CONFIGURATION, UNRECOVERABLE, OperatorError, classify
from .models import ResourceKey
from .retry import backoff_delay


class Reconciler(Protocol):
    """
    Reconciles one resource kind.

    ``reconcile`` returns the delay before the key should be reconciled
    again, or None to stop tracking it until the next change event.
    Failures are raised after being recorded in the resource's status.
    """

    async def reconcile(self, key: ResourceKey) -> Optional[float]: ...


class WorkQueue:
    """
    Deduplicating queue with per-key serialization.

    A key is either queued once, being processed, or both (dirty while
    processing); ``done`` re-queues a key that was re-added meanwhile.
    Delayed adds keep only the latest timer per key.
    """

    def __init__(self, name: str = "queue"):
        self.name = name
        self._queue: "asyncio.Queue[Optional[ResourceKey]]" = asyncio.Queue()
        self._dirty: Set[ResourceKey] = set()
        self._processing: Set[ResourceKey] = set()
        self._timers: Dict[ResourceKey, asyncio.TimerHandle] = {}
        self._shutdown = False

    def __len__(self) -> int:
        return self._queue.qsize()

    @property
    def processing(self) -> Set[ResourceKey]:
        return set(self._processing)

    def add(self, key: ResourceKey) -> None:
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def add_after(self, key: ResourceKey, delay: float) -> None:
        """Add ``key`` after ``delay`` seconds, replacing any pending timer."""
        if self._shutdown:
            return
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if delay <= 0:
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def forget(self, key: ResourceKey) -> None:
        """Cancel any pending delayed add of ``key``."""
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def pending_delay(self, key: ResourceKey) -> Optional[float]:
        timer = self._timers.get(key)
        if timer is None:
            return None
        return max(0.0, timer.when() - asyncio.get_running_loop().time())

    def _fire(self, key: ResourceKey) -> None:
        self._timers.pop(key, None)
        self.add(key)

    async def get(self) -> Optional[ResourceKey]:
        """Wait for the next key; returns None once the queue is shut down."""
        key = await self._queue.get()
        if key is None or self._shutdown:
            # Wake the next waiting worker as well
            self._queue.put_nowait(None)
            return None
        self._processing.add(key)
        self._dirty.discard(key)
        return key

    def done(self, key: ResourceKey) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._queue.put_nowait(key)

    async def shutdown(self) -> None:
        self._shutdown = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queue.put_nowait(None)


class ReconciliationEngine:
    """
    Runs registered reconcilers over their work queues.

    Args:
        config: Operator configuration (resync, backoff, timeouts)
        logger: Custom logger instance. Creates one if not provided.

    Usage::

        engine = ReconciliationEngine(config)
        engine.register(CLUSTER_KIND, cluster_reconciler, workers=4)
        engine.enqueue(ResourceKey(CLUSTER_KIND, "default", "cache"))
        await engine.run()
    """

    def __init__(self, config: Optional[OperatorConfig] = None, logger: Optional[logging.Logger] = None):
        self.config = config or OperatorConfig()
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._reconcilers: Dict[str, Reconciler] = {}
        self._workers: Dict[str, int] = {}
        self._queues: Dict[str, WorkQueue] = {}
        self._failures: Dict[ResourceKey, int] = {}
        self._tasks: List[asyncio.Task] = []
        self._stopped: Optional[asyncio.Event] = None

    def register(self, kind: str, reconciler: Reconciler, workers: int = 1) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self._reconcilers[kind] = reconciler
        self._workers[kind] = workers

    def queue(self, kind: str) -> WorkQueue:
        queue = self._queues.get(kind)
        if queue is None:
            queue = WorkQueue(kind)
            self._queues[kind] = queue
        return queue

    def enqueue(self, key: ResourceKey) -> None:
        """Schedule ``key`` for immediate reconciliation (change event)."""
        if key.kind not in self._reconcilers:
            self.logger.debug(f"No reconciler for {key.kind}, ignoring {key}")
            return
        queue = self.queue(key.kind)
        queue.forget(key)
        queue.add(key)

    def failures(self, key: ResourceKey) -> int:
        return self._failures.get(key, 0)

    async def start(self) -> None:
        """Spawn the worker tasks for every registered kind."""
        if self._tasks:
            return
        self._stopped = asyncio.Event()
        for kind, reconciler in self._reconcilers.items():
            queue = self.queue(kind)
            for i in range(self._workers[kind]):
                task = asyncio.create_task(
                    self._worker(kind, queue, reconciler), name=f"{kind}-worker-{i}"
                )
                self._tasks.append(task)
        self.logger.info(
            "Engine started: "
            + ", ".join(f"{kind}={count}" for kind, count in self._workers.items())
        )

    async def run(self) -> None:
        """Start the workers and block until ``shutdown``."""
        await self.start()
        await self._stopped.wait()

    async def shutdown(self) -> None:
        """Stop accepting work and cancel the workers cooperatively."""
        for queue in self._queues.values():
            await queue.shutdown()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        self._queues.clear()
        if self._stopped is not None:
            self._stopped.set()
        self.logger.info("Engine stopped")

    async def _worker(self, kind: str, queue: WorkQueue, reconciler: Reconciler) -> None:
        while True:
            key = await queue.get()
            if key is None:
                return
            try:
                await self.process(key, reconciler, queue)
            finally:
                queue.done(key)

    async def process(self, key: ResourceKey, reconciler: Reconciler, queue: WorkQueue) -> None:
        """Run one reconcile of ``key`` and apply the requeue policy."""
        try:
            requeue = await asyncio.wait_for(
                reconciler.reconcile(key), timeout=self.config.reconcile_timeout
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._requeue_failed(key, classify(e), queue)
            return

        self._failures.pop(key, None)
        if requeue is None:
            queue.forget(key)
            return
        queue.add_after(key, requeue)

    def _requeue_failed(self, key: ResourceKey, error: OperatorError, queue: WorkQueue) -> None:
        if error.kind == CONFIGURATION:
            self._failures.pop(key, None)
            queue.forget(key)
            self.logger.error(f"{key} has an invalid spec, waiting for a change: {error.message}")
            return

        if error.kind == UNRECOVERABLE:
            self._failures.pop(key, None)
            delay = self.config.unrecoverable_interval
            self.logger.error(f"{key} unrecoverable, retrying in {delay:.0f}s: {error.message}")
        else:
            attempt = self._failures.get(key, 0)
            self._failures[key] = attempt + 1
            delay = backoff_delay(self.config.backoff_base, attempt, self.config.backoff_cap)
            self.logger.warning(
                f"Reconcile of {key} failed ({error.kind}, attempt {attempt + 1}), "
                f"retrying in {delay:.2f}s: {error.message}"
            )
        queue.add_after(key, delay)
