# concurrency.py
# SPDX-License-Identifier: MIT
"""Bounded worker pool, its manager, and the wave runner used by readers.

:class:`WorkerPool` is a thread pool with a core size that can be changed
at runtime, a fixed-capacity work queue, and a caller-runs overflow
policy: when the queue is full and no more threads may be started, the
submitting thread executes the task itself. That keeps submission from
growing memory without bound and pushes back on whoever is producing work.

:class:`ResourcePoolManager` owns sizing, periodic resizing and shutdown,
and never shuts down a pool it did not create.
"""
from __future__ import annotations

import itertools
import os
import queue
import threading
import time
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import CancelledError, Executor, Future, wait
from dataclasses import dataclass
from typing import Any, TypeVar

from .config import PoolConfig
from .log import get_logger, job_logger

log = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_POLL_S = 0.05
DEFAULT_CORE_SIZE = 2
DEFAULT_MAX_SIZE = 4
DEFAULT_QUEUE_CAPACITY = 100


@dataclass(frozen=True)
class PoolSizing:
    """Resolved, immutable worker pool bounds.

    Attributes:
        core_size (int): Threads kept alive while idle.
        max_size (int): Upper bound on threads.
        queue_capacity (int): Tasks that may wait for a thread before the
            caller-runs policy applies.
        keep_alive_s (float): Idle time after which threads above the core
            size exit.
    """
    core_size: int
    max_size: int
    queue_capacity: int
    keep_alive_s: float


def resolve_pool_sizing(cfg: PoolConfig, *, cpu_count: int | None = None) -> PoolSizing:
    """Clamp configured pool bounds to the available parallelism.

    Non-positive settings fall back to the defaults (core 2, max 4,
    queue 100). Both sizes are capped at the CPU count and core never
    exceeds max.
    """
    cpus = max(1, cpu_count or os.cpu_count() or 1)
    max_size = min(cfg.max_size if cfg.max_size > 0 else DEFAULT_MAX_SIZE, cpus)
    max_size = max(1, max_size)
    core_size = min(cfg.core_size if cfg.core_size > 0 else DEFAULT_CORE_SIZE, max_size)
    core_size = max(1, core_size)
    capacity = cfg.queue_capacity if cfg.queue_capacity > 0 else DEFAULT_QUEUE_CAPACITY
    return PoolSizing(
        core_size=core_size,
        max_size=max_size,
        queue_capacity=capacity,
        keep_alive_s=max(0.0, float(cfg.keep_alive_s)),
    )


class _Task:
    __slots__ = ("future", "fn", "args", "kwargs")

    def __init__(self, future: Future, fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
        self.future = future
        self.fn = fn
        self.args = args
        self.kwargs = kwargs

    def run(self) -> None:
        if not self.future.set_running_or_notify_cancel():
            return
        try:
            result = self.fn(*self.args, **self.kwargs)
        except BaseException as exc:  # noqa: BLE001
            self.future.set_exception(exc)
        else:
            self.future.set_result(result)


class WorkerPool:
    """Thread pool with a resizable core and caller-runs overflow.

    Submission order: start a new thread while below the core size,
    otherwise queue the task; if the queue is full start a thread while
    below the max size, otherwise run the task in the calling thread.

    Attributes:
        sizing (PoolSizing): Bounds the pool was created with.
        cancel_event (threading.Event): Set by a forced shutdown. Workers
            then cancel tasks they dequeue instead of running them, and
            tasks such as file reads poll it to stop between rows.
        caller_runs (int): Number of tasks executed by submitting threads.
    """

    def __init__(self, sizing: PoolSizing, *, name_prefix: str = "tabmerge-worker") -> None:
        self.sizing = sizing
        self.name_prefix = name_prefix
        self.cancel_event = threading.Event()
        self.caller_runs = 0
        self.completed = 0
        self._queue: queue.Queue[_Task] = queue.Queue(maxsize=sizing.queue_capacity)
        self._lock = threading.Lock()
        self._core_size = sizing.core_size
        self._threads: set[threading.Thread] = set()
        self._active = 0
        self._shutdown = False
        self._names = itertools.count(1)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    @property
    def core_size(self) -> int:
        return self._core_size

    @property
    def max_size(self) -> int:
        return self.sizing.max_size

    def pool_size(self) -> int:
        with self._lock:
            return len(self._threads)

    def active_count(self) -> int:
        with self._lock:
            return self._active

    def queue_size(self) -> int:
        return self._queue.qsize()

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------
    def submit(self, fn: Callable[..., R], *args: Any, **kwargs: Any) -> Future:
        """Schedule ``fn(*args, **kwargs)`` and return its future.

        Raises:
            RuntimeError: If the pool has been shut down.
        """
        task = _Task(Future(), fn, args, kwargs)
        with self._lock:
            if self._shutdown:
                raise RuntimeError("cannot submit to a worker pool after shutdown")
            if len(self._threads) < self._core_size:
                self._spawn_locked(task)
                return task.future
        try:
            self._queue.put_nowait(task)
            return task.future
        except queue.Full:
            pass
        with self._lock:
            if len(self._threads) < self.sizing.max_size and not self._shutdown:
                self._spawn_locked(task)
                return task.future
            self.caller_runs += 1
        log.debug("worker queue full; running task in %s", threading.current_thread().name)
        task.run()
        return task.future

    def set_core_size(self, size: int) -> int:
        """Change the core size (clamped to ``1..max_size``); return the new value."""
        with self._lock:
            new_size = max(1, min(int(size), self.sizing.max_size))
            grow = new_size - len(self._threads)
            self._core_size = new_size
            if grow > 0 and not self._shutdown:
                for _ in range(min(grow, self._queue.qsize())):
                    self._spawn_locked(None)
            return new_size

    def _spawn_locked(self, first: _Task | None) -> None:
        name = f"{self.name_prefix}-{next(self._names)}"
        thread = threading.Thread(target=self._work, args=(first,), name=name, daemon=True)
        self._threads.add(thread)
        thread.start()

    def _work(self, first: _Task | None) -> None:
        me = threading.current_thread()
        task = first
        idle_since = time.monotonic()
        try:
            while True:
                if task is None:
                    try:
                        task = self._queue.get(timeout=_POLL_S)
                    except queue.Empty:
                        # retire decision and deregistration share one lock acquisition
                        with self._lock:
                            idle = time.monotonic() - idle_since
                            if self._shutdown or self.cancel_event.is_set() or (
                                len(self._threads) > self._core_size and idle >= self.sizing.keep_alive_s
                            ):
                                self._threads.discard(me)
                                return
                        continue
                if self.cancel_event.is_set():
                    task.future.cancel()
                    task = None
                    continue
                with self._lock:
                    self._active += 1
                try:
                    task.run()
                finally:
                    with self._lock:
                        self._active -= 1
                        self.completed += 1
                task = None
                idle_since = time.monotonic()
        finally:
            with self._lock:
                self._threads.discard(me)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------
    def shutdown(self, *, timeout: float | None = None, cancel_pending: bool = False) -> bool:
        """Stop accepting work and wait for threads to exit.

        Queued tasks still run unless ``cancel_pending`` is True, in which
        case they are cancelled and :attr:`cancel_event` is set.

        Returns:
            bool: True when every worker thread exited within ``timeout``.
        """
        with self._lock:
            self._shutdown = True
        if cancel_pending:
            self.cancel_pending()
        deadline = None if timeout is None else time.monotonic() + timeout
        for thread in self._snapshot_threads():
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            thread.join(remaining)
        return not any(t.is_alive() for t in self._snapshot_threads())

    def cancel_pending(self) -> int:
        """Cancel every queued task; return how many were cancelled."""
        self.cancel_event.set()
        cancelled = 0
        while True:
            try:
                task = self._queue.get_nowait()
            except queue.Empty:
                break
            if task.future.cancel():
                cancelled += 1
        return cancelled

    def _snapshot_threads(self) -> list[threading.Thread]:
        with self._lock:
            return list(self._threads)


class ResourcePoolManager:
    """Create, resize and tear down worker pools for one job.

    Pools passed in through ``create_pool(..., external=...)`` are handed
    back unchanged and are never resized or shut down here.
    """

    def __init__(self, *, job_id: str | None = None, cpu_count: int | None = None) -> None:
        self.job_id = job_id or "-"
        self.log = job_logger(__name__, self.job_id)
        self.cpu_count = cpu_count
        self._owned: list[WorkerPool] = []

    def create_pool(self, cfg: PoolConfig, *, external: Executor | None = None) -> WorkerPool | Executor:
        if external is not None:
            self.log.debug("using externally owned executor %r", external)
            return external
        sizing = resolve_pool_sizing(cfg, cpu_count=self.cpu_count)
        pool = WorkerPool(sizing)
        self._owned.append(pool)
        self.log.info(
            "worker pool created: core=%d max=%d queue=%d keep_alive=%.0fs",
            sizing.core_size,
            sizing.max_size,
            sizing.queue_capacity,
            sizing.keep_alive_s,
        )
        return pool

    def owns(self, pool: Any) -> bool:
        return any(pool is owned for owned in self._owned)

    def monitor(self, pool: Any) -> str | None:
        """Run one resize step; return ``"grow"``, ``"shrink"`` or None.

        Grows the core by one when work is queued, every thread is busy
        and the pool is below its max; shrinks it by one when the queue is
        empty and fewer than half the threads are busy.
        """
        if not isinstance(pool, WorkerPool) or not self.owns(pool) or pool.is_shutdown:
            return None
        queued = pool.queue_size()
        active = pool.active_count()
        size = pool.pool_size()
        core = pool.core_size
        if queued > 0 and active >= size and size < pool.max_size:
            new_core = pool.set_core_size(core + 1)
            self.log.debug("pool grow: core %d -> %d (queued=%d active=%d)", core, new_core, queued, active)
            return "grow"
        if queued == 0 and active < size / 2 and size > 1 and core > 1:
            new_core = pool.set_core_size(core - 1)
            self.log.debug("pool shrink: core %d -> %d (active=%d size=%d)", core, new_core, active, size)
            return "shrink"
        return None

    def start_monitor(self, pool: Any, interval_s: float) -> "PoolMonitor | None":
        if interval_s <= 0 or not isinstance(pool, WorkerPool) or not self.owns(pool):
            return None
        monitor = PoolMonitor(self, pool, interval_s)
        monitor.start()
        return monitor

    def shutdown(self, pool: Any, *, force_on_timeout: bool = True, timeout_s: float = 60.0) -> bool:
        """Drain and stop an owned pool.

        Waits up to ``timeout_s`` for in-flight work. On timeout, queued
        tasks are cancelled when ``force_on_timeout`` is set; otherwise the
        delay is only reported.

        Returns:
            bool: True when the pool stopped cleanly or is not owned here.
        """
        if not isinstance(pool, WorkerPool) or not self.owns(pool):
            self.log.debug("leaving externally owned executor running")
            return True
        if pool.shutdown(timeout=timeout_s):
            self.log.debug("worker pool stopped")
            return True
        if force_on_timeout:
            cancelled = pool.cancel_pending()
            self.log.warning(
                "worker pool did not drain within %.0fs; cancelled %d queued task(s), "
                "%d still running",
                timeout_s,
                cancelled,
                pool.active_count(),
            )
        else:
            self.log.warning(
                "worker pool did not drain within %.0fs; %d task(s) still running",
                timeout_s,
                pool.active_count(),
            )
        return False


class PoolMonitor(threading.Thread):
    """Daemon thread calling :meth:`ResourcePoolManager.monitor` periodically."""

    def __init__(self, manager: ResourcePoolManager, pool: WorkerPool, interval_s: float) -> None:
        super().__init__(name="tabmerge-pool-monitor", daemon=True)
        self.manager = manager
        self.pool = pool
        self.interval_s = interval_s
        self._stop_event = threading.Event()

    def run(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            if self.pool.is_shutdown:
                return
            try:
                self.manager.monitor(self.pool)
            except Exception as exc:  # noqa: BLE001
                self.manager.log.warning("pool monitor step failed: %s", exc)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self.is_alive() and self is not threading.current_thread():
            self.join(timeout)

    def __enter__(self) -> "PoolMonitor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


def run_in_waves(
    pool: WorkerPool | Executor,
    items: Sequence[T] | Iterable[T],
    fn: Callable[[T], R],
    *,
    wave_size: int,
    on_result: Callable[[T, R], None] | None = None,
    on_error: Callable[[T, BaseException], None] | None = None,
    on_timeout: Callable[[T], None] | None = None,
    deadline: float | None = None,
    should_continue: Callable[[], bool] | None = None,
) -> int:
    """Run ``fn`` over ``items`` in waves of at most ``wave_size`` tasks.

    Each wave is submitted to ``pool`` and fully awaited before the next
    starts, so no more than ``wave_size`` calls are ever in flight.
    Outcomes are delivered in submission order within a wave. When the
    ``time.monotonic()`` ``deadline`` passes, unfinished tasks are
    cancelled (if still queued), reported through ``on_timeout``, and no
    further waves start. Exceptions raised by the callbacks propagate.

    Returns:
        int: Number of waves started.
    """
    if wave_size < 1:
        raise ValueError("run_in_waves requires wave_size >= 1")
    pending = list(items)
    waves = 0
    for start in range(0, len(pending), wave_size):
        if should_continue is not None and not should_continue():
            break
        wave = pending[start:start + wave_size]
        futures: list[tuple[T, Future]] = [(item, pool.submit(fn, item)) for item in wave]
        waves += 1
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        _, not_done = wait([fut for _, fut in futures], timeout=remaining)
        for item, fut in futures:
            if fut in not_done:
                fut.cancel()
                if on_timeout is not None:
                    on_timeout(item)
                continue
            if fut.cancelled():
                if on_error is not None:
                    on_error(item, CancelledError("task was cancelled"))
                continue
            exc = fut.exception()
            if exc is not None:
                if on_error is not None:
                    on_error(item, exc)
                continue
            if on_result is not None:
                on_result(item, fut.result())
        if not_done:
            break
    return waves


__all__ = [
    "PoolSizing",
    "WorkerPool",
    "ResourcePoolManager",
    "PoolMonitor",
    "resolve_pool_sizing",
    "run_in_waves",
]
