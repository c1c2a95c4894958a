"""
Background Tasks
================
Runs engine pipelines off the caller's thread with cooperative
cancellation, a bounded progress channel and stale-run discard.

    CancellationToken   one-shot flag polled by the engine between batches
    ProgressChannel     bounded queue of ProgressEvent, oldest dropped when full
    EngineTask          one submitted run and its TaskOutcome
    TaskScheduler       at most one live task per key; re-submitting a key
                        supersedes the previous run and discards its result
"""

import logging
import queue
import threading
from concurrent.futures import CancelledError, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from portfolio_engine.config import DEFAULT_MAX_WORKERS, OptimizationConfig
from portfolio_engine.engine import run_optimization, run_simulation
from portfolio_engine.exceptions import SimulationCancelled
from portfolio_engine.models import SimulationRequest


logger = logging.getLogger(__name__)

DEFAULT_PROGRESS_CAPACITY: int = 64


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SUPERSEDED = "superseded"


class CancellationToken:
    """Thread-safe one-shot cancellation flag."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, phase: str = "run") -> None:
        if self._event.is_set():
            raise SimulationCancelled(f"Run cancelled during {phase}")


@dataclass(frozen=True)
class ProgressEvent:
    current: int
    total: int
    phase: str

    @property
    def fraction(self) -> float:
        return self.current / self.total if self.total else 0.0


class ProgressChannel:
    """
    Bounded progress queue between an engine run and its observer.

    The producer never blocks: when the queue is full the oldest event is
    dropped to make room, so a slow consumer only loses intermediate
    updates, never the latest one.  Instances are callable with the
    engine's ``progress(current, total, phase)`` signature.
    """

    def __init__(self, capacity: int = DEFAULT_PROGRESS_CAPACITY):
        self._queue: "queue.Queue[ProgressEvent]" = queue.Queue(maxsize=capacity)
        self._lock = threading.Lock()
        self.dropped = 0

    def publish(self, current: int, total: int, phase: str) -> None:
        event = ProgressEvent(current, total, phase)
        with self._lock:
            while True:
                try:
                    self._queue.put_nowait(event)
                    return
                except queue.Full:
                    try:
                        self._queue.get_nowait()
                        self.dropped += 1
                    except queue.Empty:
                        pass

    __call__ = publish

    def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or ``None`` if nothing arrives within ``timeout``."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[ProgressEvent]:
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events


@dataclass(frozen=True)
class TaskOutcome:
    status: TaskStatus
    value: Any = None
    error: Optional[BaseException] = None


class EngineTask:
    """
    One engine run submitted to an executor.

    The wrapped function is called as ``fn(*args, progress=..., cancel_token=...,
    **kwargs)``.  A task cancelled or superseded before its future completes
    never exposes a value, even if the engine finished before it noticed the
    cancellation.  Revocation is applied again when the outcome is read,
    since the run may already have produced its outcome when the request
    arrives.
    """

    def __init__(
        self,
        fn: Callable[..., Any],
        *args,
        executor: ThreadPoolExecutor,
        name: str = "task",
        progress: Optional[ProgressChannel] = None,
        **kwargs,
    ):
        self.name = name
        self.token = CancellationToken()
        self.progress = progress or ProgressChannel()
        self._fn = fn
        self._args = args
        self._kwargs = kwargs
        self._lock = threading.Lock()
        self._status = TaskStatus.PENDING
        self._revoked: Optional[TaskStatus] = None
        self._future = executor.submit(self._run)

    @property
    def status(self) -> TaskStatus:
        with self._lock:
            status = self._status
        if status in (TaskStatus.PENDING, TaskStatus.RUNNING):
            return status
        return self._apply_revocation(TaskOutcome(status)).status

    def _set_status(self, status: TaskStatus) -> None:
        with self._lock:
            self._status = status

    def _apply_revocation(self, outcome: TaskOutcome) -> TaskOutcome:
        with self._lock:
            revoked = self._revoked
        if revoked == TaskStatus.SUPERSEDED:
            return TaskOutcome(TaskStatus.SUPERSEDED)
        if revoked == TaskStatus.CANCELLED and outcome.status == TaskStatus.COMPLETED:
            return TaskOutcome(TaskStatus.CANCELLED)
        return outcome

    def _finish(self, outcome: TaskOutcome) -> TaskOutcome:
        outcome = self._apply_revocation(outcome)
        self._set_status(outcome.status)
        return outcome

    def _run(self) -> TaskOutcome:
        if self.token.is_cancelled():
            return self._finish(TaskOutcome(TaskStatus.CANCELLED))

        self._set_status(TaskStatus.RUNNING)
        logger.debug("Task %s started", self.name)
        try:
            value = self._fn(
                *self._args,
                progress=self.progress.publish,
                cancel_token=self.token,
                **self._kwargs,
            )
        except SimulationCancelled:
            logger.info("Task %s cancelled", self.name)
            return self._finish(TaskOutcome(TaskStatus.CANCELLED))
        except Exception as exc:
            logger.exception("Task %s failed", self.name)
            return self._finish(TaskOutcome(TaskStatus.FAILED, error=exc))

        logger.debug("Task %s completed", self.name)
        return self._finish(TaskOutcome(TaskStatus.COMPLETED, value=value))

    def _revoke(self, status: TaskStatus) -> None:
        # a task whose future already completed keeps its delivered outcome
        with self._lock:
            if self._future.done():
                return
            if self._revoked != TaskStatus.SUPERSEDED:
                self._revoked = status
        self.token.cancel()
        if self._future.cancel():
            # never started: the worker will not run _finish
            self._set_status(status)

    def cancel(self) -> None:
        self._revoke(TaskStatus.CANCELLED)

    def supersede(self) -> None:
        self._revoke(TaskStatus.SUPERSEDED)

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> TaskOutcome:
        """
        Wait for the task and return its outcome.

        Raises
        ------
        concurrent.futures.TimeoutError
            If the task is still running after ``timeout`` seconds.
        """
        try:
            outcome = self._future.result(timeout=timeout)
        except CancelledError:
            with self._lock:
                return TaskOutcome(self._revoked or TaskStatus.CANCELLED)
        return self._apply_revocation(outcome)


class TaskScheduler:
    """
    Keeps at most one live engine task per key.

    Submitting under a key that already has a task supersedes that task:
    it is cancelled and its result, if any, is discarded.  Results of
    different generations are never merged.
    """

    def __init__(self, max_workers: int = DEFAULT_MAX_WORKERS):
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="portfolio-engine"
        )
        self._active: Dict[str, EngineTask] = {}
        self._lock = threading.Lock()

    def submit(self, key: str, fn: Callable[..., Any], *args, **kwargs) -> EngineTask:
        with self._lock:
            previous = self._active.get(key)
            if previous is not None and not previous.done():
                logger.info("Superseding running task %s", key)
                previous.supersede()
            task = EngineTask(fn, *args, executor=self._executor, name=key, **kwargs)
            self._active[key] = task
            return task

    def submit_simulation(
        self, request: SimulationRequest, key: str = "simulation"
    ) -> EngineTask:
        return self.submit(key, run_simulation, request)

    def submit_optimization(
        self,
        request: SimulationRequest,
        opt_config: Optional[OptimizationConfig] = None,
        key: str = "optimization",
    ) -> EngineTask:
        return self.submit(key, run_optimization, request, opt_config)

    def active(self, key: str) -> Optional[EngineTask]:
        with self._lock:
            return self._active.get(key)

    def cancel(self, key: str) -> None:
        with self._lock:
            task = self._active.get(key)
        if task is not None:
            task.cancel()

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            tasks = list(self._active.values())
        for task in tasks:
            task.cancel()
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "TaskScheduler":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
