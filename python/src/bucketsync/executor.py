"""Concurrent batch execution engine for bucketsync.

Fans a set of independent remote operations (e.g. "fetch full metadata for
object X") out over a fixed-size worker pool and reports progress through
listener events.

Threading model:
    - Worker threads pull operations from a work queue, one at a time, and
      push each outcome onto a result queue. They never touch shared
      accumulators.
    - A single dispatch thread owns the accumulator, drains the result
      queue and invokes every listener callback. Listener callbacks are
      therefore always serial, never concurrent with each other.
    - Cancellation is cooperative: workers poll the token between
      operations, never mid-operation. Once a worker observes it, the
      remaining queued operations are dropped.

Event order per run: zero or more ``on_progress`` events, each carrying the
completions gathered since the previous one (in insertion order), then
exactly one ``on_complete`` event. Nothing is delivered after it. Failures
count towards event emission too, so ``finished`` keeps moving even when
every operation fails.
"""

import logging
import queue
import random
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from bucketsync import metrics
from bucketsync.errors import BatchStartError

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4
DEFAULT_PROGRESS_INTERVAL = 0.2
DEFAULT_MAX_BATCH_SIZE = 100


@dataclass(frozen=True)
class Operation:
    """One independent, idempotent unit of remote work.

    Attributes:
        key: Identifies the operation in results and errors (e.g. object key).
        call: Zero-argument callable performing the remote call.
    """

    key: str
    call: Callable[[], Any]


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for transient transport failures.

    Attributes:
        max_attempts: Total attempts per operation, including the first.
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound on any single delay.
        multiplier: Growth factor between consecutive delays.
        jitter: Use full jitter, i.e. a random delay in ``[0, backoff]``.
    """

    max_attempts: int = 3
    base_delay: float = 0.2
    max_delay: float = 5.0
    multiplier: float = 2.0
    jitter: bool = True

    @classmethod
    def no_retry(cls) -> "RetryPolicy":
        return cls(max_attempts=1)

    def delay_for(self, attempt: int) -> float:
        """Return the delay to sleep after failed attempt number ``attempt``."""
        delay = min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))
        if self.jitter:
            delay = random.uniform(0, delay)
        return delay


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and a batch."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class BatchProgress:
    """Immutable snapshot of a batch run, delivered to listeners.

    Attributes:
        total: Number of operations submitted.
        completed: Key -> result for every operation that succeeded so far.
        errors: Key -> terminal cause for every operation that failed so far.
        batch: (key, result) pairs completed since the previous event, in the
            order they were recorded. Empty on the terminal event.
        cancelled: Whether cancellation has been signalled for the run.
        done: True only on the terminal snapshot.
    """

    total: int
    completed: Mapping[str, Any]
    errors: Mapping[str, BaseException]
    batch: tuple[tuple[str, Any], ...] = ()
    cancelled: bool = False
    done: bool = False

    @property
    def finished(self) -> int:
        """Operations that reached a terminal state (success or failure)."""
        return len(self.completed) + len(self.errors)


class BatchListener:
    """Receives batch events. Subclass it, or pass any object with these methods.

    Both methods are always called from the batch's dispatch thread, one at a
    time, so implementations need no locking of their own.
    """

    def on_progress(self, progress: BatchProgress) -> None:
        """Called with the completions gathered since the previous event."""

    def on_complete(self, progress: BatchProgress) -> None:
        """Called exactly once, last, with the final state of the run."""


class CallbackListener(BatchListener):
    """Adapts plain callables to the listener interface."""

    def __init__(
        self,
        on_progress: Callable[[BatchProgress], None] | None = None,
        on_complete: Callable[[BatchProgress], None] | None = None,
    ) -> None:
        self._on_progress = on_progress
        self._on_complete = on_complete

    def on_progress(self, progress: BatchProgress) -> None:
        if self._on_progress is not None:
            self._on_progress(progress)

    def on_complete(self, progress: BatchProgress) -> None:
        if self._on_complete is not None:
            self._on_complete(progress)


class BatchExecutor:
    """Runs batches of independent operations on a bounded worker pool.

    Attributes:
        max_workers: Upper bound on concurrently executing operations.
        retry_policy: Backoff applied to retryable failures.
        progress_interval: Seconds between in-progress events.
        max_batch_size: Finished operations that force an event before the
            interval.
    """

    def __init__(
        self,
        max_workers: int = DEFAULT_MAX_WORKERS,
        retry_policy: RetryPolicy | None = None,
        progress_interval: float = DEFAULT_PROGRESS_INTERVAL,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            max_workers: Worker pool size (>= 1).
            retry_policy: Retry policy; defaults to RetryPolicy().
            progress_interval: Seconds between in-progress events (> 0).
            max_batch_size: Finished operations (successes or failures) that
                force an in-progress event before the interval (>= 1).
            sleep: Used for backoff delays.

        Raises:
            ValueError: On a non-positive pool size, interval or batch size.
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        if progress_interval <= 0:
            raise ValueError(f"progress_interval must be positive, got {progress_interval}")
        if max_batch_size < 1:
            raise ValueError(f"max_batch_size must be at least 1, got {max_batch_size}")

        self.max_workers = max_workers
        self.retry_policy = retry_policy or RetryPolicy()
        self.progress_interval = progress_interval
        self.max_batch_size = max_batch_size
        self._sleep = sleep
        self._listeners: list[BatchListener] = []
        self._listeners_lock = threading.Lock()

    def add_listener(self, listener: BatchListener) -> None:
        """Register a listener notified for every subsequent batch."""
        with self._listeners_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: BatchListener) -> None:
        with self._listeners_lock:
            self._listeners.remove(listener)

    def run(
        self,
        operations: Iterable[Operation],
        listener: BatchListener | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> BatchProgress:
        """Execute a batch and block until its terminal event.

        Per-operation failures never raise here; inspect the returned
        ``errors``.

        Args:
            operations: The operations to execute; keys must be unique.
            listener: Extra listener for this run only.
            cancel_token: Token the caller may use to cancel the run.

        Returns:
            The final BatchProgress (the same snapshot given to on_complete).

        Raises:
            BatchStartError: If the worker pool cannot be started.
            ValueError: If operation keys are not unique.
        """
        return self.submit(operations, listener, cancel_token).result()

    def submit(
        self,
        operations: Iterable[Operation],
        listener: BatchListener | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> "Future[BatchProgress]":
        """Start a batch and return immediately.

        The listener, not the returned future, is the primary source of
        completion; the future resolves with the final snapshot after the
        terminal event has been delivered.

        Raises:
            BatchStartError: If the worker pool cannot be started.
            ValueError: If operation keys are not unique.
        """
        ops = list(operations)
        seen: set[str] = set()
        for op in ops:
            if op.key in seen:
                raise ValueError(f"Duplicate operation key in batch: {op.key!r}")
            seen.add(op.key)

        with self._listeners_lock:
            listeners = list(self._listeners)
        if listener is not None:
            listeners.append(listener)

        batch_run = _BatchRun(self, ops, listeners, cancel_token or CancellationToken())
        batch_run.start()
        return batch_run.future


# ---------------------------------------------------------------------------
# Internal run state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Outcome:
    key: str
    result: Any = None
    error: BaseException | None = None


@dataclass(frozen=True)
class _Dropped:
    keys: tuple[str, ...]


_WORKER_EXIT = object()


class _BatchRun:
    """State for one batch: work queue, result queue and the accumulator.

    The accumulator fields (``_completed``, ``_errors``, ``_pending``) are
    only ever touched by the dispatch thread.
    """

    def __init__(
        self,
        executor: BatchExecutor,
        operations: list[Operation],
        listeners: list[BatchListener],
        token: CancellationToken,
    ) -> None:
        self.future: Future[BatchProgress] = Future()
        self._executor = executor
        self._listeners = listeners
        self._token = token
        self._total = len(operations)
        self._worker_count = min(executor.max_workers, len(operations))

        self._work: queue.Queue[Operation] = queue.Queue()
        for op in operations:
            self._work.put(op)
        self._results: queue.Queue[Any] = queue.Queue()
        self._aborted = threading.Event()
        self._pool: ThreadPoolExecutor | None = None
        self._started_at = 0.0

        self._completed: dict[str, Any] = {}
        self._errors: dict[str, BaseException] = {}
        self._pending: list[tuple[str, Any]] = []
        # Successes and failures recorded since the last event
        self._unreported = 0
        self._dropped = 0

    def start(self) -> None:
        """Start the worker pool and the dispatch thread.

        Raises:
            BatchStartError: If a thread cannot be started.
        """
        self._started_at = time.monotonic()
        logger.debug(
            "Starting batch of %d operations on %d workers", self._total, self._worker_count
        )
        try:
            if self._worker_count:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._worker_count, thread_name_prefix="bucketsync-worker"
                )
                for _ in range(self._worker_count):
                    self._pool.submit(self._work_loop)
            dispatcher = threading.Thread(
                target=self._dispatch_loop, name="bucketsync-dispatch", daemon=True
            )
            dispatcher.start()
        except RuntimeError as exc:
            self._aborted.set()
            if self._pool is not None:
                self._pool.shutdown(wait=False, cancel_futures=True)
            raise BatchStartError(f"Unable to start the batch worker pool: {exc}") from exc

    # -- Worker side -------------------------------------------------------------

    def _work_loop(self) -> None:
        try:
            while not self._aborted.is_set():
                if self._token.cancelled:
                    self._drop_remaining()
                    break
                try:
                    op = self._work.get_nowait()
                except queue.Empty:
                    break
                self._results.put(self._execute(op))
        finally:
            self._results.put(_WORKER_EXIT)

    def _drop_remaining(self) -> None:
        dropped = []
        while True:
            try:
                dropped.append(self._work.get_nowait().key)
            except queue.Empty:
                break
        if dropped:
            self._results.put(_Dropped(tuple(dropped)))

    def _execute(self, op: Operation) -> _Outcome:
        policy = self._executor.retry_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                result = op.call()
            except Exception as exc:
                if not getattr(exc, "retryable", False):
                    logger.warning(
                        "Operation %s failed: %s", op.key, exc, extra={"key": op.key}
                    )
                    return _Outcome(op.key, error=exc)
                if attempt >= policy.max_attempts:
                    logger.warning(
                        "Operation %s failed after %d attempts: %s",
                        op.key,
                        attempt,
                        exc,
                        extra={"key": op.key, "attempt": attempt},
                    )
                    return _Outcome(op.key, error=exc)

                delay = policy.delay_for(attempt)
                logger.info(
                    "Retrying %s in %.2fs after transient failure (attempt %d/%d): %s",
                    op.key,
                    delay,
                    attempt,
                    policy.max_attempts,
                    exc,
                    extra={"key": op.key, "attempt": attempt},
                )
                if metrics.operation_retries_total is not None:
                    metrics.operation_retries_total.inc()
                self._executor._sleep(delay)
            else:
                return _Outcome(op.key, result=result)

    # -- Dispatch side -------------------------------------------------------------

    def _dispatch_loop(self) -> None:
        interval = self._executor.progress_interval
        max_batch = self._executor.max_batch_size
        exited = 0
        last_event = time.monotonic()
        try:
            while exited < self._worker_count:
                wait = max(0.0, interval - (time.monotonic() - last_event))
                try:
                    message = self._results.get(timeout=wait)
                except queue.Empty:
                    message = None

                if message is _WORKER_EXIT:
                    exited += 1
                elif isinstance(message, _Dropped):
                    self._record_dropped(message)
                elif message is not None:
                    self._record(message)

                now = time.monotonic()
                if self._unreported and (
                    self._unreported >= max_batch or now - last_event >= interval
                ):
                    self._deliver("on_progress", self._snapshot())
                    last_event = now
                elif now - last_event >= interval:
                    # Nothing to report; restart the interval so the next wait blocks
                    last_event = now

            if self._unreported:
                self._deliver("on_progress", self._snapshot())

            final = self._snapshot(done=True)
            self._finish(final)
            self._deliver("on_complete", final)
        except Exception as exc:
            logger.exception("Batch dispatch failed")
            self.future.set_exception(exc)
        else:
            self.future.set_result(final)
        finally:
            if self._pool is not None:
                self._pool.shutdown(wait=False)

    def _record(self, outcome: _Outcome) -> None:
        self._unreported += 1
        if outcome.error is not None:
            self._errors[outcome.key] = outcome.error
            status = "error"
        else:
            self._completed[outcome.key] = outcome.result
            self._pending.append((outcome.key, outcome.result))
            status = "success"
        if metrics.batch_operations_total is not None:
            metrics.batch_operations_total.labels(status=status).inc()

    def _record_dropped(self, dropped: _Dropped) -> None:
        self._dropped += len(dropped.keys)
        logger.info("Batch cancelled; dropped %d queued operations", len(dropped.keys))
        if metrics.batch_operations_total is not None:
            metrics.batch_operations_total.labels(status="dropped").inc(len(dropped.keys))

    def _snapshot(self, done: bool = False) -> BatchProgress:
        batch = () if done else tuple(self._pending)
        self._pending = []
        self._unreported = 0
        return BatchProgress(
            total=self._total,
            completed=MappingProxyType(dict(self._completed)),
            errors=MappingProxyType(dict(self._errors)),
            batch=batch,
            cancelled=self._token.cancelled,
            done=done,
        )

    def _finish(self, final: BatchProgress) -> None:
        duration = time.monotonic() - self._started_at
        logger.info(
            "Batch finished: %d completed, %d failed, %d dropped (cancelled=%s)",
            len(final.completed),
            len(final.errors),
            self._dropped,
            final.cancelled,
            extra={"duration_ms": round(duration * 1000, 1)},
        )
        if metrics.batch_duration_seconds is not None:
            metrics.batch_duration_seconds.observe(duration)

    def _deliver(self, method: str, progress: BatchProgress) -> None:
        for listener in self._listeners:
            handler = getattr(listener, method, None)
            if handler is None:
                continue
            try:
                handler(progress)
            except Exception:
                logger.exception("Batch listener %r failed handling %s", listener, method)
