"""
Parallel execution utilities for optimization.

Provides a bounded worker pool with sliding-window dispatch, per-call
deadlines, cooperative cancellation and progress tracking.
"""
import multiprocessing
import threading
import time
from concurrent.futures import (
    FIRST_COMPLETED,
    Future,
    ProcessPoolExecutor,
    ThreadPoolExecutor,
    wait,
)
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from tqdm import tqdm

from zenith_engine.core.exceptions import BacktestTimeout
from zenith_engine.utils.config import EXECUTOR_TYPES
from zenith_engine.utils.logging_config import setup_logger

logger = setup_logger('APP.OPTIMIZATION.PARALLEL')

_START_POLL_SECONDS = 0.05


class CancellationToken:
    """
    Thread-safe cooperative cancellation flag.

    Example:
        token = CancellationToken()
        # from another thread
        token.cancel("Cancelled by user")
    """

    def __init__(self):
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "Cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason


@dataclass
class ExecutionSummary:
    """
    Counters for one execute() call.

    Attributes:
        dispatched: Tasks submitted to the pool
        completed: Tasks whose result was delivered to on_result
        failed: Tasks delivered to on_error (including timeouts)
        timed_out: Tasks abandoned after their deadline
        cancelled: Whether dispatch stopped early on cancellation
    """
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    cancelled: bool = False


@dataclass
class _Call:
    task: Any
    started: Optional[float] = None


class ParallelExecutor:
    """
    Runs a function over tasks with at most max_workers calls in flight.

    A new task is pulled from the (possibly lazy) task iterable only when a
    slot frees up. Each call gets a deadline measured from the moment a worker
    picks it up; a call past its deadline is reported as BacktestTimeout and
    abandoned, and its eventual result is discarded. The abandoned call keeps
    its worker, so later tasks are dispatched to a fresh pool.

    Attributes:
        max_workers: Pool size and in-flight bound
        executor_type: 'thread' or 'process'
        timeout: Per-call deadline in seconds (None disables)
        show_progress: Whether to display a tqdm progress bar
    """

    def __init__(
        self,
        max_workers: Optional[int] = None,
        executor_type: str = 'thread',
        timeout: Optional[float] = None,
        show_progress: bool = True,
    ):
        """
        Initialize parallel executor.

        Args:
            max_workers: Number of workers. None uses all available cores.
            executor_type: 'thread' (default) or 'process'
            timeout: Per-call deadline in seconds
            show_progress: Whether to display progress bar

        Raises:
            ValueError: On a non-positive worker count or unknown executor type
        """
        if max_workers is None:
            max_workers = multiprocessing.cpu_count()
        elif max_workers < 1:
            raise ValueError(f"max_workers must be positive, got {max_workers}")

        if executor_type not in EXECUTOR_TYPES:
            raise ValueError(
                f"executor_type must be one of {EXECUTOR_TYPES}, got {executor_type!r}"
            )

        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")

        self.max_workers = max_workers
        self.executor_type = executor_type
        self.timeout = timeout
        self.show_progress = show_progress

        logger.debug(
            f"ParallelExecutor initialized with {self.max_workers} {executor_type} workers, "
            f"timeout={timeout}"
        )

    def _make_pool(self):
        if self.executor_type == 'process':
            return ProcessPoolExecutor(max_workers=self.max_workers)
        return ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix='zenith-backtest'
        )

    def execute(
        self,
        func: Callable[[Any], Any],
        tasks: Iterable[Any],
        on_result: Callable[[Any, Any], None],
        on_error: Callable[[Any, Exception], None],
        cancel_token: Optional[CancellationToken] = None,
        total: Optional[int] = None,
        task_description: str = "Backtests",
    ) -> ExecutionSummary:
        """
        Execute func over tasks, delivering each outcome through a callback.

        Callbacks run on the calling thread, one at a time, so they may write
        to shared state without extra locking. An exception raised by a
        callback stops dispatch and propagates after in-flight work is
        released.

        Args:
            func: Function applied to each task (picklable for process pools)
            tasks: Task iterable, consumed lazily
            on_result: Called with (task, result) for each successful call
            on_error: Called with (task, exception) for each failed or timed out call
            cancel_token: Stops dispatch of new tasks when cancelled
            total: Task count for the progress bar
            task_description: Progress bar label

        Returns:
            ExecutionSummary with dispatch and outcome counters

        Example:
            executor = ParallelExecutor(max_workers=4, timeout=60)
            summary = executor.execute(
                run_one, assignments,
                on_result=lambda task, report: store(task, report),
                on_error=lambda task, error: record(task, error),
            )
        """
        summary = ExecutionSummary()
        task_iter = iter(tasks)
        exhausted = False
        in_flight: Dict[Future, _Call] = {}
        retired_pools: List[Any] = []

        progress = tqdm(
            total=total,
            desc=task_description,
            disable=not self.show_progress,
        )
        pool = self._make_pool()

        try:
            while True:
                cancelled = cancel_token is not None and cancel_token.is_cancelled
                if cancelled and not summary.cancelled:
                    summary.cancelled = True
                    logger.info(
                        f"Cancellation requested: {len(in_flight)} in flight, no new dispatch"
                    )

                while not exhausted and not summary.cancelled and len(in_flight) < self.max_workers:
                    try:
                        task = next(task_iter)
                    except StopIteration:
                        exhausted = True
                        break
                    in_flight[pool.submit(func, task)] = _Call(task)
                    summary.dispatched += 1

                if not in_flight:
                    break

                self._mark_started(in_flight)
                done, _ = wait(
                    set(in_flight),
                    timeout=self._wait_timeout(in_flight),
                    return_when=FIRST_COMPLETED,
                )

                for future in done:
                    call = in_flight.pop(future)
                    try:
                        result = future.result()
                    except Exception as e:
                        summary.failed += 1
                        on_error(call.task, e)
                    else:
                        summary.completed += 1
                        on_result(call.task, result)
                    progress.update(1)

                self._mark_started(in_flight)
                now = time.monotonic()
                abandoned_now = False
                for future, call in list(in_flight.items()):
                    if call.started is None or future.done() or now < call.started + self.timeout:
                        continue
                    del in_flight[future]
                    if not future.cancel():
                        abandoned_now = True
                    summary.failed += 1
                    summary.timed_out += 1
                    logger.warning(f"Task exceeded {self.timeout}s deadline, abandoning: {call.task}")
                    on_error(call.task, BacktestTimeout(
                        f"Backtest exceeded {self.timeout}s deadline",
                        assignment=getattr(call.task, 'assignment', None),
                    ))
                    progress.update(1)

                if abandoned_now:
                    # The abandoned call still holds its worker; new work goes to a fresh pool
                    retired_pools.append(pool)
                    pool = self._make_pool()
        finally:
            progress.close()
            for retired in retired_pools:
                retired.shutdown(wait=False, cancel_futures=True)
            pool.shutdown(wait=not retired_pools and not in_flight, cancel_futures=True)

        logger.info(
            f"Parallel execution complete: {summary.completed} succeeded, "
            f"{summary.failed} failed ({summary.timed_out} timed out)"
            + (", cancelled" if summary.cancelled else "")
        )
        return summary

    def _mark_started(self, in_flight: Dict[Future, _Call]) -> None:
        """Start the deadline clock of calls a worker has picked up."""
        if self.timeout is None:
            return
        now = time.monotonic()
        for future, call in in_flight.items():
            if call.started is None and (future.running() or future.done()):
                call.started = now

    def _wait_timeout(self, in_flight: Dict[Future, _Call]) -> Optional[float]:
        """Seconds until the next deadline check, or None when no call has a deadline."""
        if self.timeout is None:
            return None
        waits = [
            call.started + self.timeout - time.monotonic()
            for call in in_flight.values() if call.started is not None
        ]
        if any(call.started is None for call in in_flight.values()):
            # Queued calls have no deadline yet; poll until a worker picks them up
            waits.append(_START_POLL_SECONDS)
        return max(0.0, min(waits))
