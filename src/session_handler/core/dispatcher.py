"""
Background task dispatch with completion on the caller's event loop.

Provides TaskDispatcher for running long operations (pipeline construction,
serialization, point extraction) on a worker pool while the calling event
loop keeps running. Work results, including failures, come back as
TaskResult values delivered on the loop exactly once per submission.
"""

from __future__ import annotations

import asyncio
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from multiprocessing import cpu_count
from typing import Any, Callable, Optional

from ..exceptions import SessionHandlerError
from ..utils.logging import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class TaskResult:
    """Outcome of one background task: a value, or a non-empty error message."""
    value: Any = None
    error: str = ""

    @property
    def ok(self) -> bool:
        return not self.error


def describe_error(exc: BaseException, label: str) -> str:
    """Turn an exception raised by background work into a caller-facing message."""
    if isinstance(exc, MemoryError):
        return f"Memory allocation failed in {label.upper()}"
    if isinstance(exc, (SessionHandlerError, RuntimeError)):
        message = str(exc)
    elif str(exc):
        message = f"{type(exc).__name__}: {str(exc)}"
    else:
        message = type(exc).__name__
    return message or "Unknown error"


def _run_work(work: Callable[[], Any], label: str) -> TaskResult:
    """
    Execute ``work`` and convert any exception into an error message.

    Args:
        work: Zero-argument callable run on a worker thread
        label: Operation name used in log lines and allocation failures

    Returns:
        TaskResult holding the return value or the error message
    """
    try:
        return TaskResult(value=work())
    except Exception as e:
        error_msg = describe_error(e, label)
    logger.error(f"Task {label} failed: {error_msg}")
    return TaskResult(error=error_msg)


def _collect(future: Future, label: str) -> TaskResult:
    """
    Outcome of a finished executor future. Never raises.

    ``_run_work`` already turns ``Exception`` into a TaskResult; this covers
    what escapes it (``BaseException`` subclasses) and cancellation.
    """
    if future.cancelled():
        error_msg = f"Task {label} was cancelled"
    else:
        exc = future.exception()
        if exc is None:
            return future.result()
        error_msg = describe_error(exc, label)
    logger.error(f"Task {label} failed: {error_msg}")
    return TaskResult(error=error_msg)


class TaskDispatcher:
    """
    Runs work on a thread pool and delivers results on an asyncio loop.

    Threads rather than processes: every task shares the session's engine
    object, which cannot cross a process boundary.

    Example:
        dispatcher = TaskDispatcher(n_workers=4)
        dispatcher.submit(
            lambda: engine.serialize_to(paths),
            lambda result: print(result.error or result.value),
            label="serialize",
        )
    """

    def __init__(
        self,
        n_workers: Optional[int] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        """
        Initialize the dispatcher.

        Args:
            n_workers: Number of worker threads. If None, uses cpu_count - 1.
                Minimum is 1.
            loop: Event loop on which completions run. If None, the loop
                running at each submit call is used.
        """
        if n_workers is None:
            n_workers = max(1, cpu_count() - 1)
        else:
            n_workers = max(1, int(n_workers))

        self.n_workers = n_workers
        self._loop = loop
        self._executor = ThreadPoolExecutor(max_workers=n_workers, thread_name_prefix="session-worker")
        self._pending = 0
        self._idle: Optional[asyncio.Event] = None

        logger.info(f"Initialized TaskDispatcher with {self.n_workers} workers (total CPUs: {cpu_count()})")

    @property
    def pending(self) -> int:
        """Submissions whose completion has not yet run."""
        return self._pending

    def submit(
        self,
        work: Callable[[], Any],
        on_complete: Callable[[TaskResult], None],
        *,
        label: str = "task",
    ) -> Future:
        """
        Run ``work`` in the background and ``on_complete`` on the caller's loop.

        Never blocks. ``on_complete`` receives a TaskResult exactly once, after
        ``work`` has finished; exceptions from ``work`` arrive as error messages.
        Completions of different submissions may run in any order.

        Args:
            work: Zero-argument callable executed on a worker thread
            on_complete: Called with the TaskResult on the event loop
            label: Operation name for logging

        Returns:
            The executor future of the background phase

        Raises:
            RuntimeError: If no loop was given and none is running
        """
        loop = self._loop or asyncio.get_running_loop()
        self._pending += 1
        if self._idle is not None:
            self._idle.clear()

        start_time = time.time()
        future = self._executor.submit(_run_work, work, label)

        def _deliver(result: TaskResult) -> None:
            try:
                logger.debug(
                    f"Delivering {label} ({'ok' if result.ok else 'error'}) "
                    f"after {time.time() - start_time:.3f}s"
                )
                on_complete(result)
            finally:
                self._pending -= 1
                if self._pending == 0 and self._idle is not None:
                    self._idle.set()

        # Runs on the worker thread; hand the result to the loop thread
        future.add_done_callback(lambda f: loop.call_soon_threadsafe(_deliver, _collect(f, label)))
        logger.debug(f"Submitted {label} ({self._pending} pending)")
        return future

    async def join(self) -> None:
        """Wait until every submitted task has delivered its completion."""
        if self._pending == 0:
            return
        if self._idle is None:
            self._idle = asyncio.Event()
        if self._pending:
            self._idle.clear()
            await self._idle.wait()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        logger.info("TaskDispatcher shut down")
