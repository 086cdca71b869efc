"""
An in-process task scheduler built on asyncio.

Claimers and batch processors are launched as independent asyncio tasks. A
task that raises is retried with exponential backoff (tenacity) until its
attempt budget is spent, then dead-lettered: recorded in `dead_letters` and
logged. `TerminalError`s are dead-lettered immediately. Timers run a task on a
fixed cadence, logging and surviving failures of individual ticks.
"""
from typing import Any, Awaitable, Callable, Deque, List, Optional, Set, Tuple
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
import asyncio
import logging

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import TerminalError
from .models import utcnow
from .protocols import TaskScheduler

logger = logging.getLogger(__name__)


@dataclass
class DeadLetter:
    """
    What is left of a task that kept failing. Only the error's type and text
    are kept: the exception itself would pin its traceback, and with it the
    loaded batch, in memory.
    """
    task_name: str
    args: Tuple[Any, ...]
    error_type: str
    error: str
    group_id: Optional[str] = None
    deleted: List[int] = field(default_factory=list)
    failed_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_exception(cls, task_name: str, args: Tuple[Any, ...], exc: BaseException) -> "DeadLetter":
        return cls(
            task_name=task_name,
            args=args,
            error_type=type(exc).__name__,
            error=str(exc),
            group_id=getattr(exc, "group_id", None),
            deleted=list(getattr(exc, "deleted", [])),
        )


def _task_name(task: Callable[..., Any]) -> str:
    return getattr(task, "__qualname__", None) or type(task).__name__


def _is_retryable(exc: BaseException) -> bool:
    # Cancellation is a BaseException and must never be retried.
    return isinstance(exc, Exception) and not isinstance(exc, TerminalError)


class AsyncioTaskScheduler(TaskScheduler):
    def __init__(
        self,
        max_attempts: int = 3,
        backoff_initial: float = 1.0,
        backoff_max: float = 60.0,
        max_concurrency: int | None = None,
        max_dead_letters: int = 1000,
    ):
        self.max_attempts = max_attempts
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        # Oldest entries are dropped first.
        self.dead_letters: Deque[DeadLetter] = deque(maxlen=max_dead_letters)
        self._tasks: Set[asyncio.Task] = set()
        self._timers: Set[asyncio.Task] = set()
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, task: Callable[..., Awaitable[Any]], *args: Any) -> asyncio.Task:
        """Runs `task(*args)` concurrently, with retries."""
        scheduled = asyncio.create_task(self._run(task, args), name=_task_name(task))
        self._tasks.add(scheduled)
        scheduled.add_done_callback(self._tasks.discard)
        return scheduled

    def schedule_timer(self, interval: float, task: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        """Runs `task()` now and then every `interval` seconds until stopped."""
        timer = asyncio.create_task(self._tick(interval, task), name=f"timer:{_task_name(task)}")
        self._timers.add(timer)
        timer.add_done_callback(self._timers.discard)
        return timer

    @asynccontextmanager
    async def _slot(self):
        if self._semaphore is None:
            yield
            return
        async with self._semaphore:
            yield

    def _log_retry(self, name: str, retry_state: RetryCallState):
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            f"Task {name} failed on attempt "
            f"{retry_state.attempt_number}/{self.max_attempts}, retrying in "
            f"{retry_state.next_action.sleep if retry_state.next_action else 0:.2f}s: {exc}"
        )

    async def _run(self, task: Callable[..., Awaitable[Any]], args: Tuple[Any, ...]) -> Any:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_initial, max=self.backoff_max),
            retry=retry_if_exception(_is_retryable),
            before_sleep=lambda state: self._log_retry(_task_name(task), state),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    # The slot is released while backing off.
                    async with self._slot():
                        return await task(*args)
        except Exception as e:
            self.dead_letters.append(DeadLetter.from_exception(_task_name(task), args, e))
            if isinstance(e, TerminalError):
                # Already reported by whoever raised it.
                logger.debug(f"Task {_task_name(task)}{args} ended with a terminal error: {e}")
            else:
                logger.error(f"Task {_task_name(task)}{args} dead-lettered: {e}")
            return None

    async def _tick(self, interval: float, task: Callable[[], Awaitable[Any]]):
        while True:
            try:
                await task()
            except Exception as e:
                logger.error(f"Timer task {_task_name(task)} failed: {e}")
            await asyncio.sleep(interval)

    async def drain(self):
        """Waits until no scheduled task is outstanding, including tasks scheduled by tasks."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self):
        """Cancels timers and outstanding tasks."""
        pending = list(self._timers) + list(self._tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
