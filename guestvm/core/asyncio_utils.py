"""Asyncio helpers for long-running supervision loops."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Awaitable, Callable, Optional

from .logging_utils import LoggerLike, ensure_structured_logger


def _task_label(task: asyncio.Task[Any], context: Optional[str]) -> str:
    if context:
        return context
    return task.get_name() or "background task"


def add_task_exception_logger(
    task: asyncio.Task[Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
) -> asyncio.Task[Any]:
    """Ensure task exceptions are retrieved and logged."""
    task_logger = ensure_structured_logger(logger, fallback_name="asyncio")

    def _done(done_task: asyncio.Task[Any]) -> None:
        try:
            done_task.result()
        except asyncio.CancelledError:
            return
        except Exception:
            task_logger.exception("Unhandled exception in %s", _task_label(done_task, context))

    task.add_done_callback(_done)
    return task


def create_logged_task(
    coro: Awaitable[Any],
    *,
    logger: LoggerLike = None,
    context: Optional[str] = None,
) -> asyncio.Task[Any]:
    """Create a task that won't lose exceptions."""
    task = asyncio.get_running_loop().create_task(coro)
    if context:
        task.set_name(context)
    return add_task_exception_logger(task, logger=logger, context=context)


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds, never overlapping itself.

    The next tick is scheduled only after the previous one (including its side
    effects) has completed. Exceptions raised by a tick are logged and the loop
    keeps going. ``stop()`` cancels the loop and waits for it to finish.
    """

    def __init__(
        self,
        callback: Callable[[], Awaitable[None]],
        interval: float,
        *,
        name: str,
        logger: LoggerLike = None,
        run_immediately: bool = True,
    ):
        self._callback = callback
        self.interval = interval
        self.name = name
        self._run_immediately = run_immediately
        self._logger = ensure_structured_logger(logger, fallback_name=name)
        self._task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = create_logged_task(self._run(), logger=self._logger, context=self.name)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        self._stop_event.set()
        if task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _run(self) -> None:
        if not self._run_immediately:
            if await self._wait_or_stop():
                return
        while not self._stop_event.is_set():
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._logger.exception("Tick of %s failed", self.name)
            if await self._wait_or_stop():
                return

    async def _wait_or_stop(self) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            return True
        except asyncio.TimeoutError:
            return False


__all__ = ["PeriodicTask", "add_task_exception_logger", "create_logged_task"]
