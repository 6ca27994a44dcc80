from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from typing import Any, Callable

from khscrm.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ScheduledTask:
    """Handle for a running periodic job; pass it back to ``stop_periodic``."""

    name: str
    interval_seconds: float
    task: asyncio.Task

    @property
    def running(self) -> bool:
        return not self.task.done()


async def _run_periodic(
    name: str, interval_seconds: float, func: Callable[[], Any]
) -> None:
    """Call ``func`` in a worker thread every ``interval_seconds`` until cancelled."""

    try:
        while True:
            try:
                result = await asyncio.to_thread(func)
                logger.info("scheduled_task_completed", task=name, result=result)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "scheduled_task_failed",
                    task=name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            await asyncio.sleep(interval_seconds)
    except asyncio.CancelledError:
        logger.info("scheduled_task_cancelled", task=name)
        raise


def start_periodic(
    name: str, interval_seconds: float, func: Callable[[], Any]
) -> ScheduledTask:
    """Start ``func`` on a fixed interval and return its handle.

    Must be called from a running event loop.
    """
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be positive")
    task = asyncio.create_task(
        _run_periodic(name, interval_seconds, func), name=f"periodic:{name}"
    )
    logger.info("scheduled_task_started", task=name, interval_seconds=interval_seconds)
    return ScheduledTask(name=name, interval_seconds=interval_seconds, task=task)


async def stop_periodic(handle: ScheduledTask) -> None:
    """Cancel the job behind ``handle`` and wait for it to wind down."""
    if handle.task.done():
        return
    handle.task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await handle.task
