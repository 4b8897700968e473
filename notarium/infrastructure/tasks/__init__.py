"""Named background tasks for the worker pool and the periodic jobs."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Coroutine

import structlog

logger = structlog.get_logger(__name__)

TaskFunc = Callable[[], Coroutine[Any, Any, Any]]


@dataclass
class _Tracked:
    task: asyncio.Task
    kind: str


class TaskRunner:
    """Keeps one asyncio task per name and logs its lifecycle.

    A name is reusable once its previous task has finished; submitting a
    name that is still running is ignored.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, _Tracked] = {}

    def submit(self, name: str, coro: Coroutine, *, kind: str = "once") -> bool:
        tracked = self._tasks.get(name)
        if tracked is not None and not tracked.task.done():
            logger.warning("task_already_running", name=name)
            coro.close()
            return False
        task = asyncio.create_task(self._supervise(name, coro), name=name)
        self._tasks[name] = _Tracked(task=task, kind=kind)
        logger.info("task_submitted", name=name, kind=kind)
        return True

    def submit_periodic(
        self,
        name: str,
        interval_seconds: float,
        func: TaskFunc,
        fatal: tuple[type[Exception], ...] = (),
    ) -> bool:
        return self.submit(name, run_periodic(name, interval_seconds, func, fatal), kind="periodic")

    async def _supervise(self, name: str, coro: Coroutine) -> Any:
        try:
            result = await coro
        except asyncio.CancelledError:
            logger.info("task_cancelled", name=name)
            raise
        except Exception as e:
            logger.error("task_failed", name=name, error=str(e), exc_info=True)
            raise
        logger.info("task_completed", name=name)
        return result

    def cancel(self, name: str) -> bool:
        tracked = self._tasks.get(name)
        if tracked is None or tracked.task.done():
            return False
        tracked.task.cancel()
        return True

    def cancel_all(self) -> int:
        return sum(self.cancel(name) for name in list(self._tasks))

    async def shutdown(self) -> None:
        """Cancel everything and wait until every task has unwound."""
        self.cancel_all()
        tasks = [tracked.task for tracked in self._tasks.values()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def get_status(self, name: str) -> str:
        tracked = self._tasks.get(name)
        if tracked is None:
            return "unknown"
        task = tracked.task
        if not task.done():
            return "running"
        if task.cancelled():
            return "cancelled"
        return "failed" if task.exception() is not None else "completed"

    def list_tasks(self) -> list[dict[str, str]]:
        return [
            {"name": name, "kind": tracked.kind, "status": self.get_status(name)}
            for name, tracked in self._tasks.items()
        ]


async def run_periodic(
    name: str,
    interval_seconds: float,
    func: TaskFunc,
    fatal: tuple[type[Exception], ...] = (),
) -> None:
    """Call ``func`` every ``interval_seconds`` until cancelled.

    A failing run is logged and the schedule continues, unless the error is
    one of ``fatal``, which ends the task.
    """
    runs = 0
    while True:
        runs += 1
        try:
            await func()
        except fatal as e:
            logger.critical("periodic_job_stopped", name=name, run=runs, error=str(e))
            raise
        except Exception as e:
            logger.error("periodic_job_failed", name=name, run=runs, error=str(e), exc_info=True)
        await asyncio.sleep(interval_seconds)


__all__ = ["TaskFunc", "TaskRunner", "run_periodic"]
