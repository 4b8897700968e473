"""Integration tests for the background task runner.

Covers:
- submit, completion and failure status
- duplicate names while a task is running
- cancellation and shutdown
- periodic jobs: survive ordinary errors, stop on fatal ones
"""
from __future__ import annotations

import asyncio

import pytest

from notarium.domain.exceptions import AuditWriteError
from notarium.infrastructure.tasks import TaskRunner, run_periodic

pytestmark = [pytest.mark.asyncio, pytest.mark.integration]


async def _noop() -> str:
    return "done"


async def _boom() -> None:
    raise RuntimeError("boom")


class TestTaskRunner:

    async def test_submit_and_complete(self) -> None:
        runner = TaskRunner()
        runner.submit("job", _noop())
        await asyncio.sleep(0.01)
        assert runner.get_status("job") == "completed"
        assert runner.list_tasks() == [{"name": "job", "kind": "once", "status": "completed"}]

    async def test_failed_task_status(self) -> None:
        runner = TaskRunner()
        runner.submit("job", _boom())
        await asyncio.sleep(0.01)
        assert runner.get_status("job") == "failed"

    async def test_unknown_task_status(self) -> None:
        assert TaskRunner().get_status("nope") == "unknown"

    async def test_running_name_is_not_resubmitted(self) -> None:
        runner = TaskRunner()
        started: list[int] = []

        async def _wait(n: int) -> None:
            started.append(n)
            await asyncio.sleep(10)

        assert runner.submit("job", _wait(1)) is True
        assert runner.submit("job", _wait(2)) is False
        await asyncio.sleep(0.01)
        assert started == [1]
        await runner.shutdown()

    async def test_cancel(self) -> None:
        runner = TaskRunner()
        runner.submit("job", asyncio.sleep(10))
        await asyncio.sleep(0)
        assert runner.cancel("job") is True
        await asyncio.sleep(0.01)
        assert runner.get_status("job") == "cancelled"
        assert runner.cancel("job") is False

    async def test_shutdown_cancels_everything(self) -> None:
        runner = TaskRunner()
        runner.submit("a", asyncio.sleep(10))
        runner.submit("b", asyncio.sleep(10))
        await runner.shutdown()
        assert {t["status"] for t in runner.list_tasks()} == {"cancelled"}


class TestRunPeriodic:

    async def test_errors_do_not_stop_the_schedule(self) -> None:
        calls: list[int] = []

        async def _flaky() -> None:
            calls.append(len(calls))
            if len(calls) == 1:
                raise RuntimeError("transient")

        task = asyncio.create_task(run_periodic("flaky", 0.001, _flaky))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert len(calls) >= 2

    async def test_fatal_error_ends_the_job(self) -> None:
        calls: list[int] = []

        async def _broken_audit() -> None:
            calls.append(1)
            raise AuditWriteError("audit store unavailable")

        with pytest.raises(AuditWriteError):
            await run_periodic("audited", 0.001, _broken_audit, fatal=(AuditWriteError,))
        assert calls == [1]

    async def test_submit_periodic_reports_failure_on_fatal(self) -> None:
        runner = TaskRunner()

        async def _broken_audit() -> None:
            raise AuditWriteError("audit store unavailable")

        runner.submit_periodic("audited", 0.001, _broken_audit, fatal=(AuditWriteError,))
        await asyncio.sleep(0.02)
        assert runner.get_status("audited") == "failed"
