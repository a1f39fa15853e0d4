"""Tests for the background remember-me sweep in api/main.py.

Covers:
- a sweep that raises (any exception) is logged and the loop keeps running
- StoreUnavailable is logged as a skipped sweep
- _stop_task cancels the loop and waits for it to finish
"""

from __future__ import annotations

import asyncio
import logging
from types import SimpleNamespace

from api.main import _purge_loop, _stop_task
from auth.errors import StoreUnavailable


class FlakySweep:
    """purge_expired stand-in that fails on the first calls, then succeeds."""

    def __init__(self, *failures: Exception) -> None:
        self.failures = list(failures)
        self.calls = 0

    def __call__(self) -> int:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return 2


def _run_until(sweep: FlakySweep, calls: int) -> asyncio.Task:
    app = SimpleNamespace(state=SimpleNamespace(token_store=SimpleNamespace(purge_expired=sweep)))

    async def scenario() -> asyncio.Task:
        task = asyncio.create_task(_purge_loop(app, 0))
        while sweep.calls < calls:
            await asyncio.sleep(0.01)
        await _stop_task(task)
        return task

    return asyncio.run(asyncio.wait_for(scenario(), timeout=5))


def test_sweep_survives_unexpected_errors(caplog):
    sweep = FlakySweep(RuntimeError("disk on fire"), StoreUnavailable("purge failed"))
    with caplog.at_level(logging.INFO, logger="formlogin.api"):
        task = _run_until(sweep, 3)
    assert sweep.calls >= 3
    assert "Remember-me purge failed" in caplog.text
    assert "token store unavailable" in caplog.text
    assert "Purged 2 expired remember-me tokens" in caplog.text
    assert task.cancelled()


def test_stop_task_waits_for_cancellation():
    async def scenario() -> asyncio.Task:
        task = asyncio.create_task(asyncio.sleep(3600))
        await asyncio.sleep(0)
        await _stop_task(task)
        return task

    task = asyncio.run(scenario())
    assert task.done()
    assert task.cancelled()
