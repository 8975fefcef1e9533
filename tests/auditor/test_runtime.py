"""Tests for the auditor runtime loop."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from relayaudit.auditor.runtime import AuditorRuntime
from relayaudit.auditor.sync import RunResult, RunStatus
from relayaudit.ledger.models import AggregateStats


def _result(scope="balance", status=RunStatus.COMPLETE) -> RunResult:
    return RunResult(scope=scope, status=status, rounds=1, stats=AggregateStats())


def _mock_sync(scope="balance", results=None):
    sync = MagicMock()
    sync.scope = scope
    sync.run = AsyncMock(side_effect=list(results or [_result(scope)]))
    return sync


@pytest.fixture
def no_sleep(monkeypatch):
    sleep = AsyncMock()
    monkeypatch.setattr(AuditorRuntime, "_sleep", sleep)
    return sleep


@pytest.mark.asyncio
class TestAuditorRuntime:

    async def test_single_cycle_runs_every_scope(self):
        balance = _mock_sync("balance")
        txs = _mock_sync("transactions")
        runtime = AuditorRuntime([balance, txs], poll_interval=0)

        results = await runtime.run()

        assert [r.scope for r in results] == ["balance", "transactions"]
        balance.run.assert_awaited_once()
        txs.run.assert_awaited_once()

    async def test_failed_run_is_retried_with_backoff(self, no_sleep):
        sync = _mock_sync(results=[
            _result(status=RunStatus.FAILED),
            _result(status=RunStatus.COMPLETE),
        ])
        runtime = AuditorRuntime([sync], poll_interval=0)

        results = await runtime.run()

        assert sync.run.await_count == 2
        assert results[0].status is RunStatus.COMPLETE
        no_sleep.assert_awaited_once_with(5)

    async def test_cycle_exception_is_retried_with_backoff(self, no_sleep):
        sync = _mock_sync(results=[RuntimeError("store exploded"), _result()])
        runtime = AuditorRuntime([sync], poll_interval=0)

        results = await runtime.run()

        assert sync.run.await_count == 2
        assert results[0].status is RunStatus.COMPLETE
        assert runtime.gave_up is False
        no_sleep.assert_awaited_once_with(5)

    async def test_repeated_cycle_exceptions_give_up(self, no_sleep):
        sync = _mock_sync(results=[RuntimeError("boom")] * 2)
        runtime = AuditorRuntime([sync], poll_interval=0, max_consecutive_errors=2)

        results = await runtime.run()

        assert results == []
        assert runtime.gave_up is True
        assert sync.run.await_count == 2

    async def test_gives_up_after_max_errors(self, no_sleep):
        sync = _mock_sync(results=[_result(status=RunStatus.FAILED)] * 3)
        runtime = AuditorRuntime([sync], poll_interval=0, max_consecutive_errors=3)

        results = await runtime.run()

        assert sync.run.await_count == 3
        assert results[0].status is RunStatus.FAILED
        assert [c.args[0] for c in no_sleep.await_args_list] == [5, 10]
        assert runtime.gave_up is True

    async def test_polls_until_stopped(self, no_sleep):
        runtime = None

        async def run_and_stop():
            if sync.run.await_count == 2:
                runtime.stop()
            return _result()

        sync = MagicMock()
        sync.scope = "balance"
        sync.run = AsyncMock(side_effect=run_and_stop)
        runtime = AuditorRuntime([sync], poll_interval=60)

        await runtime.run()

        assert sync.run.await_count == 2
        no_sleep.assert_awaited_once_with(60)

    async def test_stop_interrupts_poll_sleep(self):
        ran = asyncio.Event()

        async def run_once():
            ran.set()
            return _result()

        sync = MagicMock()
        sync.scope = "balance"
        sync.run = AsyncMock(side_effect=run_once)
        runtime = AuditorRuntime([sync], poll_interval=3600)

        task = asyncio.create_task(runtime.run())
        await asyncio.wait_for(ran.wait(), timeout=1.0)
        runtime.stop()
        results = await asyncio.wait_for(task, timeout=1.0)

        assert sync.run.await_count == 1
        assert [r.status for r in results] == [RunStatus.COMPLETE]

    async def test_stop_cancels_active_sync(self):
        runtime = None

        async def run_then_stop():
            runtime.stop()
            return _result(status=RunStatus.CANCELLED)

        first = MagicMock()
        first.scope = "balance"
        first.run = AsyncMock(side_effect=run_then_stop)
        second = _mock_sync("transactions")
        runtime = AuditorRuntime([first, second], poll_interval=0)

        results = await runtime.run()

        first.cancel.assert_called_once()
        second.run.assert_not_awaited()
        assert [r.status for r in results] == [RunStatus.CANCELLED]
