"""
Unit tests for the periodic scheduler.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import ACCOUNT, WORKSPACE
from inboxsync.errors import AuthError, SyncInProgressError
from inboxsync.models import SyncResult, Watermark
from inboxsync.scheduler import SyncScheduler, SyncTarget


def _result(workspace_id, account_id):
    return SyncResult(workspace_id=workspace_id, account_id=account_id,
                      mode="incremental", scope="both", status="success")


@pytest.fixture
def orchestrator():
    orch = MagicMock()
    orch.is_running.return_value = False
    orch.cancel_all.return_value = 0
    orch.run_sync = AsyncMock(side_effect=lambda ws, acc, mode, scope: _result(ws, acc))
    return orch


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_runs_every_target(self, orchestrator, fake_store):
        targets = [SyncTarget(WORKSPACE, ACCOUNT), SyncTarget(WORKSPACE, "acc-2")]
        scheduler = SyncScheduler(orchestrator, fake_store, targets, mode="full", scope="messages")

        results = await scheduler.run_cycle()

        assert [r.account_id for r in results] == [ACCOUNT, "acc-2"]
        orchestrator.run_sync.assert_any_await(WORKSPACE, ACCOUNT, mode="full", scope="messages")
        assert scheduler.cycles == 1

    @pytest.mark.asyncio
    async def test_skips_recently_synced_target(self, orchestrator, fake_store):
        fake_store.watermarks[(WORKSPACE, ACCOUNT, "both")] = Watermark(
            workspace_id=WORKSPACE,
            account_id=ACCOUNT,
            sync_type="both",
            last_synced_at=datetime.now(timezone.utc) - timedelta(seconds=10),
        )
        scheduler = SyncScheduler(
            orchestrator, fake_store, [SyncTarget(WORKSPACE, ACCOUNT)], min_interval_seconds=60
        )

        assert await scheduler.run_cycle() == []
        orchestrator.run_sync.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_old_watermark_not_skipped(self, orchestrator, fake_store):
        fake_store.watermarks[(WORKSPACE, ACCOUNT, "both")] = Watermark(
            workspace_id=WORKSPACE,
            account_id=ACCOUNT,
            sync_type="both",
            last_synced_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )
        scheduler = SyncScheduler(
            orchestrator, fake_store, [SyncTarget(WORKSPACE, ACCOUNT)], min_interval_seconds=60
        )

        assert len(await scheduler.run_cycle()) == 1

    @pytest.mark.asyncio
    async def test_in_flight_target_skipped(self, orchestrator, fake_store):
        orchestrator.is_running.return_value = True
        scheduler = SyncScheduler(orchestrator, fake_store, [SyncTarget(WORKSPACE, ACCOUNT)])

        assert await scheduler.run_cycle() == []
        orchestrator.run_sync.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [SyncInProgressError(WORKSPACE, ACCOUNT), AuthError("bad key"), RuntimeError("boom")],
    )
    async def test_errors_do_not_stop_cycle(self, orchestrator, fake_store, error):
        def run(ws, acc, mode, scope):
            if acc == ACCOUNT:
                raise error
            return _result(ws, acc)

        orchestrator.run_sync.side_effect = run
        targets = [SyncTarget(WORKSPACE, ACCOUNT), SyncTarget(WORKSPACE, "acc-2")]
        scheduler = SyncScheduler(orchestrator, fake_store, targets)

        results = await scheduler.run_cycle()
        assert [r.account_id for r in results] == ["acc-2"]

    @pytest.mark.asyncio
    async def test_status_reports_last_result(self, orchestrator, fake_store):
        scheduler = SyncScheduler(orchestrator, fake_store, [SyncTarget(WORKSPACE, ACCOUNT)])
        await scheduler.run_cycle()

        status = scheduler.status()
        assert status["cycles"] == 1
        assert status["running"] is False
        assert status["targets"][0]["last_result"]["status"] == "success"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, orchestrator, fake_store):
        scheduler = SyncScheduler(
            orchestrator, fake_store, [SyncTarget(WORKSPACE, ACCOUNT)], interval_seconds=60
        )
        scheduler.start()
        assert scheduler.running

        for _ in range(20):
            if orchestrator.run_sync.await_count:
                break
            await asyncio.sleep(0.01)

        await asyncio.wait_for(scheduler.stop(), timeout=5)
        assert not scheduler.running
        assert orchestrator.run_sync.await_count == 1
        orchestrator.cancel_all.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, orchestrator, fake_store):
        scheduler = SyncScheduler(orchestrator, fake_store, [], interval_seconds=60)
        scheduler.start()
        task = scheduler._task
        scheduler.start()
        assert scheduler._task is task
        await asyncio.wait_for(scheduler.stop(), timeout=5)
