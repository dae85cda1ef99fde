"""
Periodic scheduler: runs a sync pass for every configured
(workspace, account) target on a fixed interval.

Targets are synced one after another within a cycle.  A target is skipped
when its watermark was advanced less than ``min_interval_seconds`` ago or
when a pass for it is already in flight.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from inboxsync.errors import AuthError, SyncInProgressError
from inboxsync.models import SyncResult
from inboxsync.orchestrator import SyncOrchestrator

logger = logging.getLogger("inboxsync.scheduler")

_POLL_SECONDS = 0.5


@dataclass(frozen=True, slots=True)
class SyncTarget:
    workspace_id: str
    account_id: str


class SyncScheduler:
    """Drives :class:`SyncOrchestrator` passes on an interval.

    Args:
        orchestrator: Runs the passes.
        store: Used to read watermarks for the minimum-interval guard.
        targets: ``(workspace, account)`` pairs to sync each cycle.
        interval_seconds: Pause between the end of one cycle and the next.
        mode: Sync mode passed to every pass.
        scope: Sync scope passed to every pass.
        min_interval_seconds: Skip a target synced more recently than this.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        store: Any,
        targets: Iterable[SyncTarget],
        interval_seconds: float = 900.0,
        mode: str = "incremental",
        scope: str = "both",
        min_interval_seconds: float = 0.0,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self.targets: List[SyncTarget] = list(targets)
        self.interval_seconds = max(0.0, float(interval_seconds))
        self.mode = mode
        self.scope = scope
        self.min_interval_seconds = max(0.0, float(min_interval_seconds))
        self.cycles = 0
        self.last_results: Dict[Tuple[str, str], SyncResult] = {}
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the scheduling loop on the running event loop."""
        if self.running:
            return
        self._stop_event.clear()
        self._task = asyncio.get_running_loop().create_task(
            self._loop(), name="inbox-sync-scheduler"
        )
        logger.info(
            "Scheduler started: %d targets every %.0fs (mode=%s scope=%s)",
            len(self.targets), self.interval_seconds, self.mode, self.scope,
        )

    async def stop(self) -> None:
        """Cancel in-flight passes and wait for the loop to exit."""
        self._stop_event.set()
        cancelled = self._orchestrator.cancel_all()
        if cancelled:
            logger.info("Requested cancellation of %d in-flight passes", cancelled)
        task, self._task = self._task, None
        if task is not None:
            await task
        logger.info("Scheduler stopped after %d cycles", self.cycles)

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_cycle()
            except Exception:
                logger.exception("Sync cycle failed")
            await self._sleep_until_stopped(self.interval_seconds)

    async def _sleep_until_stopped(self, seconds: float) -> bool:
        remaining = seconds
        while remaining > 0:
            if self._stop_event.is_set():
                return True
            tick = min(_POLL_SECONDS, remaining)
            await asyncio.sleep(tick)
            remaining -= tick
        return self._stop_event.is_set()

    async def _synced_recently(self, target: SyncTarget) -> bool:
        if self.min_interval_seconds <= 0:
            return False
        watermark = await self._store.get_watermark(
            target.workspace_id, target.account_id, self.scope
        )
        if watermark is None or watermark.last_synced_at is None:
            return False
        age = (datetime.now(timezone.utc) - watermark.last_synced_at).total_seconds()
        return age < self.min_interval_seconds

    async def run_cycle(self) -> List[SyncResult]:
        """Run one pass per target; returns the results of passes that ran."""
        self.cycles += 1
        results: List[SyncResult] = []
        for target in self.targets:
            if self._stop_event.is_set():
                break
            label = f"{target.workspace_id}/{target.account_id}"
            if self._orchestrator.is_running(target.workspace_id, target.account_id):
                logger.info("Skipping %s: pass already in flight", label)
                continue
            if await self._synced_recently(target):
                logger.info(
                    "Skipping %s: synced less than %.0fs ago", label, self.min_interval_seconds
                )
                continue

            try:
                result = await self._orchestrator.run_sync(
                    target.workspace_id, target.account_id, mode=self.mode, scope=self.scope
                )
            except SyncInProgressError:
                logger.info("Skipping %s: pass already in flight", label)
                continue
            except AuthError as exc:
                logger.error("Credentials rejected while syncing %s: %s", label, exc)
                continue
            except Exception:
                logger.exception("Sync pass for %s raised", label)
                continue

            self.last_results[(target.workspace_id, target.account_id)] = result
            results.append(result)
        return results

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "cycles": self.cycles,
            "interval_seconds": self.interval_seconds,
            "targets": [
                {
                    "workspace_id": target.workspace_id,
                    "account_id": target.account_id,
                    "in_flight": self._orchestrator.is_running(
                        target.workspace_id, target.account_id
                    ),
                    "last_result": (
                        self.last_results[(target.workspace_id, target.account_id)].to_dict()
                        if (target.workspace_id, target.account_id) in self.last_results
                        else None
                    ),
                }
                for target in self.targets
            ],
        }
