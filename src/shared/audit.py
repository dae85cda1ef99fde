"""
Structured audit trail: records sync events to both a JSON Lines file
and the ``sync_audit_log`` table.

Each event carries a timestamp, the emitting service, an action name
(``sync_pass_start``, ``sync_pass``, ``sync_conversation_failed``,
``webhook_event``, ``startup``), the workspace and account it concerns,
a details dict and a success flag.

Events are queued and written by a single background task so callers
never wait on disk or database I/O.  Sink failures are logged and
dropped; they never propagate into a sync pass.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

logger = logging.getLogger("shared.audit")

DEFAULT_AUDIT_PATH = Path("/var/log/inbox-sync/audit.log")
_INSERT_EVENT_SQL = (
    "INSERT INTO sync_audit_log "
    "(service, action, workspace_id, account_id, details, success) "
    "VALUES ($1, $2, $3, $4, $5::jsonb, $6)"
)


@dataclass(slots=True)
class AuditEvent:
    """One serialized event waiting for the writer task."""

    line: str
    service: str
    action: str
    workspace_id: Optional[str]
    account_id: Optional[str]
    details_json: str
    success: bool

    def as_row(self) -> tuple:
        return (
            self.service,
            self.action,
            self.workspace_id,
            self.account_id,
            self.details_json,
            self.success,
        )


class AuditLogger:
    """Queue-backed audit writer for file and database sinks.

    Args:
        pool: ``asyncpg`` pool with INSERT on ``sync_audit_log``; ``None``
              disables the database sink.
        log_path: JSON Lines file; ``None`` disables the file sink.
        queue_size: Max queued events before producers wait.
        flush_batch_size: Events written per batch.
    """

    def __init__(
        self,
        pool: Optional[asyncpg.Pool],
        log_path: Optional[Path] = DEFAULT_AUDIT_PATH,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._log_path = Path(log_path) if log_path is not None else None
        self._queue: asyncio.Queue[AuditEvent | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._batch_size = max(1, flush_batch_size)
        self._writer: asyncio.Task[None] | None = None
        self._closed = False
        self._state_lock = asyncio.Lock()

    def _start_writer(self) -> None:
        if self._writer is None:
            self._writer = asyncio.get_running_loop().create_task(
                self._drain(), name="inbox-sync-audit-writer"
            )

    def _append_file(self, batch: List[AuditEvent]) -> None:
        if self._log_path is None:
            return
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as handle:
                handle.write("".join(event.line for event in batch))
        except OSError:
            logger.exception("Failed to write audit log file %s", self._log_path)

    async def _insert_rows(self, batch: List[AuditEvent]) -> None:
        if self._pool is None:
            return
        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(_INSERT_EVENT_SQL, [event.as_row() for event in batch])
        except (asyncpg.PostgresError, OSError):
            logger.exception("Failed to write %d audit events to database", len(batch))

    async def _flush(self, batch: List[AuditEvent]) -> None:
        if batch:
            self._append_file(batch)
            await self._insert_rows(batch)

    async def _drain(self) -> None:
        """Pull events off the queue and flush them until the close sentinel."""
        finished = False
        while not finished:
            event = await self._queue.get()
            if event is None:
                self._queue.task_done()
                break

            batch = [event]
            while len(batch) < self._batch_size:
                try:
                    extra = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if extra is None:
                    self._queue.task_done()
                    finished = True
                    break
                batch.append(extra)

            await self._flush(batch)
            for _ in batch:
                self._queue.task_done()

    async def log(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Queue one audit event.

        ``workspace_id`` and ``account_id`` are lifted out of *details* into
        their own columns when present.

        Args:
            service: Emitting component, normally ``"inboxsync"``.
            action: Event name, e.g. ``"sync_pass"``.
            details: JSON-serialisable metadata.
            success: Whether the action succeeded.
        """
        payload = dict(details or {})
        timestamp = datetime.now(timezone.utc).isoformat()
        workspace_id = payload.get("workspace_id")
        account_id = payload.get("account_id")
        details_json = json.dumps(payload, default=str)
        line = json.dumps(
            {
                "timestamp": timestamp,
                "service": service,
                "action": action,
                "workspace_id": workspace_id,
                "account_id": account_id,
                "details": payload,
                "success": success,
            },
            default=str,
        )
        event = AuditEvent(
            line=line + "\n",
            service=service,
            action=action,
            workspace_id=str(workspace_id) if workspace_id is not None else None,
            account_id=str(account_id) if account_id is not None else None,
            details_json=details_json,
            success=success,
        )
        async with self._state_lock:
            if self._closed:
                logger.debug("Audit logger closed; dropping %s/%s", service, action)
                return
            self._start_writer()
            await self._queue.put(event)

    async def close(self) -> None:
        """Flush queued events and stop the writer task."""
        async with self._state_lock:
            if self._closed:
                return
            self._closed = True
            writer = self._writer
            if writer is not None:
                await self._queue.put(None)

        if writer is not None:
            await writer
