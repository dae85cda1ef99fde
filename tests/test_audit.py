"""
Unit tests for the audit logger's file and database sinks.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from shared.audit import AuditLogger


def _pool():
    conn = MagicMock()
    conn.executemany = AsyncMock()
    acquire = MagicMock()
    acquire.__aenter__ = AsyncMock(return_value=conn)
    acquire.__aexit__ = AsyncMock(return_value=False)
    pool = MagicMock()
    pool.acquire.return_value = acquire
    return pool, conn


class TestAuditLogger:
    @pytest.mark.asyncio
    async def test_writes_file_and_database(self, tmp_path):
        pool, conn = _pool()
        log_path = tmp_path / "audit" / "audit.log"
        audit = AuditLogger(pool, log_path=log_path)

        await audit.log(
            "inboxsync", "sync_pass", {"workspace_id": "ws", "account_id": "acc", "created": 3}
        )
        await audit.log("inboxsync", "startup", {}, success=True)
        await audit.close()

        lines = [json.loads(line) for line in log_path.read_text().splitlines()]
        assert [line["action"] for line in lines] == ["sync_pass", "startup"]
        assert lines[0]["workspace_id"] == "ws"
        assert lines[0]["details"]["created"] == 3

        rows = [row for call in conn.executemany.await_args_list for row in call.args[1]]
        assert rows[0][:4] == ("inboxsync", "sync_pass", "ws", "acc")
        assert json.loads(rows[0][4]) == {"workspace_id": "ws", "account_id": "acc", "created": 3}
        assert rows[1][2] is None

    @pytest.mark.asyncio
    async def test_database_failure_keeps_file(self, tmp_path):
        pool, conn = _pool()
        conn.executemany.side_effect = asyncpg.UndefinedTableError("no table")
        log_path = tmp_path / "audit.log"
        audit = AuditLogger(pool, log_path=log_path)

        await audit.log("inboxsync", "sync_pass", {"created": 1}, success=False)
        await audit.close()

        assert json.loads(log_path.read_text())["success"] is False

    @pytest.mark.asyncio
    async def test_sinks_can_be_disabled(self):
        audit = AuditLogger(None, log_path=None)
        await audit.log("inboxsync", "startup")
        await audit.close()

    @pytest.mark.asyncio
    async def test_events_after_close_dropped(self, tmp_path):
        log_path = tmp_path / "audit.log"
        audit = AuditLogger(None, log_path=log_path)
        await audit.close()
        await audit.log("inboxsync", "startup")
        assert not log_path.exists()
