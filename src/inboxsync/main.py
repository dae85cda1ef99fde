"""
Inbox sync entry point: mirrors LinkedIn conversations, messages and
contacts from Unipile into the application database.

Runs either once (``--once``) for a single workspace/account pair, or as a
long-lived service that syncs every configured target on an interval.

Key behaviours:
    - Loads configuration from ``/etc/inbox-sync/settings.toml``
      (or ``INBOX_SYNC_CONFIG``).
    - Credentials come from the system keychain, never from the config.
    - Handles SIGTERM / SIGINT for graceful shutdown.
    - Records startup and every sync pass in the audit log.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import toml

from inboxsync.errors import AuthError
from inboxsync.models import SYNC_MODES, SYNC_SCOPES
from inboxsync.orchestrator import SyncOrchestrator
from inboxsync.provider import create_provider
from inboxsync.scheduler import SyncScheduler, SyncTarget
from inboxsync.store import SyncStore
from shared.audit import DEFAULT_AUDIT_PATH, AuditLogger
from shared.db import get_connection_pool, health_check
from shared.secrets import get_secret

logger = logging.getLogger("inboxsync.main")

_DEFAULT_CONFIG_PATH = Path(
    os.environ.get("INBOX_SYNC_CONFIG", "/etc/inbox-sync/settings.toml")
)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_config(path: Path = _DEFAULT_CONFIG_PATH) -> Dict[str, Any]:
    """Load and validate settings from a TOML file.

    Raises:
        FileNotFoundError: If the config file does not exist.
        KeyError: If required keys are missing.
        ValueError: If ``sync.mode`` or ``sync.scope`` is invalid.
    """
    config = toml.load(path)

    required = [
        ("unipile",),
        ("database",),
    ]
    for keys in required:
        obj = config
        for k in keys:
            if k not in obj:
                raise KeyError(f"Missing required config key: {'.'.join(keys)}")
            obj = obj[k]

    sync = config.setdefault("sync", {})
    mode = sync.get("mode", "incremental")
    if mode not in SYNC_MODES:
        raise ValueError(f"Invalid sync.mode {mode!r}; expected one of {sorted(SYNC_MODES)}")
    scope = sync.get("scope", "both")
    if scope not in SYNC_SCOPES:
        raise ValueError(f"Invalid sync.scope {scope!r}; expected one of {sorted(SYNC_SCOPES)}")

    for idx, target in enumerate(sync.get("targets", [])):
        for key in ("workspace_id", "account_id"):
            if not target.get(key):
                raise KeyError(f"Missing required config key: sync.targets[{idx}].{key}")

    return config


def build_targets(config: Dict[str, Any]) -> List[SyncTarget]:
    """Return the configured targets without duplicates, in file order."""
    targets: List[SyncTarget] = []
    for entry in config.get("sync", {}).get("targets", []):
        target = SyncTarget(str(entry["workspace_id"]), str(entry["account_id"]))
        if target not in targets:
            targets.append(target)
    return targets


def _database_config(config: Dict[str, Any]) -> Dict[str, Any]:
    db_config = dict(config["database"])
    if "password" not in db_config and db_config.get("password_secret", True):
        try:
            db_config["password"] = get_secret("database-password")
        except RuntimeError:
            # Peer / trust authentication needs no password.
            logger.info("No database password configured; relying on peer auth")
    db_config.pop("password_secret", None)
    return db_config


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


async def _wait_for_shutdown(poll_seconds: float = 0.5) -> None:
    while not _shutdown_event.is_set():
        await asyncio.sleep(poll_seconds)


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler: sets the shutdown event so the service exits cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main(args: argparse.Namespace) -> int:
    """Top-level async entry point.  Returns the process exit code."""
    config = load_config(Path(args.config))
    sync_config = config.get("sync", {})
    mode = args.mode or sync_config.get("mode", "incremental")
    scope = args.scope or sync_config.get("scope", "both")

    api_key = get_secret("unipile-api-key")

    pool = None
    audit = None
    provider = None
    try:
        pool = await get_connection_pool(_database_config(config))
        if not await health_check(pool):
            logger.error("Database is not reachable; aborting")
            return 1

        audit_config = config.get("audit", {})
        audit_path: Optional[Path] = DEFAULT_AUDIT_PATH
        if "log_path" in audit_config:
            audit_path = Path(audit_config["log_path"]) if audit_config["log_path"] else None
        audit = AuditLogger(
            pool if audit_config.get("database", True) else None,
            log_path=audit_path,
        )

        store = SyncStore(pool)
        provider = create_provider(config["unipile"], api_key)
        orchestrator = SyncOrchestrator(provider, store, audit=audit, config=config)
        await audit.log(
            "inboxsync", "startup", {"mode": mode, "scope": scope, "once": bool(args.once)}
        )

        if args.once:
            if not args.workspace or not args.account:
                logger.error("--once requires --workspace and --account")
                return 2
            try:
                result = await orchestrator.run_sync(
                    args.workspace, args.account, mode=mode, scope=scope
                )
            except AuthError as exc:
                logger.error("Unipile rejected the API key: %s", exc)
                return 1
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.status in ("success", "partial") else 1

        targets = build_targets(config)
        if args.workspace and args.account:
            targets = [SyncTarget(args.workspace, args.account)]
        if not targets:
            logger.error("No sync targets configured (sync.targets is empty)")
            return 2

        scheduler = SyncScheduler(
            orchestrator,
            store,
            targets,
            interval_seconds=float(sync_config.get("interval_seconds", 900.0)),
            mode=mode,
            scope=scope,
            min_interval_seconds=float(sync_config.get("min_interval_seconds", 60.0)),
        )
        scheduler.start()
        try:
            await _wait_for_shutdown()
        finally:
            await scheduler.stop()
        return 0
    finally:
        if provider is not None:
            try:
                await provider.close()
            except Exception:
                logger.exception("Failed to close provider client")
        if audit is not None:
            try:
                await audit.close()
            except Exception:
                logger.exception("Failed to flush/close audit logger")
        if pool is not None:
            try:
                await pool.close()
            except Exception:
                logger.exception("Failed to close database pool")
        logger.info("Inbox sync shut down cleanly.")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="inboxsync",
        description="Sync Unipile conversations, messages and contacts into Postgres.",
    )
    parser.add_argument("--config", default=str(_DEFAULT_CONFIG_PATH), help="Path to settings.toml")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--workspace", help="Workspace id to sync")
    parser.add_argument("--account", help="Provider account id to sync")
    parser.add_argument("--mode", choices=sorted(SYNC_MODES), help="Override sync.mode")
    parser.add_argument("--scope", choices=sorted(SYNC_SCOPES), help="Override sync.scope")
    return parser.parse_args(argv)


def run() -> None:
    """Synchronous entry point (console script or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    args = parse_args()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    sys.exit(asyncio.run(main(args)))


if __name__ == "__main__":
    run()
