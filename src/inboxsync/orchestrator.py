"""
Sync orchestrator: drives one synchronization pass for one
(workspace, account) pair:

    Listing Accounts -> Listing Conversations
        -> per conversation: Listing Attendees / Messages -> Writing

Key behaviours:
    - At most one in-flight pass per (workspace, account); a second call is
      rejected with ``SyncInProgressError``.  Different pairs may run
      concurrently on the same event loop.
    - Errors inside one conversation are counted and the pass moves on.
      Account-level errors abort the pass for that account only.
    - Incremental passes stop paginating at the stored watermark and
      deepen message fetches until they reach it; full passes walk up to
      ``max_conversations``.
    - A cancellation flag is checked between conversations.
    - Every pass is recorded against the watermark and the audit log.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from inboxsync import mapper
from inboxsync.errors import (
    AccountNotFoundError,
    AuthError,
    ConflictError,
    MappingError,
    ProviderError,
    SyncError,
    SyncInProgressError,
)
from inboxsync.models import (
    SYNC_MODES,
    SYNC_SCOPES,
    Account,
    Contact,
    Conversation,
    Message,
    SyncResult,
    Watermark,
)
from inboxsync.progress import PassProgress
from inboxsync.provider import MessagingProvider

logger = logging.getLogger("inboxsync.orchestrator")

_AUDIT_SERVICE = "inboxsync"


def _int_setting(section: Dict[str, Any], key: str, default: int, minimum: int = 0) -> int:
    try:
        value = int(section.get(key, default))
    except (TypeError, ValueError):
        logger.warning("Invalid sync.%s=%r; using %d", key, section.get(key), default)
        value = default
    return max(minimum, value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _reaches(messages: List[Message], fetched: int, limit: int, since: datetime) -> bool:
    """True when a message page covers everything back to *since*."""
    if fetched < limit:
        return True
    stamps = [m.sent_at for m in messages if m.sent_at is not None]
    # Undated pages cannot be bounded; take them as they are.
    return not stamps or min(stamps) < since


class SyncOrchestrator:
    """Runs sync passes against a provider and a store.

    Args:
        provider: Read-only messaging provider.
        store: Upsert writer (:class:`inboxsync.store.SyncStore` or compatible).
        audit: Optional :class:`shared.audit.AuditLogger`.
        config: Parsed configuration; only the ``[sync]`` section is read.
    """

    def __init__(
        self,
        provider: MessagingProvider,
        store: Any,
        audit: Any = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> None:
        section = (config or {}).get("sync", {})
        self._provider = provider
        self._store = store
        self._audit = audit
        self.max_conversations = _int_setting(section, "max_conversations", 500, minimum=1)
        self.page_size = _int_setting(section, "page_size", 50, minimum=1)
        self.full_message_limit = _int_setting(section, "full_message_limit", 100, minimum=1)
        self.incremental_message_limit = _int_setting(
            section, "incremental_message_limit", 20, minimum=1
        )
        self.incremental_overlap = timedelta(
            seconds=_int_setting(section, "incremental_overlap_seconds", 300)
        )
        self.progress_every = _int_setting(section, "progress_log_every", 5, minimum=1)
        self._in_flight: set[Tuple[str, str]] = set()
        self._cancel_flags: Dict[Tuple[str, str], asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Lock and cancellation
    # ------------------------------------------------------------------

    def is_running(self, workspace_id: str, account_id: str) -> bool:
        return (workspace_id, account_id) in self._in_flight

    def cancel(self, workspace_id: str, account_id: str) -> bool:
        """Ask a running pass to stop after its current conversation."""
        flag = self._cancel_flags.get((workspace_id, account_id))
        if flag is None:
            return False
        logger.info("Cancellation requested for %s/%s", workspace_id, account_id)
        flag.set()
        return True

    def cancel_all(self) -> int:
        for flag in self._cancel_flags.values():
            flag.set()
        return len(self._cancel_flags)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run_sync(
        self,
        workspace_id: str,
        account_id: str,
        mode: str = "incremental",
        scope: str = "both",
    ) -> SyncResult:
        """Run one pass and return its summary.

        Raises:
            ValueError: Unknown *mode* or *scope*, or missing ids.
            SyncInProgressError: A pass for the same pair is in flight.
            AuthError: Provider credentials were rejected (recorded first).
        """
        if not workspace_id or not account_id:
            raise ValueError("workspace_id and account_id are required")
        if mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode: {mode!r}")
        if scope not in SYNC_SCOPES:
            raise ValueError(f"Unknown sync scope: {scope!r}")

        key = (workspace_id, account_id)
        # Check-and-add happens before the first await, so it is atomic
        # with respect to other tasks on this loop.
        if key in self._in_flight:
            raise SyncInProgressError(workspace_id, account_id)
        self._in_flight.add(key)
        cancel_flag = asyncio.Event()
        self._cancel_flags[key] = cancel_flag
        try:
            return await self._run_pass(workspace_id, account_id, mode, scope, cancel_flag)
        finally:
            self._in_flight.discard(key)
            self._cancel_flags.pop(key, None)

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def _run_pass(
        self,
        workspace_id: str,
        account_id: str,
        mode: str,
        scope: str,
        cancel_flag: asyncio.Event,
    ) -> SyncResult:
        result = SyncResult(
            workspace_id=workspace_id,
            account_id=account_id,
            mode=mode,
            scope=scope,
            started_at=_utcnow(),
        )

        since: Optional[datetime] = None
        try:
            if mode == "incremental":
                since = await self._incremental_since(workspace_id, account_id, scope)
                if since is None:
                    result.mode = "full"

            logger.info(
                "Sync pass start: workspace=%s account=%s mode=%s scope=%s since=%s",
                workspace_id, account_id, result.mode, scope,
                since.isoformat() if since else "-",
            )
            account = await self._resolve_account(account_id)
            await self._store.upsert_account(workspace_id, account)
            conversations = await self._collect_conversations(account_id, since, result)
        except AuthError as exc:
            await self._finish(result, status="failed", error=str(exc))
            raise
        except SyncError as exc:
            logger.error(
                "Sync pass aborted for %s/%s: %s", workspace_id, account_id, exc
            )
            return await self._finish(result, status="failed", error=str(exc))

        await self._audit_log(
            "sync_pass_start",
            {
                "workspace_id": workspace_id,
                "account_id": account_id,
                "mode": result.mode,
                "scope": scope,
                "conversations": len(conversations),
                "since": since.isoformat() if since else None,
            },
        )

        progress = PassProgress(
            f"{workspace_id}/{account_id}", len(conversations), log_every=self.progress_every
        )
        for conversation in conversations:
            if cancel_flag.is_set():
                logger.info(
                    "Sync pass for %s/%s cancelled after %d conversations",
                    workspace_id, account_id, progress.done,
                )
                result.cancelled = True
                break

            created_before = result.created
            try:
                await self._sync_conversation(
                    workspace_id, account, conversation, scope, since, result
                )
            except AuthError as exc:
                await self._finish(result, status="failed", error=str(exc))
                raise
            except Exception as exc:
                logger.warning(
                    "Conversation %s failed; continuing with the next one",
                    conversation.external_id,
                    exc_info=True,
                )
                result.record_failure(f"conversation {conversation.external_id}: {exc}")
                progress.update(result.created - created_before, failed=True)
                await self._audit_log(
                    "sync_conversation_failed",
                    {
                        "workspace_id": workspace_id,
                        "account_id": account_id,
                        "conversation": conversation.external_id,
                        "error": type(exc).__name__,
                    },
                    success=False,
                )
                continue

            result.processed += 1
            progress.update(result.created - created_before)

        progress.log_complete()

        if result.cancelled:
            status = "cancelled"
        elif result.failed:
            status = "partial"
        else:
            status = "success"
        return await self._finish(result, status=status)

    async def _incremental_since(
        self, workspace_id: str, account_id: str, scope: str
    ) -> Optional[datetime]:
        """Watermark minus the overlap margin, or ``None`` when never synced."""
        watermark = await self._store.get_watermark(workspace_id, account_id, scope)
        if watermark is None or watermark.last_synced_at is None:
            logger.info(
                "No watermark for %s/%s (%s); running a full pass",
                workspace_id, account_id, scope,
            )
            return None
        return watermark.last_synced_at - self.incremental_overlap

    async def _resolve_account(self, account_id: str) -> Account:
        accounts: List[Account] = []
        for payload in await self._provider.list_accounts():
            try:
                accounts.append(mapper.map_account(payload))
            except MappingError:
                logger.warning("Skipping malformed account payload", exc_info=True)

        for account in accounts:
            if account.external_id == account_id:
                if not account.connected:
                    raise AccountNotFoundError(
                        f"account {account_id} is not connected (status={account.status})"
                    )
                return account
        raise AccountNotFoundError(
            f"account {account_id} is not among the {len(accounts)} provider accounts"
        )

    async def _collect_conversations(
        self,
        account_id: str,
        since: Optional[datetime],
        result: SyncResult,
    ) -> List[Conversation]:
        """Page through conversations until empty, the watermark, or the cap."""
        collected: List[Conversation] = []
        seen: set[str] = set()
        page: Any = None
        while True:
            chunk = await self._provider.list_conversations(
                account_id, page=page, limit=self.page_size
            )
            if not chunk.items:
                break

            reached_watermark = False
            fresh = 0
            for payload in chunk.items:
                try:
                    conversation = mapper.map_conversation(payload, account_id)
                except MappingError as exc:
                    logger.warning("Skipping malformed conversation: %s", exc)
                    result.record_failure(f"conversation payload: {exc}")
                    fresh += 1
                    continue
                if conversation.external_id in seen:
                    continue
                fresh += 1
                if (
                    since is not None
                    and conversation.last_activity_at is not None
                    and conversation.last_activity_at < since
                ):
                    reached_watermark = True
                    break
                seen.add(conversation.external_id)
                collected.append(conversation)
                if len(collected) >= self.max_conversations:
                    break

            if reached_watermark:
                logger.debug("Reached watermark after %d conversations", len(collected))
                break
            if len(collected) >= self.max_conversations:
                logger.info(
                    "Capped pass at %d conversations for account %s",
                    self.max_conversations, account_id,
                )
                break
            if chunk.next_page is None:
                break
            if chunk.next_page == page or not fresh:
                logger.warning(
                    "Conversation paging for account %s stalled at page %r; stopping",
                    account_id, page,
                )
                break
            page = chunk.next_page
        return collected

    async def _sync_conversation(
        self,
        workspace_id: str,
        account: Account,
        conversation: Conversation,
        scope: str,
        since: Optional[datetime],
        result: SyncResult,
    ) -> None:
        contacts: List[Contact] = []
        try:
            raw_attendees = await self._provider.list_attendees(conversation.external_id)
        except (ProviderError, MappingError) as exc:
            if isinstance(exc, AuthError) or scope == "contacts":
                raise
            # Attendees only enrich the conversation when contacts are not synced.
            logger.warning(
                "Attendees unavailable for conversation %s: %s",
                conversation.external_id, exc,
            )
        else:
            contacts, skipped = mapper.map_attendees(raw_attendees)
            if skipped and scope != "messages":
                result.record_failure(
                    f"conversation {conversation.external_id}: {skipped} malformed attendees",
                    count=skipped,
                )
        if contacts:
            conversation = mapper.apply_participant(conversation, contacts[0])

        conversation_id, created = await self._store.upsert_conversation(
            workspace_id, conversation
        )
        if created:
            result.conversations_created += 1

        if scope in ("messages", "both"):
            messages, skipped = await self._fetch_messages(
                account.external_id, conversation.external_id, since, result
            )
            if skipped:
                result.record_failure(
                    f"conversation {conversation.external_id}: {skipped} malformed messages",
                    count=skipped,
                )
            written = await self._store.upsert_messages(workspace_id, conversation_id, messages)
            result.created += written.created
            if written.failed:
                result.record_failure(
                    f"conversation {conversation.external_id}: {written.failed} message rows rejected",
                    count=written.failed,
                )

        if scope in ("contacts", "both"):
            for contact in contacts:
                try:
                    if await self._store.upsert_contact(workspace_id, contact):
                        result.contacts_created += 1
                except ConflictError as exc:
                    logger.warning("Skipping contact %s: %s", contact.external_id, exc)
                    result.record_failure(f"contact {contact.external_id}: {exc}")

    async def _fetch_messages(
        self,
        account_id: str,
        conversation_id: str,
        since: Optional[datetime],
        result: SyncResult,
    ) -> Tuple[List[Message], int]:
        """Fetch a conversation's recent messages, back to *since* when set.

        Incremental passes start with a short page and deepen it to
        ``full_message_limit`` while the page is full and still newer than
        *since*.  If even the deep page does not reach *since*, the gap is
        recorded as a failure so the watermark stays put.
        """
        if since is None:
            raw = await self._provider.list_messages(
                account_id, conversation_id, self.full_message_limit
            )
            return mapper.map_messages(conversation_id, raw)

        limit = self.incremental_message_limit
        raw = await self._provider.list_messages(account_id, conversation_id, limit)
        messages, skipped = mapper.map_messages(conversation_id, raw)
        if _reaches(messages, len(raw), limit, since):
            return messages, skipped

        if limit < self.full_message_limit:
            logger.debug(
                "Conversation %s has more than %d new messages; deepening fetch",
                conversation_id, limit,
            )
            limit = self.full_message_limit
            raw = await self._provider.list_messages(account_id, conversation_id, limit)
            messages, skipped = mapper.map_messages(conversation_id, raw)
            if _reaches(messages, len(raw), limit, since):
                return messages, skipped

        logger.warning(
            "Conversation %s has more than %d messages since %s; older ones not fetched",
            conversation_id, limit, since.isoformat(),
        )
        result.record_failure(
            f"conversation {conversation_id}: more than {limit} messages since the watermark"
        )
        return messages, skipped

    async def _finish(
        self,
        result: SyncResult,
        status: str,
        error: Optional[str] = None,
    ) -> SyncResult:
        result.status = status
        result.error = error
        result.finished_at = _utcnow()

        watermark = Watermark(
            workspace_id=result.workspace_id,
            account_id=result.account_id,
            sync_type=result.scope,
            last_synced_at=result.started_at,
            last_status=status,
            processed=result.processed,
            created=result.created,
            failed=result.failed,
            last_error=error or (result.errors[0] if result.errors else None),
        )
        try:
            await self._store.save_watermark(watermark, advance=status == "success")
        except Exception:
            logger.exception(
                "Failed to save watermark for %s/%s", result.workspace_id, result.account_id
            )

        logger.info(
            "Sync pass %s: workspace=%s account=%s processed=%d created=%d failed=%d",
            status, result.workspace_id, result.account_id,
            result.processed, result.created, result.failed,
        )
        await self._audit_log("sync_pass", result.to_dict(), success=status == "success")
        return result

    # ------------------------------------------------------------------
    # Webhook events
    # ------------------------------------------------------------------

    async def apply_event(self, workspace_id: str, event: Dict[str, Any]) -> int:
        """Upsert the message carried by a provider webhook event.

        Only message events are handled, and only for conversations that a
        pass has already stored.  Returns the number of messages created.
        """
        if not workspace_id:
            raise ValueError("workspace_id is required")
        if not mapper.is_message_event(event):
            logger.debug("Ignoring non-message webhook event")
            return 0

        conversation_external_id, message = mapper.map_webhook_message(event)
        provider = str(event.get("account_type") or mapper.DEFAULT_PROVIDER).lower()
        conversation_id = await self._store.get_conversation_id(
            workspace_id, provider, conversation_external_id
        )
        if conversation_id is None:
            logger.info(
                "Webhook message for unknown conversation %s; left for the next pass",
                conversation_external_id,
            )
            return 0

        written = await self._store.upsert_messages(workspace_id, conversation_id, [message])
        await self._audit_log(
            "webhook_event",
            {
                "workspace_id": workspace_id,
                "conversation": conversation_external_id,
                "created": written.created,
            },
            success=written.failed == 0,
        )
        return written.created

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    async def _audit_log(
        self,
        action: str,
        details: Dict[str, Any],
        success: bool = True,
    ) -> None:
        if self._audit is None:
            return
        try:
            await self._audit.log(_AUDIT_SERVICE, action, details, success=success)
        except Exception:
            logger.exception("Failed to record audit event %s", action)
