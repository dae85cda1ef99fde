"""
PostgreSQL upsert writer for synced inbox data.

Uses ``asyncpg`` for async database access.  All queries use parameterized
placeholders ($1, $2, ...), **never** string interpolation.

Every write is an idempotent upsert keyed by a stable external identifier
and scoped to an explicit workspace id:

    - accounts, conversations, contacts: ``(workspace_id, provider, external_id)``
    - messages: ``(conversation_id, external_id)``

The schema itself is owned by the hosting database (Supabase); this module
only relies on those unique constraints existing.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg

from inboxsync.errors import ConflictError
from inboxsync.models import (
    Account,
    Contact,
    Conversation,
    Message,
    Watermark,
    WriteResult,
)

logger = logging.getLogger("inboxsync.store")

_UPSERT_ACCOUNT_SQL = """
    INSERT INTO accounts (
        workspace_id, provider, external_id, display_name, status, connected, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, NOW())
    ON CONFLICT (workspace_id, provider, external_id)
    DO UPDATE SET
        display_name = EXCLUDED.display_name,
        status = EXCLUDED.status,
        connected = EXCLUDED.connected,
        updated_at = NOW()
    WHERE
        accounts.display_name IS DISTINCT FROM EXCLUDED.display_name
        OR accounts.status IS DISTINCT FROM EXCLUDED.status
        OR accounts.connected IS DISTINCT FROM EXCLUDED.connected
"""

_UPSERT_CONVERSATION_SQL = """
    INSERT INTO conversations (
        workspace_id, provider, external_id, account_external_id,
        participant_name, participant_first_name, participant_last_name,
        participant_company, participant_title, participant_provider_id,
        participant_profile_url, last_activity_at, status, is_inmail,
        unread_count, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, NOW())
    ON CONFLICT (workspace_id, provider, external_id)
    DO UPDATE SET
        account_external_id = EXCLUDED.account_external_id,
        participant_name = EXCLUDED.participant_name,
        participant_first_name = EXCLUDED.participant_first_name,
        participant_last_name = EXCLUDED.participant_last_name,
        participant_company = EXCLUDED.participant_company,
        participant_title = EXCLUDED.participant_title,
        participant_provider_id = EXCLUDED.participant_provider_id,
        participant_profile_url = EXCLUDED.participant_profile_url,
        last_activity_at = EXCLUDED.last_activity_at,
        status = EXCLUDED.status,
        is_inmail = EXCLUDED.is_inmail,
        unread_count = EXCLUDED.unread_count,
        updated_at = NOW()
    WHERE
        (conversations.account_external_id, conversations.participant_name,
         conversations.participant_first_name, conversations.participant_last_name,
         conversations.participant_company, conversations.participant_title,
         conversations.participant_provider_id, conversations.participant_profile_url,
         conversations.last_activity_at, conversations.status,
         conversations.is_inmail, conversations.unread_count)
        IS DISTINCT FROM
        (EXCLUDED.account_external_id, EXCLUDED.participant_name,
         EXCLUDED.participant_first_name, EXCLUDED.participant_last_name,
         EXCLUDED.participant_company, EXCLUDED.participant_title,
         EXCLUDED.participant_provider_id, EXCLUDED.participant_profile_url,
         EXCLUDED.last_activity_at, EXCLUDED.status,
         EXCLUDED.is_inmail, EXCLUDED.unread_count)
    RETURNING id, (xmax = 0) AS inserted
"""

_SELECT_CONVERSATION_ID_SQL = """
    SELECT id
    FROM conversations
    WHERE workspace_id = $1 AND provider = $2 AND external_id = $3
"""

_UPSERT_CONTACT_SQL = """
    INSERT INTO contacts (
        workspace_id, provider, external_id, full_name, first_name, last_name,
        company, title, profile_url, picture_url, network_distance, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, NOW())
    ON CONFLICT (workspace_id, provider, external_id)
    DO UPDATE SET
        full_name = COALESCE(EXCLUDED.full_name, contacts.full_name),
        first_name = COALESCE(NULLIF(EXCLUDED.first_name, 'Unknown'), contacts.first_name),
        last_name = COALESCE(EXCLUDED.last_name, contacts.last_name),
        company = COALESCE(EXCLUDED.company, contacts.company),
        title = COALESCE(EXCLUDED.title, contacts.title),
        profile_url = COALESCE(EXCLUDED.profile_url, contacts.profile_url),
        picture_url = COALESCE(EXCLUDED.picture_url, contacts.picture_url),
        network_distance = COALESCE(EXCLUDED.network_distance, contacts.network_distance),
        updated_at = NOW()
    WHERE
        (contacts.full_name, contacts.first_name, contacts.last_name,
         contacts.company, contacts.title, contacts.profile_url,
         contacts.picture_url, contacts.network_distance)
        IS DISTINCT FROM
        (COALESCE(EXCLUDED.full_name, contacts.full_name),
         COALESCE(NULLIF(EXCLUDED.first_name, 'Unknown'), contacts.first_name),
         COALESCE(EXCLUDED.last_name, contacts.last_name),
         COALESCE(EXCLUDED.company, contacts.company),
         COALESCE(EXCLUDED.title, contacts.title),
         COALESCE(EXCLUDED.profile_url, contacts.profile_url),
         COALESCE(EXCLUDED.picture_url, contacts.picture_url),
         COALESCE(EXCLUDED.network_distance, contacts.network_distance))
    RETURNING (xmax = 0) AS inserted
"""

_MESSAGE_COLUMNS = (
    "workspace_id, conversation_id, external_id, from_self, "
    "body, sent_at, sender_provider_id, id_synthesized"
)
_MESSAGE_ROW_WIDTH = 8

_SELECT_WATERMARK_SQL = """
    SELECT workspace_id, account_id, sync_type, last_synced_at, last_status,
           processed, created, failed, last_error
    FROM sync_watermarks
    WHERE workspace_id = $1 AND account_id = $2 AND sync_type = $3
"""

_UPSERT_WATERMARK_SQL = """
    INSERT INTO sync_watermarks (
        workspace_id, account_id, sync_type, last_synced_at, last_status,
        processed, created, failed, last_error, updated_at
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, NOW())
    ON CONFLICT (workspace_id, account_id, sync_type)
    DO UPDATE SET
        last_synced_at = COALESCE(EXCLUDED.last_synced_at, sync_watermarks.last_synced_at),
        last_status = EXCLUDED.last_status,
        processed = EXCLUDED.processed,
        created = EXCLUDED.created,
        failed = EXCLUDED.failed,
        last_error = EXCLUDED.last_error,
        updated_at = NOW()
"""


class SyncStore:
    """Workspace-scoped upsert writer.

    Args:
        pool: An ``asyncpg`` connection pool (created via
              :func:`shared.db.get_connection_pool`).
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool
        self._batch_insert_sql_cache: Dict[int, str] = {}

    # ------------------------------------------------------------------
    # Accounts and conversations
    # ------------------------------------------------------------------

    async def upsert_account(self, workspace_id: str, account: Account) -> None:
        try:
            await self._pool.execute(
                _UPSERT_ACCOUNT_SQL,
                workspace_id,
                account.provider,
                account.external_id,
                account.display_name,
                account.status,
                account.connected,
            )
        except asyncpg.PostgresError as exc:
            raise ConflictError(f"account {account.external_id}: {exc}") from exc

    async def upsert_conversation(
        self,
        workspace_id: str,
        conversation: Conversation,
    ) -> Tuple[Any, bool]:
        """Insert or update a conversation.

        Returns:
            ``(conversation_id, created)`` where *created* is ``True`` only
            when a new row was inserted.
        """
        try:
            row = await self._pool.fetchrow(
                _UPSERT_CONVERSATION_SQL,
                workspace_id,
                conversation.provider,
                conversation.external_id,
                conversation.account_external_id,
                conversation.participant_name,
                conversation.participant_first_name,
                conversation.participant_last_name,
                conversation.participant_company,
                conversation.participant_title,
                conversation.participant_provider_id,
                conversation.participant_profile_url,
                conversation.last_activity_at,
                conversation.status,
                conversation.is_inmail,
                conversation.unread_count,
            )
        except asyncpg.IntegrityConstraintViolationError as exc:
            raise ConflictError(f"conversation {conversation.external_id}: {exc}") from exc

        if row is not None:
            return row["id"], bool(row["inserted"])

        # Unchanged row: the conditional update returned nothing.
        conversation_id = await self.get_conversation_id(
            workspace_id, conversation.provider, conversation.external_id
        )
        if conversation_id is None:
            raise ConflictError(
                f"conversation {conversation.external_id} vanished during upsert"
            )
        return conversation_id, False

    async def get_conversation_id(
        self,
        workspace_id: str,
        provider: str,
        external_id: str,
    ) -> Optional[Any]:
        return await self._pool.fetchval(
            _SELECT_CONVERSATION_ID_SQL, workspace_id, provider, external_id
        )

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    @staticmethod
    def _message_params(
        workspace_id: str,
        conversation_id: Any,
        message: Message,
    ) -> tuple:
        return (
            workspace_id,
            conversation_id,
            message.external_id,
            message.from_self,
            message.body,
            message.sent_at,
            message.sender_provider_id,
            message.id_synthesized,
        )

    def _build_batch_insert_sql(self, row_count: int) -> str:
        sql = self._batch_insert_sql_cache.get(row_count)
        if sql is not None:
            return sql
        values_sql: List[str] = []
        for idx in range(row_count):
            base = idx * _MESSAGE_ROW_WIDTH
            placeholders = ", ".join(
                f"${base + i}" for i in range(1, _MESSAGE_ROW_WIDTH + 1)
            )
            values_sql.append(f"({placeholders})")
        sql = (
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES "
            + ", ".join(values_sql)
            + " ON CONFLICT (conversation_id, external_id) DO NOTHING"
            + " RETURNING external_id"
        )
        self._batch_insert_sql_cache[row_count] = sql
        return sql

    async def upsert_messages(
        self,
        workspace_id: str,
        conversation_id: Any,
        messages: Sequence[Message],
    ) -> WriteResult:
        """Insert messages that are not stored yet.

        The batch is written in one statement.  If that statement fails, the
        rows are retried one by one so a single bad row cannot block the
        others; rows that still fail are counted, not raised.
        """
        if not messages:
            return WriteResult()

        params: List[Any] = []
        for message in messages:
            params.extend(self._message_params(workspace_id, conversation_id, message))

        try:
            rows = await self._pool.fetch(self._build_batch_insert_sql(len(messages)), *params)
        except asyncpg.PostgresError:
            logger.warning(
                "Batch insert failed for conversation %s; retrying %d rows individually",
                conversation_id,
                len(messages),
                exc_info=True,
            )
            return await self._upsert_messages_rowwise(workspace_id, conversation_id, messages)

        logger.debug(
            "Batch insert: %d/%d new messages for conversation %s",
            len(rows),
            len(messages),
            conversation_id,
        )
        return WriteResult(created=len(rows), failed=0)

    async def _upsert_messages_rowwise(
        self,
        workspace_id: str,
        conversation_id: Any,
        messages: Sequence[Message],
    ) -> WriteResult:
        result = WriteResult()
        sql = self._build_batch_insert_sql(1)
        for message in messages:
            try:
                rows = await self._pool.fetch(
                    sql, *self._message_params(workspace_id, conversation_id, message)
                )
            except asyncpg.PostgresError as exc:
                conflict = ConflictError(f"message {message.external_id}: {exc}")
                logger.warning("Skipping message row: %s", conflict)
                result.failed += 1
                continue
            result.created += len(rows)
        return result

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def upsert_contact(self, workspace_id: str, contact: Contact) -> bool:
        """Insert or update a contact.  Returns ``True`` when a row was inserted."""
        try:
            row = await self._pool.fetchrow(
                _UPSERT_CONTACT_SQL,
                workspace_id,
                contact.provider,
                contact.external_id,
                contact.full_name,
                contact.first_name,
                contact.last_name,
                contact.company,
                contact.title,
                contact.profile_url,
                contact.picture_url,
                contact.network_distance,
            )
        except asyncpg.PostgresError as exc:
            raise ConflictError(f"contact {contact.external_id}: {exc}") from exc
        return row is not None and bool(row["inserted"])

    # ------------------------------------------------------------------
    # Watermarks
    # ------------------------------------------------------------------

    async def get_watermark(
        self,
        workspace_id: str,
        account_id: str,
        sync_type: str,
    ) -> Optional[Watermark]:
        try:
            row = await self._pool.fetchrow(
                _SELECT_WATERMARK_SQL, workspace_id, account_id, sync_type
            )
        except asyncpg.PostgresError as exc:
            raise ConflictError(
                f"watermark {workspace_id}/{account_id}/{sync_type}: {exc}"
            ) from exc
        if row is None:
            return None
        return Watermark(
            workspace_id=str(row["workspace_id"]),
            account_id=row["account_id"],
            sync_type=row["sync_type"],
            last_synced_at=row["last_synced_at"],
            last_status=row["last_status"],
            processed=row["processed"] or 0,
            created=row["created"] or 0,
            failed=row["failed"] or 0,
            last_error=row["last_error"],
        )

    async def save_watermark(self, watermark: Watermark, advance: bool = True) -> None:
        """Persist pass counts; move ``last_synced_at`` only when *advance*."""
        await self._pool.execute(
            _UPSERT_WATERMARK_SQL,
            watermark.workspace_id,
            watermark.account_id,
            watermark.sync_type,
            watermark.last_synced_at if advance else None,
            watermark.last_status,
            watermark.processed,
            watermark.created,
            watermark.failed,
            watermark.last_error,
        )
