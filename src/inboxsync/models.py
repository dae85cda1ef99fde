"""
Entity records produced by the mapper and consumed by the store.

These are plain dataclasses; none of them knows about the provider's JSON
shape or the database schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

SYNC_MODES = frozenset({"full", "incremental"})
SYNC_SCOPES = frozenset({"messages", "contacts", "both"})

# Cap on per-item failure descriptions kept on a SyncResult.
_MAX_RESULT_ERRORS = 50


@dataclass(slots=True)
class Account:
    external_id: str
    provider: str
    display_name: Optional[str] = None
    status: Optional[str] = None
    connected: bool = False


@dataclass(slots=True)
class Conversation:
    external_id: str
    account_external_id: Optional[str]
    provider: str
    participant_name: str
    participant_first_name: str
    participant_last_name: Optional[str] = None
    participant_company: Optional[str] = None
    participant_title: Optional[str] = None
    participant_provider_id: Optional[str] = None
    participant_profile_url: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    status: str = "active"
    is_inmail: bool = False
    unread_count: int = 0


@dataclass(slots=True)
class Message:
    external_id: str
    conversation_external_id: str
    from_self: bool
    body: str
    sent_at: Optional[datetime] = None
    sender_provider_id: Optional[str] = None
    id_synthesized: bool = False


@dataclass(slots=True)
class Contact:
    external_id: str
    provider: str
    full_name: Optional[str]
    first_name: str
    last_name: Optional[str] = None
    company: Optional[str] = None
    title: Optional[str] = None
    profile_url: Optional[str] = None
    picture_url: Optional[str] = None
    network_distance: Optional[str] = None


@dataclass(slots=True)
class Watermark:
    """Per (workspace, account, sync type) record of the last pass."""

    workspace_id: str
    account_id: str
    sync_type: str
    last_synced_at: Optional[datetime] = None
    last_status: Optional[str] = None
    processed: int = 0
    created: int = 0
    failed: int = 0
    last_error: Optional[str] = None


@dataclass(slots=True)
class WriteResult:
    created: int = 0
    failed: int = 0


@dataclass
class SyncResult:
    """Summary of one pass.  Partial failures are reported, not raised."""

    workspace_id: str
    account_id: str
    mode: str
    scope: str
    processed: int = 0
    created: int = 0
    failed: int = 0
    conversations_created: int = 0
    contacts_created: int = 0
    status: str = "running"
    cancelled: bool = False
    error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def record_failure(self, description: str, count: int = 1) -> None:
        """Count *count* failed items and keep a bounded description list."""
        self.failed += count
        if len(self.errors) < _MAX_RESULT_ERRORS:
            self.errors.append(description)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workspace_id": self.workspace_id,
            "account_id": self.account_id,
            "mode": self.mode,
            "scope": self.scope,
            "processed": self.processed,
            "created": self.created,
            "failed": self.failed,
            "conversations_created": self.conversations_created,
            "contacts_created": self.contacts_created,
            "status": self.status,
            "cancelled": self.cancelled,
            "error": self.error,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
