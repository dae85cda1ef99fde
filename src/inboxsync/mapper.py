"""
Entity mapper: pure transformation from Unipile JSON to ``inboxsync.models``.

No I/O.  Missing optional fields become ``None``; ``MappingError`` is raised
only when a payload cannot be addressed at all (not an object, or no stable
identifier can be derived).

Message ids from the provider are not trusted to be present or unique.  When
the id is missing, a deterministic key is synthesized from the conversation
id, the timestamp and a hash of the normalized body, so the same message maps
to the same key on every pass.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from inboxsync.errors import MappingError
from inboxsync.models import Account, Contact, Conversation, Message

logger = logging.getLogger("inboxsync.mapper")

DEFAULT_PROVIDER = "linkedin"
UNKNOWN_NAME = "Unknown"

_CONNECTED_STATUSES = {"ok", "connected", "active", "running"}
_ARCHIVED_STATUSES = {"archived", "archive"}
_INMAIL_MARKERS = {"inmail", "sponsored"}
_WEBHOOK_MESSAGE_EVENTS = {"message_received", "message.received", "message.sent", "message_sent"}

# Anything below this is treated as epoch seconds, above as epoch milliseconds.
_EPOCH_MS_THRESHOLD = 10_000_000_000


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _str_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _truthy(value: Any) -> bool:
    """Interpret the provider's 0/1, "true"/"false" and bool flags."""
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return bool(value)


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return value
    return None


def _require_object(payload: Any, kind: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise MappingError(f"{kind} payload is not an object: {type(payload).__name__}")
    return payload


def split_name(name: Any) -> Tuple[str, Optional[str]]:
    """Split a display name on the first whitespace.

    Returns ``("Unknown", None)`` when the name is absent.
    """
    text = _str_or_none(name)
    if text is None:
        return UNKNOWN_NAME, None
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], None
    return parts[0], parts[1].strip() or None


def split_occupation(occupation: Any) -> Tuple[Optional[str], Optional[str]]:
    """Split ``"VP Sales at Acme"`` into ``("VP Sales", "Acme")``."""
    text = _str_or_none(occupation)
    if text is None:
        return None, None
    title, sep, company = text.rpartition(" at ")
    if not sep or not title.strip() or not company.strip():
        return text, None
    return title.strip(), company.strip()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings and epoch seconds/milliseconds into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = value / 1000.0 if abs(value) >= _EPOCH_MS_THRESHOLD else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    else:
        text = str(value).strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unparseable timestamp: %r", value)
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def normalize_body(text: Any) -> str:
    """Collapse whitespace so cosmetic differences do not change the key."""
    if text is None:
        return ""
    return " ".join(str(text).split())


def synthesize_message_id(
    conversation_id: str,
    sent_at: Optional[datetime],
    body: Any,
) -> str:
    """Deterministic message key for payloads without a provider id."""
    stamp = sent_at.isoformat() if sent_at is not None else "-"
    digest = hashlib.sha256(normalize_body(body).encode("utf-8")).hexdigest()[:16]
    return f"{conversation_id}:{stamp}:{digest}"


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def map_account(payload: Any) -> Account:
    data = _require_object(payload, "account")
    external_id = _str_or_none(_first(data, "id", "account_id"))
    if external_id is None:
        raise MappingError("account payload has no id")

    status = _str_or_none(data.get("status"))
    if status is None:
        sources = data.get("sources")
        if isinstance(sources, list) and sources and isinstance(sources[0], dict):
            status = _str_or_none(sources[0].get("status"))

    provider = _str_or_none(_first(data, "type", "provider")) or DEFAULT_PROVIDER
    return Account(
        external_id=external_id,
        provider=provider.lower(),
        display_name=_str_or_none(_first(data, "name", "username")),
        status=status,
        connected=status is not None and status.lower() in _CONNECTED_STATUSES,
    )


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


def _embedded_participant(data: Dict[str, Any]) -> Dict[str, Any]:
    participants = data.get("attendees") or data.get("participants")
    if not isinstance(participants, list):
        return {}
    others = [
        p for p in participants
        if isinstance(p, dict) and not _truthy(p.get("is_self"))
    ]
    return others[0] if others else {}


def _is_inmail(data: Dict[str, Any]) -> bool:
    if _truthy(data.get("is_inmail")):
        return True
    for key in ("content_type", "type", "message_type"):
        value = data.get(key)
        if isinstance(value, str) and value.strip().lower() in _INMAIL_MARKERS:
            return True
    return False


def map_conversation(payload: Any, account_id: Optional[str] = None) -> Conversation:
    data = _require_object(payload, "conversation")
    external_id = _str_or_none(_first(data, "id", "chat_id"))
    if external_id is None:
        raise MappingError("conversation payload has no id")

    participant = _embedded_participant(data)
    name = _first(participant, "name") or _first(data, "name")
    first_name, last_name = split_name(name)
    title, company = split_occupation(
        _first(participant.get("specifics") or {}, "occupation")
        or _first(participant, "headline", "title")
    )

    status_raw = _str_or_none(data.get("status"))
    archived = _truthy(data.get("archived")) or (
        status_raw is not None and status_raw.lower() in _ARCHIVED_STATUSES
    )

    try:
        unread = int(data.get("unread_count") or 0)
    except (TypeError, ValueError):
        unread = 0

    provider = _str_or_none(_first(data, "account_type", "provider")) or DEFAULT_PROVIDER
    return Conversation(
        external_id=external_id,
        account_external_id=_str_or_none(data.get("account_id")) or account_id,
        provider=provider.lower(),
        participant_name=_str_or_none(name) or UNKNOWN_NAME,
        participant_first_name=first_name,
        participant_last_name=last_name,
        participant_company=_str_or_none(_first(participant, "company")) or company,
        participant_title=title,
        participant_provider_id=_str_or_none(
            _first(data, "attendee_provider_id") or _first(participant, "provider_id")
        ),
        participant_profile_url=_str_or_none(_first(participant, "profile_url", "linkedin_url")),
        last_activity_at=parse_timestamp(
            _first(data, "timestamp", "last_message_at", "updated_at")
        ),
        status="archived" if archived else "active",
        is_inmail=_is_inmail(data),
        unread_count=max(0, unread),
    )


def apply_participant(conversation: Conversation, contact: Contact) -> Conversation:
    """Fill participant fields from the conversation's non-self attendee."""
    if contact.full_name:
        name = contact.full_name
        first_name, last_name = contact.first_name, contact.last_name
    else:
        name = conversation.participant_name
        first_name = conversation.participant_first_name
        last_name = conversation.participant_last_name
    return dataclasses.replace(
        conversation,
        participant_name=name,
        participant_first_name=first_name,
        participant_last_name=last_name,
        participant_company=contact.company or conversation.participant_company,
        participant_title=contact.title or conversation.participant_title,
        participant_provider_id=conversation.participant_provider_id or contact.external_id,
        participant_profile_url=contact.profile_url or conversation.participant_profile_url,
    )


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


def map_message(payload: Any, conversation_id: str) -> Message:
    data = _require_object(payload, "message")
    body_raw = _first(data, "text", "body", "content")
    body = "" if body_raw is None else str(body_raw)
    sent_at = parse_timestamp(_first(data, "timestamp", "sent_at", "created_at", "date"))

    sender = data.get("from") if isinstance(data.get("from"), dict) else {}
    provider_id = _str_or_none(_first(data, "id", "message_id"))
    if provider_id is None and sent_at is None:
        raise MappingError(
            f"message in conversation {conversation_id} has neither id nor timestamp"
        )

    if "is_sender" in data:
        from_self = _truthy(data.get("is_sender"))
    else:
        from_self = _truthy(sender.get("is_self")) or (
            str(data.get("direction") or "").lower() == "outbound"
        )

    return Message(
        external_id=provider_id or synthesize_message_id(conversation_id, sent_at, body),
        conversation_external_id=conversation_id,
        from_self=from_self,
        body=body,
        sent_at=sent_at,
        sender_provider_id=_str_or_none(
            _first(data, "sender_id", "sender_attendee_id") or _first(sender, "provider_id")
        ),
        id_synthesized=provider_id is None,
    )


def _message_sort_key(message: Message) -> Tuple[int, datetime]:
    # Undated messages sort after dated ones, keeping their relative order.
    if message.sent_at is None:
        return (1, datetime.min.replace(tzinfo=timezone.utc))
    return (0, message.sent_at)


def map_messages(
    conversation_id: str,
    payloads: Iterable[Any],
) -> Tuple[List[Message], int]:
    """Map a page of messages, oldest first, de-duplicated by key.

    Returns:
        ``(messages, skipped)`` where *skipped* counts malformed payloads.
    """
    mapped: List[Message] = []
    skipped = 0
    for payload in payloads:
        try:
            mapped.append(map_message(payload, conversation_id))
        except MappingError:
            skipped += 1
            logger.warning(
                "Skipping malformed message in conversation %s", conversation_id,
                exc_info=True,
            )

    mapped.sort(key=_message_sort_key)

    seen: set[str] = set()
    unique: List[Message] = []
    for message in mapped:
        if message.external_id in seen:
            logger.debug(
                "Dropping duplicate message key %s in conversation %s",
                message.external_id,
                conversation_id,
            )
            continue
        seen.add(message.external_id)
        unique.append(message)
    return unique, skipped


# ---------------------------------------------------------------------------
# Contacts
# ---------------------------------------------------------------------------


def map_contact(payload: Any) -> Contact:
    data = _require_object(payload, "attendee")
    external_id = _str_or_none(_first(data, "provider_id", "id"))
    if external_id is None:
        raise MappingError("attendee payload has no provider id")

    specifics = data.get("specifics") if isinstance(data.get("specifics"), dict) else {}
    full_name = _str_or_none(_first(data, "name", "display_name"))
    first_name, last_name = split_name(full_name)
    title, company = split_occupation(
        _first(specifics, "occupation") or _first(data, "headline", "title")
    )

    provider = _str_or_none(_first(specifics, "provider")) or DEFAULT_PROVIDER
    return Contact(
        external_id=external_id,
        provider=provider.lower(),
        full_name=full_name,
        first_name=_str_or_none(data.get("first_name")) or first_name,
        last_name=_str_or_none(data.get("last_name")) or last_name,
        company=_str_or_none(data.get("company")) or company,
        title=title,
        profile_url=_str_or_none(_first(data, "profile_url", "linkedin_url")),
        picture_url=_str_or_none(_first(data, "picture_url", "profile_picture")),
        network_distance=_str_or_none(_first(specifics, "network_distance")),
    )


def map_attendees(payloads: Iterable[Any]) -> Tuple[List[Contact], int]:
    """Map attendees to contacts, dropping the account owner's own entry.

    Returns:
        ``(contacts, skipped)`` where *skipped* counts malformed payloads
        (``is_self`` entries are filtered, not skipped).
    """
    contacts: List[Contact] = []
    seen: set[str] = set()
    skipped = 0
    for payload in payloads:
        if isinstance(payload, dict) and _truthy(payload.get("is_self")):
            continue
        try:
            contact = map_contact(payload)
        except MappingError:
            skipped += 1
            logger.warning("Skipping malformed attendee", exc_info=True)
            continue
        if contact.external_id in seen:
            continue
        seen.add(contact.external_id)
        contacts.append(contact)
    return contacts, skipped


# ---------------------------------------------------------------------------
# Webhook events
# ---------------------------------------------------------------------------


def is_message_event(event: Any) -> bool:
    if not isinstance(event, dict):
        return False
    name = _str_or_none(event.get("event"))
    return name is not None and name.lower() in _WEBHOOK_MESSAGE_EVENTS


def map_webhook_message(event: Any) -> Tuple[str, Message]:
    """Map a provider message webhook to ``(conversation id, Message)``.

    Accepts both the flat shape (``chat_id``, ``message_id``, ``message``)
    and the nested ``{"event": ..., "data": {...}}`` shape.
    """
    data = _require_object(event, "webhook event")
    body = data.get("data") if isinstance(data.get("data"), dict) else data

    conversation_id = _str_or_none(_first(body, "chat_id", "conversation_id"))
    if conversation_id is None:
        raise MappingError("webhook message event has no chat id")

    sender = body.get("sender") if isinstance(body.get("sender"), dict) else {}
    account_info = body.get("account_info") if isinstance(body.get("account_info"), dict) else {}
    sender_id = _str_or_none(_first(sender, "attendee_provider_id", "provider_id"))
    own_id = _str_or_none(_first(account_info, "user_id"))

    payload: Dict[str, Any] = {
        "id": _first(body, "message_id", "id"),
        "text": _first(body, "message", "text"),
        "timestamp": _first(body, "timestamp", "created_at"),
        "sender_id": sender_id,
    }
    if "is_sender" in body:
        payload["is_sender"] = body["is_sender"]
    elif own_id is not None and sender_id is not None:
        payload["is_sender"] = own_id == sender_id
    else:
        name = str(data.get("event") or "").lower()
        payload["is_sender"] = name in {"message.sent", "message_sent"}

    return conversation_id, map_message(payload, conversation_id)
