"""
Inbox sync package: pulls LinkedIn conversations, messages and contacts
from the Unipile API and upserts them into the workspace-scoped Postgres
store.

All provider access goes through a ``MessagingProvider`` (read-only, GET
only).  All writes go through ``SyncStore`` and always carry an explicit
workspace id.
"""
