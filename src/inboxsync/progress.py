"""
Sync pass progress with ETA for log output.

``PassProgress`` counts conversations through one pass and logs
human-readable lines with conversation rate and estimated time remaining.
"""

from __future__ import annotations

import logging
import time

logger = logging.getLogger("inboxsync.progress")


def _format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples: ``"45s"``, ``"2m 30s"``, ``"1h 15m"``.
    """
    if seconds < 0:
        return "0s"
    total = int(seconds)
    if total < 60:
        return f"{total}s"
    minutes, secs = divmod(total, 60)
    if minutes < 60:
        if secs:
            return f"{minutes}m {secs}s"
        return f"{minutes}m"
    hours, mins = divmod(minutes, 60)
    if mins:
        return f"{hours}h {mins}m"
    return f"{hours}h"


class PassProgress:
    """Tracks one pass across the conversations of one account.

    Args:
        label: ``workspace/account`` tag used in log lines.
        total_conversations: Conversations selected for this pass.
        log_every: Emit a progress line every N conversations.
    """

    def __init__(self, label: str, total_conversations: int, log_every: int = 5) -> None:
        self.label = label
        self.total_conversations = total_conversations
        self.log_every = max(1, log_every)
        self.done = 0
        self.messages_created = 0
        self.failed_conversations = 0
        self._start = time.monotonic()

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self._start

    @property
    def rate(self) -> float:
        """Conversations handled per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.done / elapsed

    @property
    def eta_seconds(self) -> float | None:
        """Estimated seconds remaining, or None if no estimate possible."""
        if self.total_conversations <= 0 or self.rate <= 0:
            return None
        remaining = max(0, self.total_conversations - self.done)
        return remaining / self.rate

    def update(self, messages_created: int, failed: bool = False) -> None:
        """Record one finished conversation and log every ``log_every``."""
        self.done += 1
        self.messages_created += messages_created
        if failed:
            self.failed_conversations += 1
        if self.done % self.log_every == 0:
            self.log_progress()

    def log_progress(self) -> None:
        if self.total_conversations > 0:
            pct = min(100, int(self.done / self.total_conversations * 100))
            eta = self.eta_seconds
            eta_str = f"ETA: ~{_format_duration(eta)}" if eta is not None else ""
            logger.info(
                "  [%s] %d/%d conversations (%d%%) | %d new messages | %s",
                self.label,
                self.done,
                self.total_conversations,
                pct,
                self.messages_created,
                eta_str,
            )
        else:
            logger.info(
                "  [%s] %d conversations | %d new messages",
                self.label,
                self.done,
                self.messages_created,
            )

    def log_complete(self) -> None:
        logger.info(
            '  Completed "%s": %d conversations (%d failed), %d new messages in %s',
            self.label,
            self.done,
            self.failed_conversations,
            self.messages_created,
            _format_duration(self.elapsed_seconds),
        )
