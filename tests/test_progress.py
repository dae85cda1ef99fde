"""
Unit tests for pass progress tracking.
"""

import logging
import time

from inboxsync.progress import PassProgress, _format_duration


class TestFormatDuration:
    def test_seconds_only(self):
        assert _format_duration(45) == "45s"

    def test_zero(self):
        assert _format_duration(0) == "0s"

    def test_negative(self):
        assert _format_duration(-5) == "0s"

    def test_minutes_and_seconds(self):
        assert _format_duration(150) == "2m 30s"

    def test_exact_minutes(self):
        assert _format_duration(120) == "2m"

    def test_hours_and_minutes(self):
        assert _format_duration(4500) == "1h 15m"

    def test_exact_hours(self):
        assert _format_duration(3600) == "1h"


class TestPassProgress:
    def test_initial_state(self):
        pp = PassProgress("ws/acc", 10)
        assert pp.done == 0
        assert pp.messages_created == 0
        assert pp.failed_conversations == 0

    def test_update(self):
        pp = PassProgress("ws/acc", 10)
        pp.update(3)
        pp.update(0, failed=True)
        assert pp.done == 2
        assert pp.messages_created == 3
        assert pp.failed_conversations == 1

    def test_log_every_nth(self, caplog):
        pp = PassProgress("ws/acc", 10, log_every=2)
        with caplog.at_level(logging.INFO, logger="inboxsync.progress"):
            pp.update(1)
            assert "conversations" not in caplog.text
            pp.update(1)
        assert "2/10 conversations" in caplog.text

    def test_log_every_clamped(self):
        assert PassProgress("ws/acc", 1, log_every=0).log_every == 1

    def test_eta(self):
        pp = PassProgress("ws/acc", 10)
        pp._start = time.monotonic() - 10.0
        pp.done = 5
        eta = pp.eta_seconds
        # 5 remaining at 0.5 conversations/s
        assert eta is not None
        assert 5.0 < eta < 20.0

    def test_eta_no_estimate(self):
        pp = PassProgress("ws/acc", 0)
        pp._start = time.monotonic() - 10.0
        pp.done = 3
        assert pp.eta_seconds is None

    def test_log_complete(self, caplog):
        pp = PassProgress("ws/acc", 2)
        pp.update(4)
        pp.update(0, failed=True)
        with caplog.at_level(logging.INFO, logger="inboxsync.progress"):
            pp.log_complete()
        assert "2 conversations (1 failed), 4 new messages" in caplog.text
