"""
Tests for the Usage Log
"""

import pytest

from core.errors import ValidationError
from core.owner import RegisteredUser


class TestLogUsage:
    """Test appending usage records."""

    def test_log_usage(self, usage_log, session):
        """Logged record round-trips through history and total."""
        record = usage_log.log_usage(session, None, 10, "monitor_created")

        assert record.id is not None
        assert record.amount == 10
        assert record.action == "monitor_created"
        assert record.anonymous_session_id == session.id
        assert record.user_id is None
        assert record.resource_id is None

        history = usage_log.history(session, 50)
        assert [r.id for r in history] == [record.id]
        assert usage_log.total_usage(session) == 10

    def test_resource_reference(self, usage_log):
        record = usage_log.log_usage(RegisteredUser(3), 42, 5, "check_performed")

        assert record.resource_id == 42
        assert record.user_id == 3

    @pytest.mark.parametrize("amount", [0, -1, 2.5, "5"])
    def test_invalid_amount(self, usage_log, session, amount):
        with pytest.raises(ValidationError):
            usage_log.log_usage(session, None, amount, "alert_sent")

        assert usage_log.history(session) == []

    @pytest.mark.parametrize("action", ["", "   ", None, "x" * 101])
    def test_invalid_action(self, usage_log, session, action):
        with pytest.raises(ValidationError):
            usage_log.log_usage(session, None, 1, action)

    def test_invalid_resource(self, usage_log, session):
        with pytest.raises(ValidationError):
            usage_log.log_usage(session, "monitor-1", 1, "alert_sent")

    def test_records_are_immutable(self, usage_log, session):
        record = usage_log.log_usage(session, None, 1, "alert_sent")

        with pytest.raises(AttributeError):
            record.amount = 2


class TestHistory:
    """History ordering, limits and totals."""

    def test_newest_first(self, usage_log, session):
        ids = [usage_log.log_usage(session, None, i, f"action_{i}").id for i in range(1, 6)]

        history = usage_log.history(session, 50)

        assert [r.id for r in history] == list(reversed(ids))

    def test_limit(self, usage_log, session):
        for i in range(5):
            usage_log.log_usage(session, None, 1, "check_performed")

        assert len(usage_log.history(session, 3)) == 3

    def test_history_is_restartable(self, usage_log, session):
        """Re-querying reflects records added in between."""
        usage_log.log_usage(session, None, 1, "alert_sent")
        first = usage_log.history(session)
        usage_log.log_usage(session, None, 2, "alert_sent")
        second = usage_log.history(session)

        assert len(first) == 1
        assert len(second) == 2

    @pytest.mark.parametrize("limit", [0, -1, 1.5])
    def test_invalid_limit(self, usage_log, session, limit):
        with pytest.raises(ValidationError):
            usage_log.history(session, limit)

    def test_total_without_records(self, usage_log, session):
        assert usage_log.total_usage(session) == 0

    def test_owners_are_isolated(self, usage_log, session):
        usage_log.log_usage(session, None, 4, "alert_sent")
        usage_log.log_usage(RegisteredUser(session.id), None, 9, "alert_sent")

        assert usage_log.total_usage(session) == 4
        assert usage_log.total_usage(RegisteredUser(session.id)) == 9
        assert len(usage_log.history(session)) == 1
