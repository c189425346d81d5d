"""
Tests for backup schedule computations.
"""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from apscheduler.triggers.cron import CronTrigger

from ha_redis_operator.errors import ConfigurationError
from ha_redis_operator.schedule import latest_slot, next_due_time, next_fire_after, validate_schedule

DAILY = "0 2 * * *"


def at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 1, day, hour, minute, tzinfo=timezone.utc)


class TestValidateSchedule:
    """Test cron expression validation."""

    def test_valid_expression(self):
        validate_schedule(DAILY)

    @pytest.mark.parametrize("expression", ["nightly", "61 * * * *", "* * *"])
    def test_invalid_expression(self, expression):
        with pytest.raises(ConfigurationError):
            validate_schedule(expression)


class TestNextDueTime:
    """Test due-time computation."""

    def test_first_due_after_creation(self):
        assert next_due_time(DAILY, None, at(1, 1)) == at(1, 2)

    def test_creation_on_a_fire_time_is_due(self):
        assert next_due_time(DAILY, None, at(1, 2)) == at(1, 2)

    def test_due_after_last_success(self):
        assert next_due_time(DAILY, at(3, 2), at(1, 1)) == at(4, 2)

    def test_next_fire_is_strictly_later(self):
        assert next_fire_after(DAILY, at(3, 2)) == at(4, 2)


class TestLatestSlot:
    """Test slot selection."""

    def test_not_due_yet(self):
        assert latest_slot(DAILY, at(2, 2), at(2, 1)) is None

    def test_due_now(self):
        assert latest_slot(DAILY, at(2, 2), at(2, 2)) == at(2, 2)

    def test_missed_slots_coalesce_to_latest(self):
        assert latest_slot(DAILY, at(2, 2), at(5, 3)) == at(5, 2)

    def test_failed_run_keeps_due_time(self):
        """A failed slot leaves the due time on the last success, so the
        latest slot stays the attempted one until the next fire time."""
        due = next_due_time(DAILY, at(1, 2), at(1, 1))
        assert latest_slot(DAILY, due, at(2, 12)) == at(2, 2)
        assert latest_slot(DAILY, due, at(3, 2)) == at(3, 2)

    def test_stale_anchor_jumps_to_latest(self):
        now = datetime(2024, 1, 8, 12, 30, 45, tzinfo=timezone.utc)
        assert latest_slot("* * * * *", at(1, 0), now) == datetime(2024, 1, 8, 12, 30, tzinfo=timezone.utc)

    @pytest.mark.parametrize("expression", ["* * * * *", "*/5 * * * *", DAILY])
    def test_lookup_cost_independent_of_backlog(self, expression):
        now = datetime(2024, 1, 8, 12, 30, 45, tzinfo=timezone.utc)
        original = CronTrigger.get_next_fire_time
        counts = []
        for due in (at(8, 0), datetime(2023, 1, 1, tzinfo=timezone.utc)):
            with patch.object(CronTrigger, "get_next_fire_time", autospec=True, side_effect=original) as spy:
                latest_slot(expression, due, now)
            counts.append(spy.call_count)

        assert max(counts) < 40
