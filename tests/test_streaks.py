from datetime import date, datetime, timedelta, timezone

import pytest

from habitflow.models.db_models import Habit
from habitflow.services.streaks import (
    apply_period_resets,
    completion_rate,
    months_back,
    next_reset_time,
    recalculate_streak,
    should_break_streak,
    should_reset,
    week_start,
)

# Saturday
NOW = datetime(2026, 10, 17, 8, 30)


def make_habit(frequency="daily", last_completed_at=None, current_streak=0, completed_today=False):
    return Habit(
        name="Stretch",
        frequency=frequency,
        last_completed_at=last_completed_at,
        current_streak=current_streak,
        completed_today=completed_today,
        is_active=True,
    )


def test_week_starts_on_monday():
    assert week_start(NOW) == datetime(2026, 10, 12)


def test_months_back_clamps_day():
    assert months_back(datetime(2026, 3, 31, 12), 1) == datetime(2026, 2, 28, 12)
    assert months_back(datetime(2026, 1, 15), 1) == datetime(2025, 12, 15)


class TestShouldReset:
    def test_daily_resets_after_midnight(self):
        habit = make_habit(last_completed_at=datetime(2026, 10, 16, 23, 59))
        assert should_reset(habit, NOW)

    def test_daily_same_day_keeps_flag(self):
        habit = make_habit(last_completed_at=datetime(2026, 10, 17, 0, 1))
        assert not should_reset(habit, NOW)

    def test_weekly_resets_when_last_completion_before_monday(self):
        assert should_reset(make_habit("weekly", datetime(2026, 10, 11, 22)), NOW)
        assert not should_reset(make_habit("weekly", datetime(2026, 10, 12, 1)), NOW)

    def test_monthly_resets_on_first_of_month(self):
        habit = make_habit("monthly", datetime(2026, 9, 30, 18))
        assert should_reset(habit, datetime(2026, 10, 1, 0, 5))
        assert not should_reset(make_habit("monthly", datetime(2026, 10, 1, 7)), NOW)

    def test_never_completed_or_unknown_frequency(self):
        assert not should_reset(make_habit(), NOW)
        assert not should_reset(make_habit("hourly", datetime(2020, 1, 1)), NOW)

    def test_aware_now_with_naive_timestamp(self):
        now = datetime(2026, 10, 17, 8, 30, tzinfo=timezone.utc)
        habit = make_habit(last_completed_at=datetime(2026, 10, 16, 20))
        assert should_reset(habit, now)


class TestShouldBreakStreak:
    def test_daily_yesterday_keeps_streak(self):
        habit = make_habit(last_completed_at=datetime(2026, 10, 16, 7), current_streak=4)
        assert not should_break_streak(habit, NOW)

    def test_daily_two_days_ago_breaks(self):
        habit = make_habit(last_completed_at=datetime(2026, 10, 15, 23), current_streak=4)
        assert should_break_streak(habit, NOW)

    def test_weekly_breaks_after_seven_days(self):
        assert should_break_streak(make_habit("weekly", NOW - timedelta(days=8)), NOW)
        assert not should_break_streak(make_habit("weekly", NOW - timedelta(days=6)), NOW)

    def test_monthly_breaks_after_a_calendar_month(self):
        assert should_break_streak(make_habit("monthly", datetime(2026, 9, 16)), NOW)
        assert not should_break_streak(make_habit("monthly", datetime(2026, 9, 18)), NOW)


def test_next_reset_time():
    assert next_reset_time(make_habit("daily"), NOW) == datetime(2026, 10, 18)
    assert next_reset_time(make_habit("weekly"), NOW) == datetime(2026, 10, 19)
    assert next_reset_time(make_habit("monthly"), NOW) == datetime(2026, 11, 1)
    assert next_reset_time(make_habit("monthly"), datetime(2026, 12, 5)) == datetime(2027, 1, 1)


@pytest.mark.parametrize("completions,days,frequency,expected", [
    (5, 10, "daily", 0.5),
    (2, 14, "weekly", 1.0),
    (1, 60, "monthly", 0.5),
    (40, 30, "daily", 1.0),
    (3, 0, "daily", 0.0),
])
def test_completion_rate(completions, days, frequency, expected):
    assert completion_rate(completions, days, frequency) == pytest.approx(expected)


class TestRecalculateStreak:
    today = date(2026, 10, 17)

    def test_daily_counts_consecutive_days_ending_today(self):
        dates = [self.today - timedelta(days=n) for n in (0, 1, 2, 4, 5)]
        assert recalculate_streak(dates, "daily", self.today) == 3

    def test_missing_today_is_zero(self):
        dates = [self.today - timedelta(days=1)]
        assert recalculate_streak(dates, "daily", self.today) == 0

    def test_weekly_steps_by_seven_days(self):
        dates = [self.today, self.today - timedelta(days=7), self.today - timedelta(days=21)]
        assert recalculate_streak(dates, "weekly", self.today) == 2

    def test_monthly_steps_by_calendar_month(self):
        dates = [date(2026, 10, 17), date(2026, 9, 17), date(2026, 8, 17)]
        assert recalculate_streak(dates, "monthly", self.today) == 3

    def test_duplicates_are_ignored(self):
        dates = [self.today, self.today, self.today - timedelta(days=1)]
        assert recalculate_streak(dates, "daily", self.today) == 2


def test_apply_period_resets_counts_and_commits(db, user):
    stale = make_habit(last_completed_at=datetime(2026, 10, 14, 9), current_streak=5, completed_today=True)
    fresh = make_habit(last_completed_at=datetime(2026, 10, 17, 7), current_streak=2, completed_today=True)
    yesterday = make_habit(last_completed_at=datetime(2026, 10, 16, 9), current_streak=3, completed_today=True)
    for habit in (stale, fresh, yesterday):
        habit.user_id = user.id
        db.add(habit)
    db.commit()

    result = apply_period_resets(db, [user.id], now=NOW)

    assert result == {"reset": 2, "streaks_broken": 1}
    assert stale.completed_today is False and stale.current_streak == 0
    assert fresh.completed_today is True and fresh.current_streak == 2
    assert yesterday.completed_today is False and yesterday.current_streak == 3


def test_apply_period_resets_without_users(db):
    assert apply_period_resets(db, [], now=NOW) == {"reset": 0, "streaks_broken": 0}
