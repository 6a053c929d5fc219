"""
Streak & Reset Service

Decides when a habit's completed-today flag clears and when its streak
breaks. Calendar periods roll over without any user action, so the reset
pass runs on load (habit listing) or from the explicit reset endpoint.
"""
import calendar
import logging
from datetime import date, datetime, time, timedelta
from typing import Iterable, List, Optional, Sequence

from sqlalchemy.orm import Session

from habitflow.models.db_models import Habit

logger = logging.getLogger(__name__)

# Most recent completion records considered when recounting a streak
STREAK_SCAN_LIMIT = 100


def _align(moment: datetime, now: datetime) -> datetime:
    """Express `moment` in the same clock as `now` so they can be compared."""
    if now.tzinfo is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=now.tzinfo)
    if now.tzinfo is None and moment.tzinfo is not None:
        return moment.astimezone().replace(tzinfo=None)
    if now.tzinfo is not None:
        return moment.astimezone(now.tzinfo)
    return moment


def _midnight(day: date, now: datetime) -> datetime:
    return datetime.combine(day, time.min, tzinfo=now.tzinfo)


def week_start(now: datetime) -> datetime:
    """Monday 00:00 of the week containing `now`."""
    return _midnight(now.date() - timedelta(days=now.weekday()), now)


def month_start(now: datetime) -> datetime:
    return _midnight(now.date().replace(day=1), now)


def months_back(moment: datetime, months: int) -> datetime:
    """Shift back by whole months, clamping the day to the target month's length."""
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def should_reset(habit: Habit, now: Optional[datetime] = None) -> bool:
    """
    Check whether the habit's completed-today flag belongs to a past period.

    Args:
        habit: Habit with last_completed_at and frequency.
        now: As-of instant (defaults to the local current time).

    Returns:
        True if the last completion falls before the current period start.
    """
    if habit.last_completed_at is None:
        return False

    now = now or datetime.now()
    last = _align(habit.last_completed_at, now)

    if habit.frequency == "daily":
        return last.date() < now.date()
    if habit.frequency == "weekly":
        return last < week_start(now)
    if habit.frequency == "monthly":
        return last < month_start(now)
    return False


def should_break_streak(habit: Habit, now: Optional[datetime] = None) -> bool:
    """
    Check whether more than one period has passed since the last completion.

    A daily habit last done yesterday keeps its streak; one done two or more
    days ago loses it. Weekly and monthly habits break once the last
    completion is older than seven days / one calendar month.
    """
    if habit.last_completed_at is None:
        return False

    now = now or datetime.now()
    last = _align(habit.last_completed_at, now)

    if habit.frequency == "daily":
        yesterday = now.date() - timedelta(days=1)
        return last.date() < yesterday
    if habit.frequency == "weekly":
        return last < now - timedelta(days=7)
    if habit.frequency == "monthly":
        return last < months_back(now, 1)
    return False


def next_reset_time(habit: Habit, now: Optional[datetime] = None) -> Optional[datetime]:
    """Start of the next period for the habit's frequency."""
    now = now or datetime.now()
    if habit.frequency == "daily":
        return _midnight(now.date() + timedelta(days=1), now)
    if habit.frequency == "weekly":
        return week_start(now) + timedelta(days=7)
    if habit.frequency == "monthly":
        first = now.date().replace(day=1)
        if first.month == 12:
            return _midnight(first.replace(year=first.year + 1, month=1), now)
        return _midnight(first.replace(month=first.month + 1), now)
    return None


def completion_rate(completions: int, total_days: int, frequency: str) -> float:
    """Fraction of expected completions achieved over `total_days`, capped at 1."""
    if frequency == "weekly":
        expected = -(-total_days // 7)
    elif frequency == "monthly":
        expected = -(-total_days // 30)
    else:
        expected = total_days

    if expected <= 0:
        return 0.0
    return min(completions / expected, 1.0)


def recalculate_streak(
    completion_dates: Iterable[date],
    frequency: str,
    today: Optional[date] = None,
) -> int:
    """
    Count consecutive periods, ending today, that have a completion record.

    Args:
        completion_dates: Dates of the habit's completion records.
        frequency: daily, weekly or monthly.
        today: Override date for testing.

    Returns:
        Number of consecutive expected dates present in the records.
    """
    today = today or date.today()
    recent: Sequence[date] = sorted(set(completion_dates), reverse=True)[:STREAK_SCAN_LIMIT]

    streak = 0
    for position, completed_on in enumerate(recent):
        if frequency == "weekly":
            expected = today - timedelta(days=7 * position)
        elif frequency == "monthly":
            expected = months_back(datetime.combine(today, time.min), position).date()
        elif frequency == "daily":
            expected = today - timedelta(days=position)
        else:
            break

        if completed_on != expected:
            break
        streak += 1

    return streak


def apply_period_resets(
    db: Session,
    user_ids: Sequence[str],
    now: Optional[datetime] = None,
) -> dict:
    """
    Clear stale completed-today flags and break stale streaks in one pass.

    Both predicates are evaluated for every active habit before any write,
    then the writes are applied in a single commit.

    Args:
        db: Database session.
        user_ids: Users whose habits are checked.
        now: Override instant for testing.

    Returns:
        Dict with counts of habits reset and streaks broken.
    """
    now = now or datetime.now()
    if not user_ids:
        return {"reset": 0, "streaks_broken": 0}

    habits = db.query(Habit).filter(
        Habit.user_id.in_(list(user_ids)),
        Habit.is_active == True,  # noqa: E712
        Habit.last_completed_at.isnot(None),
    ).all()

    to_reset: List[Habit] = []
    to_break: List[Habit] = []
    for habit in habits:
        if habit.completed_today and should_reset(habit, now):
            to_reset.append(habit)
        if habit.current_streak and should_break_streak(habit, now):
            to_break.append(habit)

    for habit in to_reset:
        habit.completed_today = False
    for habit in to_break:
        habit.current_streak = 0

    if to_reset or to_break:
        db.commit()
        logger.info(
            f"Reset {len(to_reset)} habits and broke {len(to_break)} streaks "
            f"for {len(user_ids)} user(s)"
        )

    return {"reset": len(to_reset), "streaks_broken": len(to_break)}
