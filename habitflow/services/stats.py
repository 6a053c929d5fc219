"""
Statistics Service

Read-only summaries: period statistics, goal progress, and data export.
"""
import csv
import io
import logging
from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from habitflow.models.db_models import (
    Habit, HabitCompletion, PokemonReward, PomodoroSession, User, UserProgress,
)
from habitflow.models.schemas import GoalOut, GoalReward, Rarity
from habitflow.services.rewards import get_progress
from habitflow.services.streaks import (
    completion_rate, next_reset_time, recalculate_streak, week_start,
)

logger = logging.getLogger(__name__)


def get_period_stats(db: Session, user_id: str, days: int = 7, today: Optional[date] = None) -> dict:
    """
    Summarise habits and focus time over the last `days` days.

    Args:
        db: Database session.
        user_id: Firebase UID.
        days: Period length.
        today: Override date for testing.

    Returns:
        Dict matching StatsResponse.
    """
    end_date = today or date.today()
    start_date = end_date - timedelta(days=days)

    habits = db.query(Habit).filter(Habit.user_id == user_id).all()
    active = [h for h in habits if h.is_active]

    completions = db.query(HabitCompletion).filter(
        HabitCompletion.user_id == user_id,
        HabitCompletion.date >= start_date,
        HabitCompletion.date <= end_date,
    ).all()
    completions_by_day = Counter(c.date.isoformat() for c in completions)

    dates_by_habit = defaultdict(list)
    for habit_id, completed_on in db.query(HabitCompletion.habit_id, HabitCompletion.date).filter(
        HabitCompletion.user_id == user_id
    ):
        dates_by_habit[habit_id].append(completed_on)

    now = datetime.now()
    in_period = Counter(c.habit_id for c in completions)
    per_habit = []
    for habit in active:
        streak = recalculate_streak(dates_by_habit.get(habit.id, []), habit.frequency, today=end_date)
        per_habit.append({
            "habit_id": habit.id,
            "name": habit.name,
            "frequency": habit.frequency,
            "completions": in_period[habit.id],
            "completion_rate": round(completion_rate(in_period[habit.id], days, habit.frequency), 3),
            "current_streak": streak,
            "next_reset_at": next_reset_time(habit, now),
        })
    current_streaks = sum(h["current_streak"] for h in per_habit)

    sessions = db.query(PomodoroSession).filter(
        PomodoroSession.user_id == user_id,
        PomodoroSession.session_type == "work",
        PomodoroSession.date >= start_date,
        PomodoroSession.date <= end_date,
    ).all()
    pomodoros_by_day: dict[str, int] = defaultdict(int)
    for session in sessions:
        pomodoros_by_day[session.date.isoformat()] += session.duration

    return {
        "total_habits": len(habits),
        "active_habits": len(active),
        "total_completions": len(completions),
        "completions_by_day": dict(completions_by_day),
        "current_streaks": current_streaks,
        "total_pomodoro_time": sum(s.duration for s in sessions),
        "pomodoros_by_day": dict(pomodoros_by_day),
        "period": {"days": days, "start_date": start_date, "end_date": end_date},
        "habits": per_habit,
    }


def _consecutive_days(days_with_completions: set, today: date) -> int:
    streak = 0
    day = today
    while day in days_with_completions:
        streak += 1
        day -= timedelta(days=1)
    return streak


def _goal(goal_id, title, description, category, current, target, reward_type, rarity, reward_text):
    return GoalOut(
        id=goal_id,
        title=title,
        description=description,
        category=category,
        current=min(current, target),
        target=target,
        is_completed=current >= target,
        reward=GoalReward(type=reward_type, rarity=rarity, description=reward_text),
    )


def get_goals(db: Session, user_id: str, today: Optional[date] = None) -> List[GoalOut]:
    """
    Build the goal list with current progress.

    Sorted incomplete first, then by progress ratio, highest first.
    """
    today = today or date.today()
    habits = db.query(Habit).filter(Habit.user_id == user_id).all()
    completions = db.query(HabitCompletion).filter(HabitCompletion.user_id == user_id).all()
    evolvable = db.query(PokemonReward).filter(
        PokemonReward.user_id == user_id,
        PokemonReward.can_evolve == True,  # noqa: E712
    ).count()

    per_day = Counter(c.date for c in completions)
    streak = _consecutive_days(set(per_day), today)

    monday = week_start(datetime.combine(today, datetime.min.time())).date()
    perfect_this_week = 0
    for offset in range(7):
        day = monday + timedelta(days=offset)
        if day > today:
            break
        active_that_day = [
            h for h in habits
            if h.is_active and (h.created_at is None or h.created_at.date() <= day)
        ]
        if per_day[day] > 0 and per_day[day] >= len(active_that_day):
            perfect_this_week += 1

    total = len(completions)
    goals = [
        _goal("streak-3", "3-Day Streak", "Complete habits for 3 consecutive days",
              "streak", streak, 3, "pokemon", Rarity.COMMON, "Get a Pokemon that can evolve!"),
        _goal("streak-7", "7-Day Streak", "Maintain a week-long habit streak",
              "streak", streak, 7, "pokemon", Rarity.UNCOMMON, "Stronger Pokemon with better abilities"),
        _goal("streak-14", "14-Day Streak", "Keep your habits going for two weeks",
              "streak", streak, 14, "pokemon", Rarity.UNCOMMON, "Pokemon for consistent dedication"),
        _goal("streak-30", "30-Day Streak", "Maintain habits for a full month",
              "streak", streak, 30, "pokemon", Rarity.RARE, "Powerful Pokemon for exceptional consistency"),
        _goal("milestone-10", "10 Completions", "Complete any habit 10 times total",
              "milestone", total, 10, "pokemon", Rarity.COMMON, "Your first milestone achievement"),
        _goal("milestone-25", "25 Completions", "Complete any habit 25 times total",
              "milestone", total, 25, "pokemon", Rarity.UNCOMMON, "Special Pokemon for dedication"),
        _goal("milestone-50", "50 Completions", "Complete any habit 50 times total",
              "milestone", total, 50, "pokemon", Rarity.UNCOMMON, "Pokemon for serious commitment"),
        _goal("milestone-100", "100 Completions", "Complete any habit 100 times total",
              "milestone", total, 100, "pokemon", Rarity.RARE, "Rare Pokemon for reaching 100 completions"),
        _goal("perfect-week", "Perfect Week", "Complete all habits every day for a week",
              "perfect", perfect_this_week, 7, "pokemon", Rarity.RARE,
              "Exceptional Pokemon for perfect performance"),
        _goal("evolution-ready", "Pokemon Evolution", "Complete Pomodoro sessions to evolve Pokemon",
              "evolution", evolvable, 1, "evolution", Rarity.UNCOMMON,
              "Transform your Pokemon into its next form"),
        _goal("first-habit", "First Habit", "Create your very first habit",
              "special", 1 if habits else 0, 1, "pokemon", Rarity.UNCOMMON,
              "Your very first Pokemon companion"),
    ]

    return sorted(goals, key=lambda g: (g.is_completed, -(g.current / g.target)))


def export_data(db: Session, user: User) -> dict:
    """Collect everything stored for the user into a JSON-serialisable dict."""
    habits = db.query(Habit).filter(Habit.user_id == user.id).order_by(Habit.id).all()
    names = {h.id: h.name for h in habits}
    completions = db.query(HabitCompletion).filter(
        HabitCompletion.user_id == user.id
    ).order_by(HabitCompletion.date).all()
    sessions = db.query(PomodoroSession).filter(
        PomodoroSession.user_id == user.id
    ).order_by(PomodoroSession.completed_at).all()
    progress: Optional[UserProgress] = get_progress(db, user.id)

    return {
        "user": {
            "id": user.id,
            "email": user.email,
            "display_name": user.display_name,
            "timezone": user.timezone,
            "reminder_time": user.reminder_time,
            "notifications": user.notifications,
            "join_date": user.created_at.isoformat() if user.created_at else None,
        },
        "habits": [
            {
                "id": h.id,
                "name": h.name,
                "description": h.description,
                "category": h.category,
                "target_count": h.target_count,
                "frequency": h.frequency,
                "completed_count": h.completed_count,
                "current_streak": h.current_streak,
                "best_streak": h.best_streak,
                "reminder_time": h.reminder_time,
                "color": h.color,
                "is_active": h.is_active,
                "created_at": h.created_at.isoformat() if h.created_at else None,
            }
            for h in habits
        ],
        "habit_completions": [
            {
                "habit_id": c.habit_id,
                "habit_name": names.get(c.habit_id, ""),
                "date": c.date.isoformat(),
                "completed_at": c.completed_at.isoformat() if c.completed_at else None,
                "count": c.count,
            }
            for c in completions
        ],
        "pomodoro_sessions": [
            {
                "session_type": s.session_type,
                "duration": s.duration,
                "date": s.date.isoformat(),
                "completed_at": s.completed_at.isoformat() if s.completed_at else None,
            }
            for s in sessions
        ],
        "progress": {
            "level": progress.level,
            "experience": progress.experience,
            "total_caught": progress.total_caught,
            "current_title": progress.current_title,
            "achievements": [a.name for a in progress.achievements],
        } if progress else None,
        "exported_at": datetime.utcnow().isoformat(),
        "total_habits": len(habits),
        "total_completions": len(completions),
        "total_pomodoro_sessions": len(sessions),
    }


HABIT_CSV_FIELDS = [
    "id", "name", "category", "frequency", "target_count", "completed_count",
    "current_streak", "best_streak", "is_active", "created_at",
]
COMPLETION_CSV_FIELDS = ["habit_id", "habit_name", "date", "completed_at", "count"]


def export_csv(data: dict) -> str:
    """Render the habit and completion sections of an export as CSV."""
    out = io.StringIO()
    out.write("# Habits\n")
    writer = csv.DictWriter(out, fieldnames=HABIT_CSV_FIELDS, extrasaction="ignore")
    writer.writeheader()
    writer.writerows(data["habits"])

    out.write("\n# Habit Completions\n")
    writer = csv.DictWriter(out, fieldnames=COMPLETION_CSV_FIELDS, extrasaction="ignore")
    writer.writeheader()
    writer.writerows(data["habit_completions"])
    return out.getvalue()
