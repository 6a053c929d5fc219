"""
Habit Service

Habit CRUD and the completion toggle. A completion is recorded in two
phases: the habit counters and completion row, then the gamification
pass inside a savepoint. A gamification failure is reported in the
result and never undoes the recorded completion.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from habitflow.models.db_models import Habit, HabitCompletion
from habitflow.models.schemas import AchievementOut, HabitCreate, HabitUpdate, RewardResult
from habitflow.services.rewards import RewardEngine
from habitflow.services.streaks import (
    apply_period_resets, recalculate_streak, should_break_streak, should_reset,
)

logger = logging.getLogger(__name__)


class HabitNotFoundError(LookupError):
    pass


class HabitValidationError(ValueError):
    pass


@dataclass
class GamificationResult:
    """Outcome of the reward phase. ok=False means rewards are unknown, not absent."""
    ok: bool
    rewards: List[RewardResult] = field(default_factory=list)
    achievements: List[AchievementOut] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class CompletionOutcome:
    completed: bool
    current_streak: int
    habit: Habit
    gamification: GamificationResult


def get_habit(db: Session, user_id: str, habit_id: int, for_update: bool = False) -> Habit:
    query = db.query(Habit).filter(Habit.id == habit_id, Habit.user_id == user_id)
    if for_update:
        query = query.with_for_update()
    habit = query.first()
    if habit is None:
        raise HabitNotFoundError(f"Habit {habit_id} not found")
    return habit


def list_habits(db: Session, user_id: str, now: Optional[datetime] = None) -> List[Habit]:
    """
    Get the user's habits, newest first.

    Applies the period reset pass first so flags and streaks are current.
    """
    apply_period_resets(db, [user_id], now=now)
    return db.query(Habit).filter(Habit.user_id == user_id).order_by(
        Habit.created_at.desc(), Habit.id.desc()
    ).all()


def create_habit(
    db: Session,
    user_id: str,
    data: HabitCreate,
    engine: Optional[RewardEngine] = None,
) -> tuple[Habit, Optional[RewardResult]]:
    """
    Create a habit; the user's very first habit also earns a reward.

    Returns:
        Tuple of (habit, first-habit reward or None).
    """
    if not data.name.strip():
        raise HabitValidationError("Missing required field: name")

    habit = Habit(
        user_id=user_id,
        name=data.name.strip(),
        description=data.description or "",
        category=data.category.value,
        frequency=data.frequency.value,
        target_count=data.target,
        reminder_time=data.reminder_time,
        color=data.color,
        completed_count=0,
        current_streak=0,
        best_streak=0,
        completed_today=False,
        is_active=True,
    )
    db.add(habit)
    db.commit()
    db.refresh(habit)
    logger.info(f"User {user_id} created habit {habit.id} '{habit.name}'")

    reward = None
    if engine is not None and db.query(Habit).filter(Habit.user_id == user_id).count() == 1:
        try:
            with db.begin_nested():
                reward = engine.handle_first_habit(db, user_id)
            db.commit()
        except Exception as e:
            logger.error(f"First habit reward failed for user {user_id}: {e}")
            db.rollback()
            reward = None

    return habit, reward


def update_habit(db: Session, user_id: str, habit_id: int, data: HabitUpdate) -> Habit:
    habit = get_habit(db, user_id, habit_id)
    changes = data.model_dump(exclude_unset=True)

    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise HabitValidationError("Habit name must not be blank")
        changes["name"] = name
    if "target" in changes:
        changes["target_count"] = changes.pop("target")

    for key, value in changes.items():
        if value is None and key not in ("reminder_time", "description"):
            continue
        if hasattr(value, "value"):
            value = value.value
        setattr(habit, key, value)

    db.commit()
    db.refresh(habit)
    return habit


def delete_habit(db: Session, user_id: str, habit_id: int) -> None:
    habit = get_habit(db, user_id, habit_id)
    db.delete(habit)
    db.commit()
    logger.info(f"User {user_id} deleted habit {habit_id}")


def _run_gamification(
    db: Session, engine: RewardEngine, user_id: str, habit: Habit, day: date
) -> GamificationResult:
    try:
        with db.begin_nested():
            rewards, unlocked = engine.check_and_award_rewards(
                db, user_id, habit, completion_type="daily", today=day
            )
    except Exception as e:
        logger.error(f"Gamification failed for user {user_id} habit {habit.id}: {e}")
        return GamificationResult(ok=False, error=str(e))
    return GamificationResult(ok=True, rewards=rewards, achievements=unlocked)


def _refresh_last_completion(db: Session, habit: Habit, now: datetime) -> None:
    """Point last_completed_at at the newest remaining completion record."""
    db.flush()
    latest = db.query(HabitCompletion).filter(
        HabitCompletion.habit_id == habit.id
    ).order_by(HabitCompletion.completed_at.desc()).first()
    habit.last_completed_at = latest.completed_at if latest is not None else None
    habit.completed_today = latest is not None and not should_reset(habit, now)


def _recount_daily_streak(db: Session, habit: Habit, now: datetime) -> int:
    """Consecutive days of records ending at the newest one, or 0 once that streak has lapsed."""
    dates = [d for (d,) in db.query(HabitCompletion.date).filter(HabitCompletion.habit_id == habit.id)]
    if not dates or should_break_streak(habit, now):
        return 0
    return recalculate_streak(dates, "daily", today=max(dates))


def toggle_completion(
    db: Session,
    user_id: str,
    habit_id: int,
    engine: RewardEngine,
    completed_at: Optional[datetime] = None,
) -> CompletionOutcome:
    """
    Complete a habit for the day, or undo that day's completion.

    1. Locks the habit row
    2. Removes an existing completion for that date, or records a new one
    3. Updates streak counters
    4. Runs the gamification phase (completions only)
    5. Commits everything once

    last_completed_at always follows the newest remaining completion, and
    completed_today is true only while that completion is in the current
    period. Backfilling or undoing a past date recounts a daily streak from
    the completion records; other frequencies keep their streak when a past
    date is backfilled.

    Args:
        db: Database session.
        user_id: Firebase UID.
        habit_id: Habit to toggle.
        engine: Reward engine for the gamification phase.
        completed_at: Completion instant, defaults to now.

    Returns:
        CompletionOutcome with the recorded state and gamification result.
    """
    now = datetime.now()
    completed_at = completed_at or now
    day = completed_at.date()
    habit = get_habit(db, user_id, habit_id, for_update=True)

    existing = db.query(HabitCompletion).filter(
        HabitCompletion.user_id == user_id,
        HabitCompletion.habit_id == habit.id,
        HabitCompletion.date == day,
    ).first()

    if existing is not None:
        db.delete(existing)
        _refresh_last_completion(db, habit, now)
        if habit.frequency == "daily":
            habit.current_streak = _recount_daily_streak(db, habit, now)
        else:
            habit.current_streak = max(0, (habit.current_streak or 0) - 1)
        habit.completed_count = max(0, (habit.completed_count or 0) - 1)
        db.commit()
        db.refresh(habit)
        logger.info(f"User {user_id} removed completion of habit {habit.id} on {day}")
        return CompletionOutcome(
            completed=False,
            current_streak=habit.current_streak,
            habit=habit,
            gamification=GamificationResult(ok=True),
        )

    backdated = habit.last_completed_at is not None and day < habit.last_completed_at.date()
    if not backdated:
        if habit.current_streak and should_break_streak(habit, completed_at):
            habit.current_streak = 1
        else:
            habit.current_streak = (habit.current_streak or 0) + 1
    habit.completed_count = (habit.completed_count or 0) + 1

    db.add(HabitCompletion(
        user_id=user_id,
        habit_id=habit.id,
        date=day,
        completed_at=completed_at,
        count=1,
    ))
    _refresh_last_completion(db, habit, now)
    if backdated and habit.frequency == "daily":
        habit.current_streak = _recount_daily_streak(db, habit, now)
    habit.best_streak = max(habit.best_streak or 0, habit.current_streak)
    db.flush()

    gamification = _run_gamification(db, engine, user_id, habit, day)

    db.commit()
    db.refresh(habit)
    logger.info(
        f"User {user_id} completed habit {habit.id} on {day}, streak={habit.current_streak}, "
        f"rewards={len(gamification.rewards)}"
    )
    return CompletionOutcome(
        completed=True,
        current_streak=habit.current_streak,
        habit=habit,
        gamification=gamification,
    )


def list_completions(
    db: Session,
    user_id: str,
    habit_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> List[HabitCompletion]:
    get_habit(db, user_id, habit_id)
    query = db.query(HabitCompletion).filter(
        HabitCompletion.user_id == user_id,
        HabitCompletion.habit_id == habit_id,
    )
    if start_date and end_date:
        query = query.filter(HabitCompletion.date >= start_date, HabitCompletion.date <= end_date)
    return query.order_by(HabitCompletion.date.desc()).all()


def all_completions(db: Session, user_id: str) -> List[HabitCompletion]:
    return db.query(HabitCompletion).filter(
        HabitCompletion.user_id == user_id
    ).order_by(HabitCompletion.completed_at.desc()).all()
