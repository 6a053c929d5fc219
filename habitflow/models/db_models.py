"""
Database ORM Models

SQLAlchemy models for HabitFlow persistence:
- User: Firebase-authenticated users
- Habit: User-owned tracked behaviours with streak counters
- HabitCompletion: One record per (user, habit, calendar day)
- PomodoroSession: Completed focus / break sessions
- UserProgress: Gamification aggregate (experience, collection, achievements)
- PokemonReward: A Pokemon granted to a user
- Achievement: An unlocked achievement, unique by name per user
"""
import math
from datetime import datetime

from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, ForeignKey, Index, Integer,
    String, UniqueConstraint,
)
from sqlalchemy.orm import relationship

from habitflow.database import Base


DEFAULT_TITLE = "Beginner Trainer"


def level_from_experience(experience: int) -> int:
    """Level formula: floor(sqrt(xp / 50)) + 1, so level 1 starts at 0 XP."""
    return math.floor(math.sqrt(max(0, experience) / 50)) + 1


def required_experience_for_level(level: int) -> int:
    return (level - 1) ** 2 * 50


class User(Base):
    """
    User account linked to Firebase Auth.

    The id is the Firebase UID, not auto-generated.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)  # Firebase UID
    email = Column(String, nullable=False, default="")
    display_name = Column(String, nullable=True)
    timezone = Column(String, default="UTC")
    reminder_time = Column(String, default="09:00")
    notifications = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    habits = relationship("Habit", back_populates="user", cascade="all, delete-orphan")
    progress = relationship(
        "UserProgress", back_populates="user", uselist=False, cascade="all, delete-orphan"
    )

    def __repr__(self):
        return f"<User {self.email}>"


class Habit(Base):
    """
    A tracked behaviour owned by one user.

    current_streak and best_streak are updated together on each completion;
    the periodic reset pass clears completed_today and breaks stale streaks.
    """
    __tablename__ = "habits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    description = Column(String(500), default="")
    category = Column(String, nullable=False, default="other")
    target_count = Column(Integer, nullable=False, default=1)
    frequency = Column(String, nullable=False, default="daily")

    # Counters
    completed_count = Column(Integer, nullable=False, default=0)
    current_streak = Column(Integer, nullable=False, default=0)
    best_streak = Column(Integer, nullable=False, default=0)
    completed_today = Column(Boolean, nullable=False, default=False)
    last_completed_at = Column(DateTime, nullable=True)

    reminder_time = Column(String, nullable=True)  # HH:MM
    color = Column(String, default="#3B82F6")
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="habits")
    completions = relationship(
        "HabitCompletion", back_populates="habit", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_habits_user_active", "user_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self):
        return f"<Habit {self.name} streak={self.current_streak}>"


class HabitCompletion(Base):
    """
    A discrete completion event.

    At most one record exists per (user, habit, date); completing twice on
    the same day toggles the record off instead.
    """
    __tablename__ = "habit_completions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    habit_id = Column(Integer, ForeignKey("habits.id", ondelete="CASCADE"), nullable=False)
    date = Column(Date, nullable=False)
    completed_at = Column(DateTime, default=datetime.utcnow)
    count = Column(Integer, nullable=False, default=1)

    habit = relationship("Habit", back_populates="completions")

    __table_args__ = (
        UniqueConstraint("user_id", "habit_id", "date", name="uq_completion_user_habit_date"),
        Index("idx_completions_user_date", "user_id", "date"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self):
        return f"<HabitCompletion habit={self.habit_id} {self.date}>"


class PomodoroSession(Base):
    """A finished Pomodoro work session or break."""
    __tablename__ = "pomodoro_sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    session_type = Column(String, nullable=False)  # 'work', 'break', 'longBreak'
    duration = Column(Integer, nullable=False)  # minutes
    completed_at = Column(DateTime, default=datetime.utcnow)
    date = Column(Date, nullable=False)

    __table_args__ = (
        Index("idx_sessions_user_date", "user_id", "date"),
        {"sqlite_autoincrement": True},
    )


class UserProgress(Base):
    """
    Gamification aggregate, one per user.

    Level is always derived from experience and never stored.
    """
    __tablename__ = "user_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    experience = Column(Integer, nullable=False, default=0)
    total_caught = Column(Integer, nullable=False, default=0)
    current_title = Column(String, nullable=False, default=DEFAULT_TITLE)
    available_titles = Column(JSON, nullable=False, default=lambda: [DEFAULT_TITLE])

    # Stats sub-record
    total_habits_completed = Column(Integer, nullable=False, default=0)
    longest_streak = Column(Integer, nullable=False, default=0)
    perfect_days = Column(Integer, nullable=False, default=0)
    perfect_weeks = Column(Integer, nullable=False, default=0)
    perfect_months = Column(Integer, nullable=False, default=0)
    last_perfect_date = Column(Date, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="progress")
    rewards = relationship(
        "PokemonReward",
        back_populates="progress",
        cascade="all, delete-orphan",
        order_by="PokemonReward.id",
    )
    achievements = relationship(
        "Achievement",
        back_populates="progress",
        cascade="all, delete-orphan",
        order_by="Achievement.id",
    )

    @property
    def level(self) -> int:
        return level_from_experience(self.experience or 0)

    @property
    def achievement_names(self) -> set[str]:
        return {a.name for a in self.achievements}

    def __repr__(self):
        return f"<UserProgress {self.user_id} L{self.level} XP:{self.experience}>"


class PokemonReward(Base):
    """
    A Pokemon granted to a user.

    Rows are append-only; only is_viewed, can_evolve and evolution_completed
    change after creation.
    """
    __tablename__ = "pokemon_rewards"

    id = Column(Integer, primary_key=True, autoincrement=True)
    progress_id = Column(
        Integer, ForeignKey("user_progress.id", ondelete="CASCADE"), nullable=False
    )
    user_id = Column(String, nullable=False)
    pokemon_id = Column(Integer, nullable=False)
    pokemon_name = Column(String, nullable=False)
    pokemon_image = Column(String, nullable=False)
    pokemon_types = Column(JSON, nullable=False, default=list)
    unlocked_at = Column(DateTime, default=datetime.utcnow)

    trigger_type = Column(String, nullable=False)
    trigger_value = Column(Integer, nullable=False, default=1)
    habit_id = Column(Integer, nullable=True)
    rarity = Column(String, nullable=False, default="common")
    is_viewed = Column(Boolean, nullable=False, default=False)

    # Evolution
    evolution_stage = Column(Integer, nullable=False, default=1)
    can_evolve = Column(Boolean, nullable=False, default=False)
    evolution_amount = Column(Integer, nullable=True)
    evolution_completed = Column(Integer, nullable=True)
    parent_id = Column(Integer, ForeignKey("pokemon_rewards.id"), nullable=True)
    parent_pokemon_id = Column(Integer, nullable=True)

    progress = relationship("UserProgress", back_populates="rewards")

    __table_args__ = (
        Index("idx_rewards_user_viewed", "user_id", "is_viewed"),
        {"sqlite_autoincrement": True},
    )

    def __repr__(self):
        return f"<PokemonReward {self.pokemon_name} {self.rarity}>"


class Achievement(Base):
    """An unlocked achievement. Names are unique per user."""
    __tablename__ = "achievements"

    id = Column(Integer, primary_key=True, autoincrement=True)
    progress_id = Column(
        Integer, ForeignKey("user_progress.id", ondelete="CASCADE"), nullable=False
    )
    name = Column(String, nullable=False)
    description = Column(String, nullable=False, default="")
    icon = Column(String, nullable=False, default="")
    unlocked_at = Column(DateTime, default=datetime.utcnow)

    progress = relationship("UserProgress", back_populates="achievements")

    __table_args__ = (
        UniqueConstraint("progress_id", "name", name="uq_achievement_progress_name"),
        {"sqlite_autoincrement": True},
    )


def new_user_progress(user_id: str) -> UserProgress:
    """Build a fresh progress aggregate with every counter explicitly zeroed."""
    return UserProgress(
        user_id=user_id,
        experience=0,
        total_caught=0,
        current_title=DEFAULT_TITLE,
        available_titles=[DEFAULT_TITLE],
        total_habits_completed=0,
        longest_streak=0,
        perfect_days=0,
        perfect_weeks=0,
        perfect_months=0,
        last_perfect_date=None,
    )

