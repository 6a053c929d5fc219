import re
from datetime import date, datetime
from enum import Enum
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


REMINDER_TIME_PATTERN = re.compile(r"^([0-1]?[0-9]|2[0-3]):[0-5][0-9]$")


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class HabitCategory(str, Enum):
    HEALTH = "health"
    FITNESS = "fitness"
    PRODUCTIVITY = "productivity"
    LEARNING = "learning"
    MINDFULNESS = "mindfulness"
    SOCIAL = "social"
    CREATIVITY = "creativity"
    FINANCE = "finance"
    OTHER = "other"


class Rarity(str, Enum):
    """Reward quality tiers, lowest first."""
    COMMON = "common"
    UNCOMMON = "uncommon"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"
    SHINY = "shiny"


class TriggerType(str, Enum):
    STREAK = "streak"
    COMPLETION = "completion"
    MILESTONE = "milestone"
    PERFECT_WEEK = "perfect_week"
    PERFECT_MONTH = "perfect_month"
    POMODORO_EVOLUTION = "pomodoro_evolution"
    SIGNUP = "signup"
    FIRST_HABIT = "first_habit"


class SessionType(str, Enum):
    WORK = "work"
    BREAK = "break"
    LONG_BREAK = "longBreak"


class ExportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


def _check_reminder_time(value: Optional[str]) -> Optional[str]:
    if value and not REMINDER_TIME_PATTERN.match(value):
        raise ValueError("Reminder time must be in HH:MM format (e.g., 09:00, 14:30)")
    return value or None


class HealthResponse(BaseModel):
    """Response body for /health endpoint."""
    status: str
    version: str


# ============================================
# Users
# ============================================

class UserResponse(BaseModel):
    """User info response."""
    id: str
    email: str
    display_name: Optional[str] = None
    timezone: str = "UTC"
    reminder_time: Optional[str] = None
    notifications: bool = True
    created_at: str


class ProfileUpdate(BaseModel):
    """Request body for PUT /me; only the fields sent are applied."""
    display_name: Optional[str] = Field(None, max_length=100)
    timezone: Optional[str] = Field(None, min_length=1, max_length=64, description="IANA timezone name")
    reminder_time: Optional[str] = Field(None, description="Daily reminder time, HH:MM")
    notifications: Optional[bool] = None

    @field_validator("display_name")
    @classmethod
    def strip_display_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("Display name must not be blank")
        return value

    @field_validator("reminder_time")
    @classmethod
    def validate_reminder_time(cls, value: Optional[str]) -> Optional[str]:
        return _check_reminder_time(value)


class RegisterRequest(BaseModel):
    """Request body for /register endpoint (optional, uses token)."""
    timezone: Optional[str] = Field("UTC", description="User's timezone")


class RegisterResponse(BaseModel):
    """Response body for /register endpoint."""
    user: UserResponse
    is_new_user: bool
    welcome_reward: Optional["RewardResult"] = None


# ============================================
# Habits
# ============================================

class HabitCreate(BaseModel):
    """Request body for creating a habit."""
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    category: HabitCategory = HabitCategory.OTHER
    frequency: Frequency = Frequency.DAILY
    target: int = Field(1, ge=1, description="Target completions per period")
    reminder_time: Optional[str] = Field(None, description="Reminder time, HH:MM")
    color: str = "#3B82F6"

    @field_validator("name")
    @classmethod
    def strip_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Habit name must not be blank")
        return value

    @field_validator("reminder_time")
    @classmethod
    def validate_reminder_time(cls, value: Optional[str]) -> Optional[str]:
        return _check_reminder_time(value)


class HabitUpdate(BaseModel):
    """Partial update; only the fields sent are applied."""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)
    category: Optional[HabitCategory] = None
    frequency: Optional[Frequency] = None
    target: Optional[int] = Field(None, ge=1)
    reminder_time: Optional[str] = None
    color: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("reminder_time")
    @classmethod
    def validate_reminder_time(cls, value: Optional[str]) -> Optional[str]:
        return _check_reminder_time(value)


class HabitResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = ""
    category: str
    frequency: str
    target: int = Field(..., validation_alias=AliasChoices("target_count", "target"))
    completed_count: int
    current_streak: int
    best_streak: int
    completed_today: bool
    last_completed_at: Optional[datetime] = None
    reminder_time: Optional[str] = None
    color: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None


class CompletionRequest(BaseModel):
    completed_at: Optional[datetime] = Field(None, description="Defaults to now")


class CompletionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    habit_id: int
    date: date
    completed_at: datetime
    count: int


class ResetResponse(BaseModel):
    reset: int = Field(..., description="Habits whose completed-today flag was cleared")
    streaks_broken: int
    timestamp: datetime


# ============================================
# Pomodoro
# ============================================

class PomodoroCreate(BaseModel):
    session_type: SessionType
    duration: int = Field(..., ge=1, description="Minutes")
    completed_at: Optional[datetime] = None


class PomodoroResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    session_type: str
    duration: int
    completed_at: datetime
    date: date


# ============================================
# Gamification
# ============================================

class PokemonOut(BaseModel):
    id: int
    name: str
    image: str
    types: List[str]
    rarity: Rarity
    evolution_stage: int
    can_evolve: bool


class AchievementOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    description: str
    icon: str
    unlocked_at: Optional[datetime] = None


class RewardResult(BaseModel):
    """A single granted reward and its experience effects."""
    reward_id: Optional[int] = None
    pokemon: PokemonOut
    trigger_type: TriggerType
    is_new_reward: bool
    experience_gained: int
    level_up: bool
    new_level: Optional[int] = None
    achievement: Optional[AchievementOut] = None


class PokemonRewardOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    pokemon_id: int
    pokemon_name: str
    pokemon_image: str
    pokemon_types: List[str]
    unlocked_at: Optional[datetime] = None
    trigger_type: str
    trigger_value: int
    habit_id: Optional[int] = None
    rarity: str
    is_viewed: bool
    evolution_stage: int
    can_evolve: bool
    evolution_amount: Optional[int] = None
    evolution_completed: Optional[int] = None
    parent_id: Optional[int] = None
    parent_pokemon_id: Optional[int] = None


class EvolvableRewardOut(PokemonRewardOut):
    next_evolution_id: Optional[int] = None


class ProgressStats(BaseModel):
    total_habits_completed: int
    longest_streak: int
    perfect_days: int
    perfect_weeks: int
    perfect_months: int


class ProgressResponse(BaseModel):
    level: int
    experience: int
    next_level_experience: int
    total_caught: int
    current_title: str
    available_titles: List[str]
    achievements: List[AchievementOut]
    collection: List[PokemonRewardOut]
    stats: ProgressStats


class GamificationResultOut(BaseModel):
    ok: bool
    rewards: List[RewardResult] = []
    achievements: List[AchievementOut] = []
    error: Optional[str] = None


class CompletionOutcomeResponse(BaseModel):
    """Completion toggle result: the recorded state plus the gamification phase."""
    completed: bool
    current_streak: int
    habit: HabitResponse
    gamification: GamificationResultOut


class FocusSessionResponse(BaseModel):
    session: PomodoroResponse
    evolution_rewards: List[RewardResult]


class MarkViewedRequest(BaseModel):
    reward_ids: List[int] = Field(..., min_length=1)


class TitleRequest(BaseModel):
    title: str = Field(..., min_length=1)


class GoalReward(BaseModel):
    type: str
    rarity: Rarity
    description: str


class GoalOut(BaseModel):
    id: str
    title: str
    description: str
    category: str
    current: int
    target: int
    is_completed: bool
    reward: GoalReward


# ============================================
# Statistics
# ============================================

class PeriodInfo(BaseModel):
    days: int
    start_date: date
    end_date: date


class HabitStats(BaseModel):
    habit_id: int
    name: str
    frequency: str
    completions: int
    completion_rate: float
    current_streak: int
    next_reset_at: Optional[datetime] = None


class StatsResponse(BaseModel):
    total_habits: int
    active_habits: int
    total_completions: int
    completions_by_day: dict[str, int]
    current_streaks: int
    total_pomodoro_time: int
    pomodoros_by_day: dict[str, int]
    period: PeriodInfo
    habits: List[HabitStats] = []


RegisterResponse.model_rebuild()


class HabitCreatedResponse(BaseModel):
    habit: HabitResponse
    first_habit_reward: Optional[RewardResult] = None
