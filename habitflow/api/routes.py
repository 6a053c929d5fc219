"""
API Routes for HabitFlow Backend

Endpoints:
- GET /health: Health check for warm-up
- POST /register, GET/PUT /me: Firebase-backed account and profile
- /habits: Habit CRUD, completion toggle, reset pass
- /pomodoro: Focus sessions and Pokemon evolution
- /gamification: Progress, rewards, titles, goals
- GET /stats, GET /export: Statistics and data export
"""
from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Depends, Query, Response
from sqlalchemy.orm import Session
import logging

from habitflow.models.schemas import (
    HealthResponse,
    RegisterRequest,
    RegisterResponse,
    UserResponse,
    ProfileUpdate,
    HabitCreate,
    HabitUpdate,
    HabitResponse,
    HabitCreatedResponse,
    CompletionRequest,
    CompletionResponse,
    CompletionOutcomeResponse,
    GamificationResultOut,
    ResetResponse,
    PomodoroCreate,
    PomodoroResponse,
    FocusSessionResponse,
    SessionType,
    AchievementOut,
    PokemonRewardOut,
    EvolvableRewardOut,
    ProgressStats,
    ProgressResponse,
    MarkViewedRequest,
    TitleRequest,
    GoalOut,
    StatsResponse,
    ExportFormat,
)
from habitflow.models.db_models import User, required_experience_for_level
from habitflow.services import habits as habit_service
from habitflow.services import pomodoro as pomodoro_service
from habitflow.services import rewards as reward_service
from habitflow.services import stats as stats_service
from habitflow.services.habits import HabitNotFoundError, HabitValidationError
from habitflow.services.rewards import RewardEngine
from habitflow.services.streaks import apply_period_resets
from habitflow.services.users import register_user, update_profile
from habitflow.api.dependencies import (
    get_current_user,
    get_firebase_user_info,
    get_reward_engine,
)
from habitflow.database import get_db
from habitflow.config import settings

logger = logging.getLogger(__name__)

router = APIRouter()


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        display_name=user.display_name,
        timezone=user.timezone or "UTC",
        reminder_time=user.reminder_time,
        notifications=user.notifications if user.notifications is not None else True,
        created_at=user.created_at.isoformat() if user.created_at else "",
    )


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check endpoint for warm-up pings.
    """
    return HealthResponse(status="healthy", version=settings.API_VERSION)


# ============================================
# Account
# ============================================

@router.post("/register", response_model=RegisterResponse)
def register(
    request: Optional[RegisterRequest] = None,
    firebase_user: dict = Depends(get_firebase_user_info),
    db: Session = Depends(get_db),
    engine: RewardEngine = Depends(get_reward_engine),
) -> RegisterResponse:
    """
    Register a new user or login existing user.

    Called after Firebase authentication on the frontend. New users get
    their welcome Pokemon.
    """
    timezone = request.timezone if request and request.timezone else "UTC"
    logger.info(f"Register/login request for {firebase_user.get('email')}")

    user, is_new, reward = register_user(db, firebase_user, timezone=timezone, engine=engine)
    return RegisterResponse(
        user=_user_response(user),
        is_new_user=is_new,
        welcome_reward=reward,
    )


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)) -> UserResponse:
    return _user_response(user)


@router.put("/me", response_model=UserResponse)
async def update_me(
    request: ProfileUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> UserResponse:
    """
    Update the display name and preferences (timezone, reminder time,
    notifications).
    """
    return _user_response(update_profile(db, user, request))


# ============================================
# Habits
# ============================================

@router.get("/habits", response_model=List[HabitResponse])
async def list_habits(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Get all habits for the authenticated user.

    Stale completed-today flags and broken streaks are corrected first.
    """
    return habit_service.list_habits(db, user.id)


@router.post("/habits", response_model=HabitCreatedResponse, status_code=201)
def create_habit(
    request: HabitCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: RewardEngine = Depends(get_reward_engine),
) -> HabitCreatedResponse:
    try:
        habit, reward = habit_service.create_habit(db, user.id, request, engine=engine)
    except HabitValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return HabitCreatedResponse(
        habit=HabitResponse.model_validate(habit),
        first_habit_reward=reward,
    )


@router.post("/habits/reset", response_model=ResetResponse)
async def reset_habits(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ResetResponse:
    """Run the period reset pass for the user's habits."""
    now = datetime.now()
    counts = apply_period_resets(db, [user.id], now=now)
    return ResetResponse(reset=counts["reset"], streaks_broken=counts["streaks_broken"], timestamp=now)


@router.get("/habits/{habit_id}", response_model=HabitResponse)
async def get_habit(
    habit_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return habit_service.get_habit(db, user.id, habit_id)
    except HabitNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.patch("/habits/{habit_id}", response_model=HabitResponse)
async def update_habit(
    habit_id: int,
    request: HabitUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return habit_service.update_habit(db, user.id, habit_id, request)
    except HabitNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except HabitValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/habits/{habit_id}")
async def delete_habit(
    habit_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    try:
        habit_service.delete_habit(db, user.id, habit_id)
    except HabitNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"success": True, "id": habit_id}


@router.post("/habits/{habit_id}/complete", response_model=CompletionOutcomeResponse)
def complete_habit(
    habit_id: int,
    request: Optional[CompletionRequest] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: RewardEngine = Depends(get_reward_engine),
) -> CompletionOutcomeResponse:
    """
    Toggle today's completion of a habit.

    1. Records (or removes) the completion and updates streaks
    2. Runs the gamification phase for new completions
    3. Returns both; a gamification failure is reported with ok=false
    """
    completed_at = request.completed_at if request else None
    try:
        outcome = habit_service.toggle_completion(
            db, user.id, habit_id, engine, completed_at=completed_at
        )
    except HabitNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    gamification = outcome.gamification
    return CompletionOutcomeResponse(
        completed=outcome.completed,
        current_streak=outcome.current_streak,
        habit=HabitResponse.model_validate(outcome.habit),
        gamification=GamificationResultOut(
            ok=gamification.ok,
            rewards=gamification.rewards,
            achievements=gamification.achievements,
            error=gamification.error,
        ),
    )


@router.get("/habits/{habit_id}/completions", response_model=List[CompletionResponse])
async def list_habit_completions(
    habit_id: int,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    try:
        return habit_service.list_completions(db, user.id, habit_id, start_date, end_date)
    except HabitNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/completions", response_model=List[CompletionResponse])
async def list_all_completions(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return habit_service.all_completions(db, user.id)


# ============================================
# Pomodoro
# ============================================

@router.get("/pomodoro", response_model=List[PomodoroResponse])
async def list_pomodoro_sessions(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    session_type: Optional[SessionType] = None,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return pomodoro_service.list_sessions(
        db, user.id, start_date, end_date, session_type.value if session_type else None
    )


@router.post("/pomodoro", response_model=FocusSessionResponse, status_code=201)
def create_pomodoro_session(
    request: PomodoroCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    engine: RewardEngine = Depends(get_reward_engine),
) -> FocusSessionResponse:
    """Record a finished session; qualifying work sessions evolve Pokemon."""
    session, evolutions = pomodoro_service.record_session(db, user.id, request, engine)
    return FocusSessionResponse(
        session=PomodoroResponse.model_validate(session),
        evolution_rewards=evolutions,
    )


# ============================================
# Gamification
# ============================================

@router.get("/gamification/progress", response_model=ProgressResponse)
async def get_progress(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> ProgressResponse:
    """
    Get level, collection, achievements and titles.

    The progress record is created on first access.
    """
    progress = reward_service.get_or_create_progress(db, user.id)
    db.commit()

    return ProgressResponse(
        level=progress.level,
        experience=progress.experience,
        next_level_experience=required_experience_for_level(progress.level + 1),
        total_caught=progress.total_caught,
        current_title=progress.current_title,
        available_titles=list(progress.available_titles or []),
        achievements=[AchievementOut.model_validate(a) for a in progress.achievements],
        collection=[PokemonRewardOut.model_validate(r) for r in progress.rewards],
        stats=ProgressStats(
            total_habits_completed=progress.total_habits_completed,
            longest_streak=progress.longest_streak,
            perfect_days=progress.perfect_days,
            perfect_weeks=progress.perfect_weeks,
            perfect_months=progress.perfect_months,
        ),
    )


@router.get("/gamification/rewards/unviewed", response_model=List[PokemonRewardOut])
async def list_unviewed_rewards(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return reward_service.unviewed_rewards(db, user.id)


@router.post("/gamification/rewards/viewed")
async def mark_rewards_viewed(
    request: MarkViewedRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    updated = reward_service.mark_rewards_viewed(db, user.id, request.reward_ids)
    return {"success": True, "updated": updated}


@router.get("/gamification/evolvable", response_model=List[EvolvableRewardOut])
async def list_evolvable(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> List[EvolvableRewardOut]:
    return [
        EvolvableRewardOut.model_validate(reward).model_copy(update={"next_evolution_id": next_id})
        for reward, next_id in reward_service.evolvable_rewards(db, user.id)
    ]


@router.put("/gamification/title")
async def set_title(
    request: TitleRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict:
    try:
        progress = reward_service.set_current_title(db, user.id, request.title)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "current_title": progress.current_title,
        "available_titles": list(progress.available_titles or []),
    }


@router.get("/gamification/goals", response_model=List[GoalOut])
async def list_goals(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return stats_service.get_goals(db, user.id)


# ============================================
# Statistics & Export
# ============================================

@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    days: int = Query(7, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> StatsResponse:
    return StatsResponse(**stats_service.get_period_stats(db, user.id, days=days))


@router.get("/export")
async def export(
    export_format: ExportFormat = Query(ExportFormat.JSON, alias="format"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Download everything stored for the user as JSON or CSV."""
    data = stats_service.export_data(db, user)
    logger.info(f"User {user.id} exported data as {export_format.value}")

    if export_format == ExportFormat.CSV:
        filename = f"habitflow-export-{date.today().isoformat()}.csv"
        return Response(
            content=stats_service.export_csv(data),
            media_type="text/csv",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )
    return data
