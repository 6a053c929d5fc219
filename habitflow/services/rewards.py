"""
Reward Service

Turns completion, signup, first-habit and focus-session events into
Pokemon grants, applies experience, and runs the evolution protocol.
This is the core game logic for HabitFlow.
"""
import logging
import random
from datetime import date, datetime
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from habitflow.config import settings
from habitflow.models.db_models import (
    Habit, HabitCompletion, PokemonReward, UserProgress, new_user_progress,
)
from habitflow.models.schemas import (
    AchievementOut, PokemonOut, RewardResult, SessionType, TriggerType,
)
from habitflow.services import achievements
from habitflow.services.pokemon import (
    EVOLUTION_SESSIONS_BY_STAGE, Pokemon, PokemonClient, RandomSource,
    RewardTrigger, experience_for_rarity, get_next_evolution,
)

logger = logging.getLogger(__name__)

# Habit completion counts that grant a milestone reward (exact match only)
MILESTONES = (10, 25, 50, 100, 250, 500, 1000)

# First streak length that grants a reward; it hands out an evolvable base form
BASE_FORM_STREAK = 3
STREAK_REWARD_INTERVAL = 7

# Welcome gifts that may be granted only once per species
UNIQUE_TRIGGER_TYPES = frozenset([TriggerType.SIGNUP, TriggerType.FIRST_HABIT])


def get_progress(db: Session, user_id: str, for_update: bool = False) -> Optional[UserProgress]:
    query = db.query(UserProgress).filter(UserProgress.user_id == user_id)
    if for_update:
        query = query.with_for_update()
    return query.first()


def get_or_create_progress(db: Session, user_id: str, for_update: bool = False) -> UserProgress:
    """
    Fetch the user's progress aggregate, creating it on first use.

    The new row is flushed, not committed; the caller owns the transaction.
    """
    progress = get_progress(db, user_id, for_update=for_update)
    if progress is None:
        progress = new_user_progress(user_id)
        db.add(progress)
        db.flush()
        logger.info(f"Initialized gamification progress for user {user_id}")
    return progress


def get_reward_triggers(
    habit: Habit,
    completion_type: str,
    rng: RandomSource,
    encounter_chance: float = settings.ENCOUNTER_CHANCE,
) -> List[RewardTrigger]:
    """
    Enumerate the reward triggers fired by one habit completion.

    Args:
        habit: The habit after its counters were updated.
        completion_type: 'daily', 'streak' or 'milestone'.
        rng: Random source for the random-encounter roll.
        encounter_chance: Probability of a random encounter on daily completions.

    Returns:
        Zero or more triggers.
    """
    triggers: List[RewardTrigger] = []
    streak = habit.current_streak or 0
    completed = habit.completed_count or 0

    # Random encounter
    if completion_type == "daily" and rng.random() < encounter_chance:
        triggers.append(RewardTrigger(TriggerType.COMPLETION, 1, habit_id=habit.id))

    if streak == BASE_FORM_STREAK:
        triggers.append(RewardTrigger(TriggerType.STREAK, streak, habit_id=habit.id))

    if streak > BASE_FORM_STREAK and streak % STREAK_REWARD_INTERVAL == 0:
        triggers.append(RewardTrigger(TriggerType.STREAK, streak, habit_id=habit.id))

    # Exact match only; a count that jumps past a milestone never fires it
    if completed in MILESTONES:
        triggers.append(RewardTrigger(TriggerType.MILESTONE, completed, habit_id=habit.id))

    return triggers


def _pokemon_out(pokemon: Pokemon) -> PokemonOut:
    return PokemonOut(
        id=pokemon.id,
        name=pokemon.name,
        image=pokemon.image,
        types=list(pokemon.types),
        rarity=pokemon.rarity,
        evolution_stage=pokemon.evolution_stage,
        can_evolve=pokemon.can_evolve,
    )


def grant_reward(
    db: Session,
    progress: UserProgress,
    pokemon: Pokemon,
    trigger: RewardTrigger,
    parent: Optional[PokemonReward] = None,
) -> Optional[RewardResult]:
    """
    Add a Pokemon to the user's collection and apply its experience.

    Args:
        db: Database session.
        progress: The user's progress aggregate.
        pokemon: Pokemon to grant, with its final rarity.
        trigger: What earned it.
        parent: The reward this one evolved from, if any.

    Returns:
        RewardResult, or None if a welcome gift would be duplicated.
    """
    owned = {(r.pokemon_id, r.trigger_type) for r in progress.rewards}
    owned_species = {r.pokemon_id for r in progress.rewards}
    trigger_type = TriggerType(trigger.type)

    if trigger_type in UNIQUE_TRIGGER_TYPES and (pokemon.id, trigger_type.value) in owned:
        logger.info(f"Skipping duplicate {trigger_type.value} reward for user {progress.user_id}")
        return None

    experience_gained = experience_for_rarity(pokemon.rarity)
    evolution_amount = None
    if pokemon.can_evolve:
        evolution_amount = pokemon.evolution_amount or EVOLUTION_SESSIONS_BY_STAGE.get(
            pokemon.evolution_stage, EVOLUTION_SESSIONS_BY_STAGE[1]
        )

    reward = PokemonReward(
        user_id=progress.user_id,
        pokemon_id=pokemon.id,
        pokemon_name=pokemon.name,
        pokemon_image=pokemon.image,
        pokemon_types=list(pokemon.types),
        unlocked_at=datetime.utcnow(),
        trigger_type=trigger_type.value,
        trigger_value=trigger.value,
        habit_id=trigger.habit_id,
        rarity=pokemon.rarity.value,
        is_viewed=False,
        evolution_stage=pokemon.evolution_stage,
        can_evolve=pokemon.can_evolve,
        evolution_amount=evolution_amount,
        evolution_completed=0 if pokemon.can_evolve else None,
        parent_id=parent.id if parent is not None else None,
        parent_pokemon_id=parent.pokemon_id if parent is not None else None,
    )

    old_level = progress.level
    progress.rewards.append(reward)
    progress.total_caught = (progress.total_caught or 0) + 1
    progress.experience = (progress.experience or 0) + experience_gained
    db.flush()

    level_up = progress.level > old_level
    logger.info(
        f"User {progress.user_id} caught {pokemon.name} ({pokemon.rarity.value}) "
        f"via {trigger_type.value}, +{experience_gained} XP"
    )

    return RewardResult(
        reward_id=reward.id,
        pokemon=_pokemon_out(pokemon),
        trigger_type=trigger_type,
        is_new_reward=pokemon.id not in owned_species,
        experience_gained=experience_gained,
        level_up=level_up,
        new_level=progress.level if level_up else None,
    )


def record_perfect_day(db: Session, progress: UserProgress, user_id: str, today: date) -> bool:
    """
    Count today as perfect once every active daily habit has a completion
    record dated today.

    Returns:
        True if today was newly recorded as a perfect day.
    """
    if progress.last_perfect_date == today:
        return False

    daily_habits = db.query(Habit).filter(
        Habit.user_id == user_id,
        Habit.is_active == True,  # noqa: E712
        Habit.frequency == "daily",
    ).all()
    if not daily_habits:
        return False

    done_today = {
        habit_id for (habit_id,) in db.query(HabitCompletion.habit_id).filter(
            HabitCompletion.user_id == user_id,
            HabitCompletion.date == today,
        )
    }
    if any(h.id not in done_today for h in daily_habits):
        return False

    progress.perfect_days = (progress.perfect_days or 0) + 1
    progress.last_perfect_date = today
    return True


class RewardEngine:
    """
    Applies reward rules against a user's progress.

    The Pokemon client and random source are injected so tests can pin
    every random outcome.
    """

    def __init__(self, client: PokemonClient, rng: Optional[RandomSource] = None):
        self.client = client
        self.rng = rng or random.Random()

    def check_and_award_rewards(
        self,
        db: Session,
        user_id: str,
        habit: Habit,
        completion_type: str = "daily",
        today: Optional[date] = None,
    ) -> Tuple[List[RewardResult], List[AchievementOut]]:
        """
        Handle the gamification side of a habit completion.

        1. Updates user stats (completions, longest streak, perfect days)
        2. Grants a reward for every trigger that fired
        3. Unlocks achievements and refreshes titles

        Changes are flushed; the caller commits.
        """
        today = today or date.today()
        progress = get_or_create_progress(db, user_id, for_update=True)

        progress.total_habits_completed = (progress.total_habits_completed or 0) + 1
        if (habit.current_streak or 0) > (progress.longest_streak or 0):
            progress.longest_streak = habit.current_streak
        record_perfect_day(db, progress, user_id, today)

        rewards: List[RewardResult] = []
        for trigger in get_reward_triggers(habit, completion_type, self.rng):
            pokemon = self.client.generate_reward(trigger, self.rng)
            result = grant_reward(db, progress, pokemon, trigger)
            if result is not None:
                rewards.append(result)

        unlocked = achievements.evaluate(progress)
        db.flush()

        return rewards, [AchievementOut.model_validate(a) for a in unlocked]

    def handle_signup(self, db: Session, user_id: str) -> Optional[RewardResult]:
        """
        Grant the welcome starter, at most once per user.

        Returns:
            RewardResult, or None if the user was already welcomed.
        """
        progress = get_or_create_progress(db, user_id, for_update=True)
        if achievements.WELCOME_TRAINER.name in progress.achievement_names:
            return None

        pokemon = self.client.welcome_pokemon(self.rng)
        result = grant_reward(db, progress, pokemon, RewardTrigger(TriggerType.SIGNUP, 1))

        welcome = achievements.add_achievement(progress, achievements.WELCOME_TRAINER)
        achievements.evaluate(progress)
        db.flush()

        if result is not None and welcome is not None:
            result.achievement = AchievementOut.model_validate(welcome)
        return result

    def handle_first_habit(self, db: Session, user_id: str) -> Optional[RewardResult]:
        """Grant the first-habit Pokemon unless 'First Step' is already unlocked."""
        progress = get_or_create_progress(db, user_id, for_update=True)
        if achievements.FIRST_STEP.name in progress.achievement_names:
            return None

        pokemon = self.client.first_habit_pokemon(self.rng)
        result = grant_reward(db, progress, pokemon, RewardTrigger(TriggerType.FIRST_HABIT, 1))

        first_step = achievements.add_achievement(progress, achievements.FIRST_STEP)
        achievements.evaluate(progress)
        db.flush()

        if result is not None and first_step is not None:
            result.achievement = AchievementOut.model_validate(first_step)
        return result

    def evolve(
        self, db: Session, progress: UserProgress, reward: PokemonReward
    ) -> Optional[RewardResult]:
        """
        Mint the next evolution of `reward` and retire its evolvability.

        Species absent from the evolution table never evolve.
        """
        if get_next_evolution(reward.pokemon_id) is None:
            reward.can_evolve = False
            return None

        trigger = RewardTrigger(
            TriggerType.POMODORO_EVOLUTION, 1, habit_id=reward.habit_id,
            pokemon_id=reward.pokemon_id,
        )
        pokemon = self.client.generate_reward(trigger, self.rng)
        result = grant_reward(db, progress, pokemon, trigger, parent=reward)
        reward.can_evolve = False

        if result is not None:
            result.achievement = AchievementOut(
                name="Evolution Master",
                description=f"{pokemon.name} evolved through Pomodoro training!",
                icon="🔥",
            )
        return result

    def handle_focus_session(
        self,
        db: Session,
        user_id: str,
        session_type: str,
        duration_minutes: int,
        sessions: int = 1,
    ) -> List[RewardResult]:
        """
        Feed a finished focus session into the evolution protocol.

        Only work sessions of at least MIN_FOCUS_MINUTES count. Each
        evolvable reward advances by `sessions` and evolves once its
        requirement is met.
        """
        if session_type != SessionType.WORK.value or duration_minutes < settings.MIN_FOCUS_MINUTES:
            return []

        progress = get_or_create_progress(db, user_id, for_update=True)
        evolved: List[RewardResult] = []

        candidates = [r for r in progress.rewards if r.can_evolve and r.evolution_amount]
        for reward in candidates:
            reward.evolution_completed = (reward.evolution_completed or 0) + sessions
            if reward.evolution_completed < reward.evolution_amount:
                continue
            result = self.evolve(db, progress, reward)
            if result is not None:
                evolved.append(result)

        if evolved:
            achievements.evaluate(progress)
        db.flush()
        return evolved


def unviewed_rewards(db: Session, user_id: str) -> List[PokemonReward]:
    return db.query(PokemonReward).filter(
        PokemonReward.user_id == user_id,
        PokemonReward.is_viewed == False,  # noqa: E712
    ).order_by(PokemonReward.id).all()


def mark_rewards_viewed(db: Session, user_id: str, reward_ids: List[int]) -> int:
    """Flip is_viewed on the user's rewards; ids owned by others are ignored."""
    rewards = db.query(PokemonReward).filter(
        PokemonReward.user_id == user_id,
        PokemonReward.id.in_(reward_ids),
    ).all()
    for reward in rewards:
        reward.is_viewed = True
    db.commit()
    return len(rewards)


def evolvable_rewards(db: Session, user_id: str) -> List[Tuple[PokemonReward, Optional[int]]]:
    rewards = db.query(PokemonReward).filter(
        PokemonReward.user_id == user_id,
        PokemonReward.can_evolve == True,  # noqa: E712
        PokemonReward.evolution_amount.isnot(None),
    ).order_by(PokemonReward.id).all()
    return [(r, get_next_evolution(r.pokemon_id)) for r in rewards]


def set_current_title(db: Session, user_id: str, title: str) -> UserProgress:
    progress = get_or_create_progress(db, user_id)
    if title not in (progress.available_titles or []):
        raise ValueError(f"Title not unlocked: {title}")
    progress.current_title = title
    db.commit()
    return progress
