"""
Achievement & Title Service

Scans a user's progress after every stats change and unlocks achievements
and titles. Achievement names are unique keys, so evaluation is an
idempotent check-and-append; titles are recomputed in full each time.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from habitflow.models.db_models import DEFAULT_TITLE, Achievement, UserProgress
from habitflow.models.schemas import Rarity

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AchievementDef:
    name: str
    description: str
    icon: str


FIRST_CATCH = AchievementDef("First Catch", "Caught your first Pokemon!", "🎯")
WELCOME_TRAINER = AchievementDef(
    "Welcome Trainer!", "Started your Pokemon journey with HabitFlow", "🌟"
)
FIRST_STEP = AchievementDef("First Step", "Created your very first habit", "🎯")

# (threshold, achievement)
COLLECTION_MILESTONES = [
    (10, AchievementDef("Collector", "Caught 10 Pokemon!", "📦")),
    (25, AchievementDef("Trainer", "Caught 25 Pokemon!", "🎒")),
    (50, AchievementDef("Pokemon Master", "Caught 50 Pokemon!", "👑")),
    (100, AchievementDef("Legendary Trainer", "Caught 100 Pokemon!", "⭐")),
]

STREAK_MILESTONES = [
    (7, AchievementDef("Week Warrior", "7-day streak achieved!", "🔥")),
    (30, AchievementDef("Month Master", "30-day streak achieved!", "💪")),
    (100, AchievementDef("Streak Legend", "100-day streak achieved!", "🏆")),
]

RARITY_FIRSTS = {
    Rarity.RARE: AchievementDef("Rare Hunter", "Caught your first rare Pokemon!", "💎"),
    Rarity.EPIC: AchievementDef("Epic Collector", "Caught your first epic Pokemon!", "🌟"),
    Rarity.LEGENDARY: AchievementDef("Legend Seeker", "Caught your first legendary Pokemon!", "🌠"),
    Rarity.SHINY: AchievementDef("Shiny Hunter", "Caught a shiny Pokemon!", "✨"),
}

LEVEL_TITLES = [
    (10, "Experienced Trainer"),
    (25, "Expert Trainer"),
    (50, "Elite Trainer"),
    (100, "Champion"),
]

COLLECTION_TITLES = [
    (50, "Pokemon Master"),
    (100, "Pokedex Completionist"),
]

ACHIEVEMENT_TITLES = {
    "Legend Seeker": "Legend Whisperer",
    "Shiny Hunter": "Shiny Specialist",
}

LONGEST_STREAK_TITLE = (100, "Habit Grandmaster")


def check_achievements(progress: UserProgress) -> List[AchievementDef]:
    """
    List achievements whose thresholds are crossed but not yet unlocked.

    Args:
        progress: The user's progress aggregate.

    Returns:
        New achievement definitions, in evaluation order.
    """
    unlocked = progress.achievement_names
    owned_rarities = {Rarity(r.rarity) for r in progress.rewards}
    candidates: List[AchievementDef] = []

    if progress.total_caught >= 1:
        candidates.append(FIRST_CATCH)

    for threshold, achievement in COLLECTION_MILESTONES:
        if progress.total_caught >= threshold:
            candidates.append(achievement)

    for threshold, achievement in STREAK_MILESTONES:
        if progress.longest_streak >= threshold:
            candidates.append(achievement)

    for rarity, achievement in RARITY_FIRSTS.items():
        if rarity in owned_rarities:
            candidates.append(achievement)

    return [a for a in candidates if a.name not in unlocked]


def add_achievement(
    progress: UserProgress,
    achievement: AchievementDef,
    unlocked_at: Optional[datetime] = None,
) -> Optional[Achievement]:
    """Append the achievement unless one with the same name exists."""
    if achievement.name in progress.achievement_names:
        return None

    row = Achievement(
        name=achievement.name,
        description=achievement.description,
        icon=achievement.icon,
        unlocked_at=unlocked_at or datetime.utcnow(),
    )
    progress.achievements.append(row)
    logger.info(f"User {progress.user_id} unlocked achievement '{achievement.name}'")
    return row


def compute_titles(progress: UserProgress) -> List[str]:
    """
    Derive the full set of unlocked titles from the current progress.

    Previously unlocked titles are kept, so the set only grows.
    """
    titles = list(progress.available_titles or [DEFAULT_TITLE])
    if DEFAULT_TITLE not in titles:
        titles.insert(0, DEFAULT_TITLE)

    earned = []
    level = progress.level
    earned += [title for threshold, title in LEVEL_TITLES if level >= threshold]
    earned += [
        title for threshold, title in COLLECTION_TITLES if progress.total_caught >= threshold
    ]
    names = progress.achievement_names
    earned += [title for name, title in ACHIEVEMENT_TITLES.items() if name in names]
    if progress.longest_streak >= LONGEST_STREAK_TITLE[0]:
        earned.append(LONGEST_STREAK_TITLE[1])

    for title in earned:
        if title not in titles:
            titles.append(title)
    return titles


def evaluate(progress: UserProgress, now: Optional[datetime] = None) -> List[Achievement]:
    """
    Unlock newly earned achievements and refresh the title set.

    Safe to call repeatedly: a second call with unchanged stats is a no-op.

    Returns:
        The achievement rows added by this call.
    """
    added = []
    for achievement in check_achievements(progress):
        row = add_achievement(progress, achievement, unlocked_at=now)
        if row is not None:
            added.append(row)

    titles = compute_titles(progress)
    if titles != list(progress.available_titles or []):
        progress.available_titles = titles

    return added
