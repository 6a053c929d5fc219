from datetime import date, datetime, timedelta

import pytest

from habitflow.models.db_models import Achievement, Habit, HabitCompletion, PokemonReward
from habitflow.models.schemas import Rarity, TriggerType
from habitflow.services import rewards
from habitflow.services.pokemon import RewardTrigger, STARTER_IDS
from habitflow.services.rewards import RewardEngine, get_reward_triggers
from tests.conftest import ScriptedRandom

TODAY = date(2026, 10, 17)


def make_habit(db, user, done_on=TODAY, **counters):
    habit = Habit(
        user_id=user.id,
        name="Meditate",
        frequency=counters.pop("frequency", "daily"),
        completed_count=counters.pop("completed_count", 1),
        current_streak=counters.pop("current_streak", 1),
        best_streak=0,
        completed_today=counters.pop("completed_today", True),
        is_active=True,
    )
    db.add(habit)
    db.flush()
    if done_on is not None:
        db.add(HabitCompletion(
            user_id=user.id,
            habit_id=habit.id,
            date=done_on,
            completed_at=datetime.combine(done_on, datetime.min.time()),
        ))
        db.flush()
    return habit


class TestRewardTriggers:
    def trigger_types(self, streak, count, rng=None):
        habit = Habit(id=7, current_streak=streak, completed_count=count)
        return [(t.type, t.value) for t in get_reward_triggers(habit, "daily", rng or ScriptedRandom())]

    def test_nothing_on_an_ordinary_day(self):
        assert self.trigger_types(streak=2, count=2) == []

    def test_three_day_streak(self):
        assert self.trigger_types(streak=3, count=3) == [(TriggerType.STREAK, 3)]

    def test_weekly_streak_interval(self):
        assert self.trigger_types(streak=14, count=14) == [(TriggerType.STREAK, 14)]
        assert self.trigger_types(streak=8, count=8) == []

    def test_milestone_fires_on_exact_count_only(self):
        assert self.trigger_types(streak=1, count=9) == []
        assert self.trigger_types(streak=1, count=10) == [(TriggerType.MILESTONE, 10)]
        assert self.trigger_types(streak=1, count=11) == []

    def test_random_encounter(self):
        types = self.trigger_types(streak=7, count=25, rng=ScriptedRandom([0.05]))
        assert types == [
            (TriggerType.COMPLETION, 1),
            (TriggerType.STREAK, 7),
            (TriggerType.MILESTONE, 25),
        ]

    def test_encounter_only_on_daily_completions(self):
        habit = Habit(id=7, current_streak=1, completed_count=1)
        assert get_reward_triggers(habit, "milestone", ScriptedRandom([0.0])) == []


class TestCheckAndAwardRewards:
    def test_three_day_streak_grants_evolvable_pokemon(self, db, user, reward_engine):
        habit = make_habit(db, user, current_streak=3, completed_count=3)

        granted, unlocked = reward_engine.check_and_award_rewards(db, user.id, habit, today=TODAY)

        assert len(granted) == 1
        reward = granted[0]
        assert reward.trigger_type == TriggerType.STREAK
        assert reward.pokemon.rarity == Rarity.COMMON
        assert reward.pokemon.can_evolve
        assert reward.experience_gained == 10
        assert reward.is_new_reward
        assert [a.name for a in unlocked] == ["First Catch"]

        progress = rewards.get_progress(db, user.id)
        assert progress.total_caught == 1
        assert progress.experience == 10
        assert progress.total_habits_completed == 1
        assert progress.longest_streak == 3
        stored = progress.rewards[0]
        assert stored.evolution_amount == 5
        assert stored.evolution_completed == 0
        assert stored.habit_id == habit.id

    def test_achievements_are_not_duplicated(self, db, user, reward_engine):
        habit = make_habit(db, user, current_streak=3, completed_count=3)
        reward_engine.check_and_award_rewards(db, user.id, habit, today=TODAY)
        second, unlocked = reward_engine.check_and_award_rewards(db, user.id, habit, today=TODAY)

        assert len(second) == 1
        assert not second[0].is_new_reward
        assert unlocked == []
        assert db.query(Achievement).filter(Achievement.name == "First Catch").count() == 1

    def test_stats_update_without_rewards(self, db, user, reward_engine):
        habit = make_habit(db, user, current_streak=2, completed_count=2)

        granted, unlocked = reward_engine.check_and_award_rewards(db, user.id, habit, today=TODAY)

        assert granted == [] and unlocked == []
        progress = rewards.get_progress(db, user.id)
        assert progress.total_habits_completed == 1
        assert progress.total_caught == 0

    def test_perfect_day_counted_once(self, db, user, reward_engine):
        habit = make_habit(db, user, current_streak=1)
        reward_engine.check_and_award_rewards(db, user.id, habit, today=TODAY)
        reward_engine.check_and_award_rewards(db, user.id, habit, today=TODAY)

        progress = rewards.get_progress(db, user.id)
        assert progress.perfect_days == 1
        assert progress.last_perfect_date == TODAY

    def test_no_perfect_day_while_a_daily_habit_is_open(self, db, user, reward_engine):
        make_habit(db, user, completed_today=False, done_on=None)
        habit = make_habit(db, user)
        reward_engine.check_and_award_rewards(db, user.id, habit, today=TODAY)

        assert rewards.get_progress(db, user.id).perfect_days == 0

    def test_flag_left_over_from_yesterday_is_not_a_perfect_day(self, db, user, reward_engine):
        make_habit(db, user, done_on=TODAY - timedelta(days=1))
        habit = make_habit(db, user)
        reward_engine.check_and_award_rewards(db, user.id, habit, today=TODAY)

        assert rewards.get_progress(db, user.id).perfect_days == 0


def test_grant_reward_reports_level_up(db, user, pokemon_client):
    progress = rewards.get_or_create_progress(db, user.id)
    progress.experience = 45
    pokemon = pokemon_client.fetch(10)

    result = rewards.grant_reward(db, progress, pokemon, RewardTrigger(TriggerType.COMPLETION, 1))

    assert result.level_up
    assert result.new_level == 2
    assert result.reward_id is not None
    assert progress.level == 2


class TestSignupAndFirstHabit:
    def test_signup_is_granted_once(self, db, user, reward_engine):
        first = reward_engine.handle_signup(db, user.id)
        second = reward_engine.handle_signup(db, user.id)

        assert first.pokemon.id in STARTER_IDS
        assert first.pokemon.rarity == Rarity.UNCOMMON
        assert first.trigger_type == TriggerType.SIGNUP
        assert first.achievement.name == "Welcome Trainer!"
        assert second is None

        progress = rewards.get_progress(db, user.id)
        assert progress.total_caught == 1
        assert progress.experience == 25
        assert progress.achievement_names == {"Welcome Trainer!", "First Catch"}

    def test_duplicate_welcome_species_is_skipped(self, db, user, pokemon_client):
        progress = rewards.get_or_create_progress(db, user.id)
        starter = pokemon_client.fetch(1)
        trigger = RewardTrigger(TriggerType.SIGNUP, 1)

        assert rewards.grant_reward(db, progress, starter, trigger) is not None
        assert rewards.grant_reward(db, progress, starter, trigger) is None
        assert progress.total_caught == 1

    def test_first_habit_reward(self, db, user, reward_engine):
        result = reward_engine.handle_first_habit(db, user.id)

        assert result.pokemon.id == 25
        assert result.achievement.name == "First Step"
        assert reward_engine.handle_first_habit(db, user.id) is None


class TestEvolution:
    @pytest.fixture
    def bulbasaur(self, db, user, reward_engine):
        reward_engine.handle_signup(db, user.id)
        return rewards.get_progress(db, user.id).rewards[0]

    def test_work_sessions_evolve_after_requirement(self, db, user, reward_engine, bulbasaur):
        for _ in range(4):
            assert reward_engine.handle_focus_session(db, user.id, "work", 25) == []
        assert bulbasaur.evolution_completed == 4

        evolved = reward_engine.handle_focus_session(db, user.id, "work", 25)

        assert len(evolved) == 1
        result = evolved[0]
        assert result.pokemon.id == 2
        assert result.pokemon.evolution_stage == 2
        assert result.trigger_type == TriggerType.POMODORO_EVOLUTION
        assert result.achievement.name == "Evolution Master"
        assert bulbasaur.can_evolve is False

        ivysaur = db.query(PokemonReward).filter(PokemonReward.pokemon_id == 2).one()
        assert ivysaur.parent_id == bulbasaur.id
        assert ivysaur.parent_pokemon_id == 1
        assert ivysaur.can_evolve
        assert ivysaur.evolution_amount == 10
        assert rewards.get_progress(db, user.id).total_caught == 2

    def test_short_and_break_sessions_do_not_count(self, db, user, reward_engine, bulbasaur):
        assert reward_engine.handle_focus_session(db, user.id, "work", 19) == []
        assert reward_engine.handle_focus_session(db, user.id, "break", 30) == []
        assert bulbasaur.evolution_completed == 0

    def test_several_sessions_at_once(self, db, user, reward_engine, bulbasaur):
        evolved = reward_engine.handle_focus_session(db, user.id, "work", 50, sessions=5)
        assert [r.pokemon.id for r in evolved] == [2]

    def test_evolvable_listing_includes_next_stage(self, db, user, bulbasaur):
        assert rewards.evolvable_rewards(db, user.id) == [(bulbasaur, 2)]


def test_mark_viewed_ignores_other_users(db, user, reward_engine):
    reward_engine.handle_signup(db, user.id)
    db.commit()
    own = rewards.unviewed_rewards(db, user.id)

    updated = rewards.mark_rewards_viewed(db, "someone-else", [r.id for r in own])
    assert updated == 0
    assert rewards.mark_rewards_viewed(db, user.id, [r.id for r in own]) == 1
    assert rewards.unviewed_rewards(db, user.id) == []


def test_set_current_title_requires_unlocked_title(db, user):
    with pytest.raises(ValueError):
        rewards.set_current_title(db, user.id, "Champion")
    progress = rewards.set_current_title(db, user.id, "Beginner Trainer")
    assert progress.current_title == "Beginner Trainer"
