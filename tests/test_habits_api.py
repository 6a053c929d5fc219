from datetime import datetime, timedelta

from habitflow.api.dependencies import get_firebase_user_info, get_reward_engine
from habitflow.main import app
from habitflow.services.rewards import RewardEngine


class ExplodingRewardEngine(RewardEngine):
    def check_and_award_rewards(self, *args, **kwargs):
        raise RuntimeError("reward store unavailable")


def complete(client, habit_id, when=None):
    body = {"completed_at": when.isoformat()} if when else None
    return client.post(f"/habits/{habit_id}/complete", json=body)


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_missing_token_is_unauthorized(client):
    app.dependency_overrides.pop(get_firebase_user_info)

    response = client.get("/habits")

    assert response.status_code == 401
    assert response.json()["detail"] == "Authorization header missing"


def test_unregistered_user_is_not_found(client):
    assert client.get("/me").status_code == 404


class TestRegister:
    def test_new_user_gets_welcome_reward(self, client):
        response = client.post("/register", json={"timezone": "Europe/Berlin"})

        body = response.json()
        assert response.status_code == 200
        assert body["is_new_user"] is True
        assert body["user"]["timezone"] == "Europe/Berlin"
        assert body["welcome_reward"]["pokemon"]["id"] == 1
        assert body["welcome_reward"]["achievement"]["name"] == "Welcome Trainer!"

    def test_second_call_returns_existing_user(self, client, registered):
        response = client.post("/register")

        body = response.json()
        assert body["is_new_user"] is False
        assert body["welcome_reward"] is None
        assert client.get("/gamification/progress").json()["total_caught"] == 1

    def test_me(self, client, registered):
        assert client.get("/me").json()["email"] == "ash@example.com"

    def test_update_profile(self, client, registered):
        response = client.put(
            "/me",
            json={
                "display_name": "  Ash Ketchum ",
                "timezone": "Asia/Tokyo",
                "reminder_time": "07:15",
                "notifications": False,
            },
        )

        body = response.json()
        assert response.status_code == 200
        assert body["display_name"] == "Ash Ketchum"
        assert body["timezone"] == "Asia/Tokyo"
        assert body["reminder_time"] == "07:15"
        assert body["notifications"] is False
        assert client.get("/me").json()["timezone"] == "Asia/Tokyo"

    def test_partial_profile_update_keeps_other_fields(self, client, registered):
        client.put("/me", json={"notifications": False})

        body = client.put("/me", json={"reminder_time": "21:00"}).json()

        assert body["reminder_time"] == "21:00"
        assert body["notifications"] is False
        assert body["timezone"] == "Europe/Berlin"
        assert body["display_name"] == "Ash"

    def test_invalid_profile_update(self, client, registered):
        assert client.put("/me", json={"reminder_time": "7pm"}).status_code == 400
        assert client.put("/me", json={"display_name": "   "}).status_code == 400

    def test_profile_update_requires_registration(self, client):
        assert client.put("/me", json={"notifications": False}).status_code == 404


class TestHabitCrud:
    def test_first_habit_is_rewarded_once(self, client, registered):
        first = client.post("/habits", json={"name": "  Drink water  ", "target": 8})
        second = client.post("/habits", json={"name": "Journal"})

        assert first.status_code == 201
        assert first.json()["habit"]["name"] == "Drink water"
        assert first.json()["habit"]["target"] == 8
        assert first.json()["first_habit_reward"]["pokemon"]["id"] == 25
        assert second.json()["first_habit_reward"] is None

    def test_defaults(self, habit):
        assert habit["frequency"] == "daily"
        assert habit["category"] == "learning"
        assert habit["color"] == "#3B82F6"
        assert habit["current_streak"] == 0
        assert habit["completed_today"] is False

    def test_invalid_payloads_are_bad_requests(self, client, registered):
        assert client.post("/habits", json={"name": "   "}).status_code == 400
        assert client.post("/habits", json={}).status_code == 400
        assert client.post("/habits", json={"name": "Run", "reminder_time": "25:00"}).status_code == 400
        assert client.post("/habits", json={"name": "Run", "frequency": "hourly"}).status_code == 400

    def test_list_newest_first(self, client, registered):
        client.post("/habits", json={"name": "Older"})
        client.post("/habits", json={"name": "Newer"})

        names = [h["name"] for h in client.get("/habits").json()]
        assert names == ["Newer", "Older"]

    def test_update(self, client, habit):
        response = client.patch(
            f"/habits/{habit['id']}",
            json={"target": 3, "frequency": "weekly", "reminder_time": "07:30", "is_active": False},
        )

        body = response.json()
        assert response.status_code == 200
        assert body["target"] == 3
        assert body["frequency"] == "weekly"
        assert body["reminder_time"] == "07:30"
        assert body["is_active"] is False
        assert body["name"] == "Read 10 pages"

    def test_update_blank_name_rejected(self, client, habit):
        assert client.patch(f"/habits/{habit['id']}", json={"name": "   "}).status_code == 400

    def test_delete(self, client, habit):
        complete(client, habit["id"])

        assert client.delete(f"/habits/{habit['id']}").status_code == 200
        assert client.get(f"/habits/{habit['id']}").status_code == 404
        assert client.get("/completions").json() == []

    def test_unknown_habit(self, client, registered):
        assert client.get("/habits/999").status_code == 404
        assert client.patch("/habits/999", json={"target": 2}).status_code == 404
        assert client.delete("/habits/999").status_code == 404
        assert complete(client, 999).status_code == 404


class TestCompletionToggle:
    def test_complete_then_undo(self, client, habit):
        done = complete(client, habit["id"]).json()

        assert done["completed"] is True
        assert done["current_streak"] == 1
        assert done["habit"]["completed_today"] is True
        assert done["habit"]["completed_count"] == 1
        assert done["gamification"]["ok"] is True

        undone = complete(client, habit["id"]).json()

        assert undone["completed"] is False
        assert undone["current_streak"] == 0
        assert undone["habit"]["completed_today"] is False
        assert undone["habit"]["completed_count"] == 0
        assert client.get(f"/habits/{habit['id']}/completions").json() == []

    def test_three_day_streak_rewards_a_pokemon(self, client, habit):
        start = datetime(2026, 10, 10, 9)
        complete(client, habit["id"], start)
        complete(client, habit["id"], start + timedelta(days=1))
        third = complete(client, habit["id"], start + timedelta(days=2)).json()

        assert third["current_streak"] == 3
        assert third["habit"]["best_streak"] == 3
        rewards = third["gamification"]["rewards"]
        assert len(rewards) == 1
        assert rewards[0]["trigger_type"] == "streak"
        assert rewards[0]["pokemon"]["can_evolve"] is True

    def test_gap_restarts_streak(self, client, habit):
        start = datetime(2026, 10, 10, 9)
        complete(client, habit["id"], start)
        complete(client, habit["id"], start + timedelta(days=1))
        later = complete(client, habit["id"], start + timedelta(days=4)).json()

        assert later["current_streak"] == 1
        assert later["habit"]["best_streak"] == 2

    def test_backfilling_yesterday_keeps_today_completed(self, client, habit):
        now = datetime.now()
        complete(client, habit["id"], now)

        backfilled = complete(client, habit["id"], now - timedelta(days=1)).json()

        assert backfilled["completed"] is True
        assert backfilled["current_streak"] == 2
        assert backfilled["habit"]["completed_today"] is True
        assert backfilled["habit"]["last_completed_at"].startswith(now.date().isoformat())
        listed = client.get("/habits").json()[0]
        assert listed["completed_today"] is True
        assert listed["current_streak"] == 2

        undone = complete(client, habit["id"], now).json()

        assert undone["completed"] is False
        assert undone["current_streak"] == 1
        assert undone["habit"]["completed_today"] is False

    def test_undoing_a_past_day_keeps_today_completed(self, client, habit):
        now = datetime.now()
        complete(client, habit["id"], now - timedelta(days=1))
        complete(client, habit["id"], now)

        undone = complete(client, habit["id"], now - timedelta(days=1)).json()

        assert undone["completed"] is False
        assert undone["current_streak"] == 1
        assert undone["habit"]["completed_today"] is True
        assert undone["habit"]["completed_count"] == 1

    def test_undo_moves_last_completion_back(self, client, habit):
        start = datetime.now().replace(hour=9, minute=0, second=0, microsecond=0) - timedelta(days=6)
        complete(client, habit["id"], start)
        complete(client, habit["id"], start + timedelta(days=1))
        undone = complete(client, habit["id"], start + timedelta(days=1)).json()

        assert undone["habit"]["last_completed_at"].startswith(start.date().isoformat())

        later = complete(client, habit["id"], start + timedelta(days=2)).json()

        assert later["current_streak"] == 1

    def test_gamification_failure_keeps_completion(self, client, habit, pokemon_client, rng):
        app.dependency_overrides[get_reward_engine] = lambda: ExplodingRewardEngine(pokemon_client, rng)

        response = complete(client, habit["id"])

        body = response.json()
        assert response.status_code == 200
        assert body["completed"] is True
        assert body["gamification"]["ok"] is False
        assert "reward store unavailable" in body["gamification"]["error"]
        assert len(client.get(f"/habits/{habit['id']}/completions").json()) == 1
        assert client.get("/gamification/progress").json()["stats"]["total_habits_completed"] == 0

    def test_completion_range_filter(self, client, habit):
        start = datetime(2026, 10, 1, 9)
        for offset in range(5):
            complete(client, habit["id"], start + timedelta(days=offset))

        response = client.get(
            f"/habits/{habit['id']}/completions",
            params={"start_date": "2026-10-02", "end_date": "2026-10-03"},
        )

        assert [c["date"] for c in response.json()] == ["2026-10-03", "2026-10-02"]
        assert len(client.get("/completions").json()) == 5


def test_reset_endpoint_breaks_stale_streaks(client, habit):
    stale = complete(client, habit["id"], datetime.now() - timedelta(days=3)).json()
    assert stale["habit"]["completed_today"] is False
    assert stale["current_streak"] == 1

    body = client.post("/habits/reset").json()

    assert body["reset"] == 0
    assert body["streaks_broken"] == 1
    refreshed = client.get(f"/habits/{habit['id']}").json()
    assert refreshed["completed_today"] is False
    assert refreshed["current_streak"] == 0


def test_listing_applies_reset_pass(client, habit):
    complete(client, habit["id"], datetime.now() - timedelta(days=1))

    listed = client.get("/habits").json()[0]

    assert listed["completed_today"] is False
    assert listed["current_streak"] == 1
