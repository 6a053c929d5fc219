import pytest
import requests
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from habitflow.api.dependencies import get_firebase_user_info, get_pokemon_client, get_rng
from habitflow.database import get_db, init_db
from habitflow.main import app
from habitflow.models.db_models import User
from habitflow.services.pokemon import PokemonCache, PokemonClient
from habitflow.services.rewards import RewardEngine


TEST_USER = {
    "uid": "uid-ash",
    "email": "ash@example.com",
    "display_name": "Ash",
    "email_verified": True,
}

SPECIES_NAMES = {
    1: "bulbasaur", 2: "ivysaur", 3: "venusaur",
    25: "pikachu", 129: "magikarp", 130: "gyarados", 133: "eevee",
}


class ScriptedRandom:
    """
    Deterministic stand-in for random.Random.

    random() pops the scripted values, then keeps returning `default`.
    choice() always picks the element at `pick`.
    """

    def __init__(self, values=(), default=0.99, pick=0):
        self.values = list(values)
        self.default = default
        self.pick = pick

    def random(self):
        return self.values.pop(0) if self.values else self.default

    def choice(self, seq):
        return seq[self.pick] if self.pick < len(seq) else seq[0]


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")

    def json(self):
        return self.payload


class FakePokeAPI:
    """Replaces requests.Session for PokemonClient; records every URL requested."""

    def __init__(self, fail=False, status_code=200):
        self.calls = []
        self.fail = fail
        self.status_code = status_code

    def get(self, url, timeout=None, headers=None):
        self.calls.append(url)
        if self.fail:
            raise requests.ConnectionError("PokeAPI unreachable")
        pokemon_id = int(url.rstrip("/").rsplit("/", 1)[1])
        payload = {
            "id": pokemon_id,
            "name": SPECIES_NAMES.get(pokemon_id, f"pokemon-{pokemon_id}"),
            "types": [{"slot": 1, "type": {"name": "normal"}}],
        }
        return FakeResponse(payload, self.status_code)

    def close(self):
        pass


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def poke_api():
    return FakePokeAPI()


@pytest.fixture
def pokemon_client(poke_api):
    return PokemonClient(PokemonCache(), session=poke_api)


@pytest.fixture
def rng():
    return ScriptedRandom()


@pytest.fixture
def reward_engine(pokemon_client, rng):
    return RewardEngine(pokemon_client, rng)


@pytest.fixture
def user(db):
    user = User(id=TEST_USER["uid"], email=TEST_USER["email"], display_name="Ash")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def client(session_factory, pokemon_client, rng):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_firebase_user_info] = lambda: dict(TEST_USER)
    app.dependency_overrides[get_pokemon_client] = lambda: pokemon_client
    app.dependency_overrides[get_rng] = lambda: rng

    yield TestClient(app)

    app.dependency_overrides.clear()


@pytest.fixture
def registered(client):
    response = client.post("/register", json={"timezone": "Europe/Berlin"})
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def habit(client, registered):
    response = client.post("/habits", json={"name": "Read 10 pages", "category": "learning"})
    assert response.status_code == 201
    return response.json()["habit"]
