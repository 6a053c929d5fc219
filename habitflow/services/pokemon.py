"""
Pokemon Service

Fetches Pokemon data from PokeAPI and holds the static reward tables:
evolution chains, rarity overrides, per-rarity id pools, experience values.

Random choices always go through an injected random source so callers
(and tests) control the outcome.
"""
import logging
import time
from dataclasses import dataclass, field, replace
from threading import Lock, local
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import requests

from habitflow.config import settings
from habitflow.models.schemas import Rarity, TriggerType

logger = logging.getLogger(__name__)


class RandomSource(Protocol):
    """The subset of random.Random the reward code relies on."""

    def random(self) -> float: ...

    def choice(self, seq: Sequence): ...


@dataclass(frozen=True)
class EvolutionChain:
    stage1: int
    stage2: Optional[int] = None
    stage3: Optional[int] = None


@dataclass(frozen=True)
class Pokemon:
    id: int
    name: str
    image: str
    types: List[str] = field(default_factory=list)
    rarity: Rarity = Rarity.COMMON
    evolution_stage: int = 1
    can_evolve: bool = False
    evolution_amount: Optional[int] = None


@dataclass(frozen=True)
class RewardTrigger:
    type: TriggerType
    value: int
    habit_id: Optional[int] = None
    pokemon_id: Optional[int] = None  # source species, for evolutions


# Stage 1 -> Stage 2 -> Stage 3. Species missing here never evolve.
EVOLUTION_CHAINS: Dict[int, EvolutionChain] = {
    # Kanto starters
    1: EvolutionChain(1, 2, 3),
    4: EvolutionChain(4, 5, 6),
    7: EvolutionChain(7, 8, 9),
    # Popular chains
    25: EvolutionChain(25, 26),
    129: EvolutionChain(129, 130),
    10: EvolutionChain(10, 11, 12),
    13: EvolutionChain(13, 14, 15),
    19: EvolutionChain(19, 20),
    21: EvolutionChain(21, 22),
    23: EvolutionChain(23, 24),
    27: EvolutionChain(27, 28),
    29: EvolutionChain(29, 30, 31),
    32: EvolutionChain(32, 33, 34),
    35: EvolutionChain(35, 36),
    37: EvolutionChain(37, 38),
    39: EvolutionChain(39, 40),
    41: EvolutionChain(41, 42),
    43: EvolutionChain(43, 44, 45),
    46: EvolutionChain(46, 47),
    48: EvolutionChain(48, 49),
    50: EvolutionChain(50, 51),
    52: EvolutionChain(52, 53),
    54: EvolutionChain(54, 55),
    56: EvolutionChain(56, 57),
    58: EvolutionChain(58, 59),
    60: EvolutionChain(60, 61, 62),
    63: EvolutionChain(63, 64, 65),
    66: EvolutionChain(66, 67, 68),
    69: EvolutionChain(69, 70, 71),
    72: EvolutionChain(72, 73),
    74: EvolutionChain(74, 75, 76),
    77: EvolutionChain(77, 78),
    79: EvolutionChain(79, 80),
    81: EvolutionChain(81, 82),
    84: EvolutionChain(84, 85),
    86: EvolutionChain(86, 87),
    88: EvolutionChain(88, 89),
    90: EvolutionChain(90, 91),
    92: EvolutionChain(92, 93, 94),
    95: EvolutionChain(95, 208),
    96: EvolutionChain(96, 97),
    98: EvolutionChain(98, 99),
    100: EvolutionChain(100, 101),
    102: EvolutionChain(102, 103),
    104: EvolutionChain(104, 105),
    108: EvolutionChain(108, 463),
    109: EvolutionChain(109, 110),
    111: EvolutionChain(111, 112),
    113: EvolutionChain(113, 242),
    114: EvolutionChain(114, 465),
    116: EvolutionChain(116, 117),
    118: EvolutionChain(118, 119),
    120: EvolutionChain(120, 121),
    123: EvolutionChain(123, 212),
    125: EvolutionChain(125, 466),
    126: EvolutionChain(126, 467),
    127: EvolutionChain(127, 214),
    128: EvolutionChain(128, 149),
    133: EvolutionChain(133, 134, 135),
    138: EvolutionChain(138, 139),
    140: EvolutionChain(140, 141),
    147: EvolutionChain(147, 148, 149),
}

# Species whose rarity is fixed regardless of the pool they were drawn from
POKEMON_RARITY_MAP: Dict[int, Rarity] = {
    **{pid: Rarity.LEGENDARY for pid in (
        144, 145, 146, 150, 151, 243, 244, 245, 249, 250, 380, 381, 382, 383, 384,
    )},
    **{pid: Rarity.EPIC for pid in (147, 148, 149, 246, 247, 248)},
    **{pid: Rarity.RARE for pid in (3, 6, 9, 26, 130)},
    1: Rarity.COMMON,
    4: Rarity.COMMON,
    7: Rarity.COMMON,
    25: Rarity.UNCOMMON,
    129: Rarity.COMMON,
}

# Base forms handed out by the 3-day streak reward
EVOLVABLE_BASE_POOL = [
    1, 4, 7, 25, 129, 10, 13, 19, 21, 23, 27, 29, 32, 35, 37, 39, 41, 43, 46, 48,
    50, 52, 54, 56, 58, 60, 63, 66, 69, 72, 74, 77, 79, 81, 84, 86, 88, 90, 92, 95,
    96, 98, 100, 102, 104, 108, 109, 111, 113, 114, 116, 118, 120, 123, 125, 126,
    127, 128, 133, 138, 140, 147,
]

RARITY_POOLS: Dict[Rarity, List[int]] = {
    Rarity.COMMON: [
        1, 4, 7, 10, 13, 16, 19, 21, 23, 27, 29, 32, 35, 37, 39, 41, 43, 46, 48, 50,
        52, 54, 56, 58, 60, 63, 66, 69, 72, 74, 77, 79, 81, 83, 84, 86, 88, 90, 92,
        95, 96, 98, 100, 102, 104, 108, 109, 111, 113, 114, 115, 116, 118, 120, 122,
        123, 124, 125, 126, 127, 128, 129, 133, 134, 135, 136, 137, 138, 140, 152,
        155, 158, 161, 163, 165, 167, 170, 172, 173, 174, 175, 177, 179, 183, 185,
        187, 190, 191, 193, 194, 198, 200, 204, 206, 209, 213, 214, 215, 216, 218,
        220, 222, 223, 225, 226, 228, 231, 234, 235, 236, 238, 239, 240, 252, 255,
        258, 261, 263, 265, 267, 269, 270, 273, 276, 278, 283, 285, 287, 290, 293,
        296, 299, 300, 303, 304, 307, 309, 311, 312, 313, 314, 315, 316, 318, 320,
        322, 325, 327, 328, 331, 333, 335, 336, 337, 338, 339, 341, 343, 345, 347,
        349, 351, 352, 353, 355, 357, 358, 359, 360, 361, 363, 366, 369, 370, 371,
        374,
    ],
    Rarity.UNCOMMON: [
        2, 5, 8, 11, 14, 17, 20, 22, 24, 26, 28, 30, 33, 36, 38, 40, 42, 44, 47, 49,
        51, 53, 55, 57, 59, 61, 64, 67, 70, 75, 78, 80, 82, 85, 87, 89, 91, 93, 97,
        99, 101, 103, 105, 106, 107, 110, 112, 117, 119, 121, 130, 139, 141, 153,
        156, 159, 162, 164, 166, 168, 171, 176, 178, 180, 184, 186, 188, 192, 195,
        199, 201, 205, 207, 210, 217, 219, 221, 224, 227, 229, 232, 233, 237, 241,
        253, 256, 259, 262, 264, 266, 268, 271, 274, 277, 279, 284, 286, 288, 291,
        294, 297, 301, 305, 308, 310, 317, 319, 321, 323, 326, 329, 332, 334, 340,
        342, 344, 346, 348, 350, 354, 356, 362, 364, 367, 372,
    ],
    Rarity.RARE: [
        3, 6, 9, 12, 15, 18, 25, 31, 34, 45, 62, 65, 68, 71, 73, 76, 94, 131, 132,
        142, 143, 154, 157, 160, 181, 182, 189, 196, 197, 202, 203, 208, 211, 212,
        230, 242, 254, 257, 260, 272, 275, 280, 281, 282, 289, 292, 295, 298, 302,
        306, 324, 330, 365, 368, 373, 375,
    ],
    Rarity.EPIC: [147, 148, 149, 246, 247, 248, 142, 345, 347, 349, 351, 374, 375, 376],
    Rarity.LEGENDARY: [
        144, 145, 146, 150, 151, 243, 244, 245, 249, 250, 251, 377, 378, 379, 380,
        381, 382, 383, 384, 385, 386,
    ],
    # Shiny variants reuse the common pool with the rarity overridden
    Rarity.SHINY: [],
}

STARTER_IDS = [1, 4, 7]  # Bulbasaur, Charmander, Squirtle
FIRST_HABIT_IDS = [25, 129, 133]  # Pikachu, Magikarp, Eevee

FALLBACK_POKEMON_ID = 129  # Magikarp

EXPERIENCE_BY_RARITY: Dict[Rarity, int] = {
    Rarity.COMMON: 10,
    Rarity.UNCOMMON: 25,
    Rarity.RARE: 50,
    Rarity.EPIC: 100,
    Rarity.LEGENDARY: 200,
    Rarity.SHINY: 300,
}

# Focus sessions needed to evolve, keyed by current stage
EVOLUTION_SESSIONS_BY_STAGE = {1: 5, 2: 10}


def get_evolution_stage(pokemon_id: int) -> int:
    for chain in EVOLUTION_CHAINS.values():
        if chain.stage1 == pokemon_id:
            return 1
        if chain.stage2 == pokemon_id:
            return 2
        if chain.stage3 == pokemon_id:
            return 3
    return 1


def get_next_evolution(pokemon_id: int) -> Optional[int]:
    for chain in EVOLUTION_CHAINS.values():
        if chain.stage1 == pokemon_id and chain.stage2:
            return chain.stage2
        if chain.stage2 == pokemon_id and chain.stage3:
            return chain.stage3
    return None


def can_pokemon_evolve(pokemon_id: int) -> bool:
    return get_next_evolution(pokemon_id) is not None


def experience_for_rarity(rarity: Rarity) -> int:
    return EXPERIENCE_BY_RARITY[Rarity(rarity)]


RARITY_ORDER = list(Rarity)


def higher_rarity(a: Rarity, b: Rarity) -> Rarity:
    return a if RARITY_ORDER.index(Rarity(a)) >= RARITY_ORDER.index(Rarity(b)) else b


def determine_rarity(
    trigger: RewardTrigger,
    rng: RandomSource,
    shiny_chance: float = settings.SHINY_CHANCE,
) -> Rarity:
    """
    Pick the rarity tier for a trigger.

    Every trigger first rolls for shiny; otherwise the tier is a step
    function of the trigger's magnitude. The 3-day streak is pinned to
    common.
    """
    if rng.random() < shiny_chance:
        return Rarity.SHINY

    value = trigger.value
    if trigger.type == TriggerType.STREAK:
        if value == 3:
            return Rarity.COMMON
        if value >= 100:
            return Rarity.LEGENDARY
        if value >= 50:
            return Rarity.EPIC
        if value >= 30:
            return Rarity.RARE
        if value >= 10:
            return Rarity.UNCOMMON
        return Rarity.COMMON

    if trigger.type == TriggerType.PERFECT_MONTH:
        return Rarity.LEGENDARY if rng.random() < 0.3 else Rarity.EPIC

    if trigger.type == TriggerType.PERFECT_WEEK:
        return Rarity.EPIC if rng.random() < 0.2 else Rarity.RARE

    if trigger.type == TriggerType.MILESTONE:
        if value >= 1000:
            return Rarity.LEGENDARY
        if value >= 500:
            return Rarity.EPIC
        if value >= 100:
            return Rarity.RARE
        if value >= 50:
            return Rarity.UNCOMMON
        return Rarity.COMMON

    if trigger.type == TriggerType.POMODORO_EVOLUTION:
        return Rarity.UNCOMMON

    return Rarity.COMMON


def pick_pokemon_id(rarity: Rarity, rng: RandomSource, for_streak_reward: bool = False) -> int:
    """Uniform choice from the rarity's pool; the 3-day streak draws from the evolvable pool."""
    if for_streak_reward and rarity == Rarity.COMMON:
        return rng.choice(EVOLVABLE_BASE_POOL)

    pool = RARITY_POOLS.get(rarity) or []
    if not pool:
        return FALLBACK_POKEMON_ID
    return rng.choice(pool)


class PokemonCache:
    """
    TTL cache of fetched Pokemon keyed by species id.

    The clock is injected so expiry can be tested without sleeping.
    Safe to share across request threads.
    """

    def __init__(
        self,
        ttl_seconds: float = settings.POKEMON_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[int, tuple[Pokemon, float]] = {}
        self._lock: Lock = Lock()

    def get(self, pokemon_id: int) -> Optional[Pokemon]:
        with self._lock:
            entry = self._entries.get(pokemon_id)
            if entry is None:
                return None
            pokemon, expires_at = entry
            if self._clock() >= expires_at:
                self._entries.pop(pokemon_id, None)
                return None
            return pokemon

    def peek(self, pokemon_id: int) -> Optional[Pokemon]:
        """Return an entry even if it has expired."""
        with self._lock:
            entry = self._entries.get(pokemon_id)
        return entry[0] if entry else None

    def set(self, pokemon: Pokemon) -> None:
        with self._lock:
            self._entries[pokemon.id] = (pokemon, self._clock() + self.ttl_seconds)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PokemonClient:
    """
    PokeAPI client with a timeout, a TTL cache and a fixed fallback.

    Fetch errors never propagate: the cached fallback species (or a
    hard-coded Magikarp) is returned instead. Without an injected session
    each thread gets its own requests.Session.
    """

    def __init__(
        self,
        cache: Optional[PokemonCache] = None,
        session: Optional[requests.Session] = None,
        base_url: str = settings.POKEAPI_BASE_URL,
        image_base_url: str = settings.POKEMON_IMAGE_BASE_URL,
        timeout: float = settings.POKEAPI_TIMEOUT_SECONDS,
    ):
        self.cache = cache if cache is not None else PokemonCache()
        self._session = session
        self._local = local()
        self._thread_sessions: List[requests.Session] = []
        self._sessions_lock: Lock = Lock()
        self.base_url = base_url.rstrip("/")
        self.image_base_url = image_base_url.rstrip("/")
        self.timeout = timeout

    @property
    def session(self):
        if self._session is not None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
            with self._sessions_lock:
                self._thread_sessions.append(session)
        return session

    def close(self) -> None:
        with self._sessions_lock:
            sessions, self._thread_sessions = self._thread_sessions, []
        for session in sessions:
            session.close()
        if self._session is not None:
            self._session.close()

    def image_url(self, pokemon_id: int) -> str:
        return f"{self.image_base_url}/{pokemon_id}.png"

    def _build(self, data: dict) -> Pokemon:
        pokemon_id = int(data["id"])
        stage = get_evolution_stage(pokemon_id)
        evolvable = can_pokemon_evolve(pokemon_id)
        raw_name = str(data["name"])
        return Pokemon(
            id=pokemon_id,
            name=raw_name[:1].upper() + raw_name[1:],
            image=self.image_url(pokemon_id),
            types=[t["type"]["name"] for t in data.get("types", [])],
            rarity=POKEMON_RARITY_MAP.get(pokemon_id, Rarity.COMMON),
            evolution_stage=stage,
            can_evolve=evolvable,
            evolution_amount=EVOLUTION_SESSIONS_BY_STAGE.get(stage) if evolvable else None,
        )

    def fallback(self) -> Pokemon:
        cached = self.cache.peek(FALLBACK_POKEMON_ID)
        if cached is not None:
            return cached

        pokemon = Pokemon(
            id=FALLBACK_POKEMON_ID,
            name="Magikarp",
            image=self.image_url(FALLBACK_POKEMON_ID),
            types=["water"],
            rarity=Rarity.COMMON,
            evolution_stage=1,
            can_evolve=True,
            evolution_amount=EVOLUTION_SESSIONS_BY_STAGE[1],
        )
        self.cache.set(pokemon)
        return pokemon

    def lookup(self, pokemon_id: int) -> tuple[Pokemon, bool]:
        """
        Get Pokemon data by species id.

        Args:
            pokemon_id: National dex number.

        Returns:
            Tuple of (pokemon, fetched). fetched is False when the fallback
            was substituted because PokeAPI failed or timed out.
        """
        cached = self.cache.get(pokemon_id)
        if cached is not None:
            return cached, True

        try:
            response = self.session.get(
                f"{self.base_url}/pokemon/{pokemon_id}",
                timeout=self.timeout,
                headers={"Cache-Control": "public, max-age=86400"},
            )
            response.raise_for_status()
            pokemon = self._build(response.json())
        except (requests.RequestException, ValueError, KeyError, TypeError) as e:
            logger.warning(f"PokeAPI fetch failed for Pokemon {pokemon_id}: {e}")
            return self.fallback(), False

        self.cache.set(pokemon)
        return pokemon, True

    def fetch(self, pokemon_id: int) -> Pokemon:
        return self.lookup(pokemon_id)[0]

    def generate_reward(self, trigger: RewardTrigger, rng: RandomSource) -> Pokemon:
        """
        Resolve a trigger to a concrete Pokemon with its final rarity.

        Pool draws keep the tier they were drawn from; evolutions are at
        least uncommon. A failed fetch yields the plain common fallback.
        """
        rarity = determine_rarity(trigger, rng)

        if trigger.type == TriggerType.POMODORO_EVOLUTION and trigger.pokemon_id:
            pokemon_id = get_next_evolution(trigger.pokemon_id) or trigger.pokemon_id
        else:
            is_base_form_reward = trigger.type == TriggerType.STREAK and trigger.value == 3
            pool_rarity = Rarity.COMMON if rarity == Rarity.SHINY else rarity
            pokemon_id = pick_pokemon_id(pool_rarity, rng, for_streak_reward=is_base_form_reward)

        pokemon, fetched = self.lookup(pokemon_id)
        if not fetched:
            return pokemon

        if rarity != Rarity.SHINY and trigger.type == TriggerType.POMODORO_EVOLUTION:
            rarity = higher_rarity(pokemon.rarity, rarity)
        return replace(pokemon, rarity=rarity)

    def welcome_pokemon(self, rng: RandomSource) -> Pokemon:
        """One of the Kanto starters, bumped to uncommon."""
        pokemon = self.fetch(rng.choice(STARTER_IDS))
        return replace(pokemon, rarity=Rarity.UNCOMMON)

    def first_habit_pokemon(self, rng: RandomSource) -> Pokemon:
        pokemon = self.fetch(rng.choice(FIRST_HABIT_IDS))
        return replace(pokemon, rarity=Rarity.UNCOMMON)
