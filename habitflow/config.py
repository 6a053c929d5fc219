from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # API
    API_TITLE: str = "HabitFlow API"
    API_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    # Database
    DATABASE_URL: str = "sqlite:///./habitflow.db"

    # Firebase credentials (either a file path or the raw JSON content)
    FIREBASE_CREDENTIALS_PATH: str | None = None
    FIREBASE_CREDENTIALS_JSON: str | None = None

    # PokeAPI
    POKEAPI_BASE_URL: str = "https://pokeapi.co/api/v2"
    POKEMON_IMAGE_BASE_URL: str = (
        "https://raw.githubusercontent.com/PokeAPI/sprites/master/sprites/pokemon/other/official-artwork"
    )
    POKEAPI_TIMEOUT_SECONDS: float = 5.0
    POKEMON_CACHE_TTL_SECONDS: int = 30 * 60

    # Gamification tuning
    ENCOUNTER_CHANCE: float = 0.10
    SHINY_CHANCE: float = 0.01
    MIN_FOCUS_MINUTES: int = 20

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    model_config = {
        "env_file": ".env",
        "extra": "ignore",
    }

settings = Settings()
