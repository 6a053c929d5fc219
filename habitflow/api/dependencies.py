"""
API Dependencies

FastAPI dependencies for authentication, database access and the
gamification services.
"""
import logging
import random
from typing import Optional
from fastapi import Depends, HTTPException, Header, Request, status
from sqlalchemy.orm import Session

from habitflow.database import get_db
from habitflow.models.db_models import User
from habitflow.services.firebase import firebase_service
from habitflow.services.pokemon import PokemonCache, PokemonClient, RandomSource
from habitflow.services.rewards import RewardEngine
from habitflow.services.users import UserNotFoundError, get_user

logger = logging.getLogger(__name__)


def _extract_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header missing",
            headers={"WWW-Authenticate": "Bearer"},
        )

    # Extract token from "Bearer <token>"
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format. Use: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return parts[1]


async def get_firebase_user_info(
    authorization: Optional[str] = Header(None),
) -> dict:
    """
    Get Firebase user info without requiring a database user.

    Used for the registration flow where the user doesn't exist in the DB yet.

    Returns:
        Dict with uid, email, display_name from the Firebase token.

    Raises:
        HTTPException: If token is missing or invalid.
    """
    token = _extract_token(authorization)
    user_info = firebase_service.get_user_info(token)

    if not user_info:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user_info


async def get_current_user(
    firebase_user: dict = Depends(get_firebase_user_info),
    db: Session = Depends(get_db),
) -> User:
    """
    Dependency to get the current authenticated user.

    Expects Authorization header in format: "Bearer <firebase_id_token>"

    Raises:
        HTTPException: If token is missing, invalid, or user not found.
    """
    try:
        return get_user(db, firebase_user["uid"])
    except UserNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found. Please register first.",
        )


def get_pokemon_client(request: Request) -> PokemonClient:
    """Shared PokeAPI client, created once at startup."""
    client = getattr(request.app.state, "pokemon_client", None)
    if client is None:
        client = PokemonClient(PokemonCache())
        request.app.state.pokemon_client = client
    return client


def get_rng() -> RandomSource:
    return random.Random()


def get_reward_engine(
    client: PokemonClient = Depends(get_pokemon_client),
    rng: RandomSource = Depends(get_rng),
) -> RewardEngine:
    return RewardEngine(client, rng)
