"""
User Service

Registration, lookup and profile updates of Firebase-backed users.
"""
import logging
from typing import Optional

from sqlalchemy.orm import Session

from habitflow.models.db_models import User
from habitflow.models.schemas import ProfileUpdate, RewardResult
from habitflow.services.rewards import RewardEngine

logger = logging.getLogger(__name__)


class UserNotFoundError(LookupError):
    pass


def get_user(db: Session, user_id: str) -> User:
    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise UserNotFoundError(f"User {user_id} not found")
    return user


def register_user(
    db: Session,
    firebase_user: dict,
    timezone: str = "UTC",
    engine: Optional[RewardEngine] = None,
) -> tuple[User, bool, Optional[RewardResult]]:
    """
    Register a new user or return the existing one.

    A new user receives the welcome Pokemon. A failure while granting it is
    logged and does not undo the registration.

    Args:
        db: Database session.
        firebase_user: Verified token info with uid, email, display_name.
        timezone: IANA timezone name for the new user.
        engine: Reward engine for the signup event.

    Returns:
        Tuple of (user, is_new_user, welcome reward or None).
    """
    uid = firebase_user["uid"]
    existing = db.query(User).filter(User.id == uid).first()
    if existing is not None:
        logger.info(f"Existing user found: {existing.email}")
        return existing, False, None

    logger.info(f"Creating new user: {firebase_user.get('email')}")
    user = User(
        id=uid,
        email=firebase_user.get("email") or "",
        display_name=firebase_user.get("display_name"),
        timezone=timezone or "UTC",
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    reward = None
    if engine is not None:
        try:
            with db.begin_nested():
                reward = engine.handle_signup(db, uid)
            db.commit()
        except Exception as e:
            logger.error(f"Welcome reward failed for user {uid}: {e}")
            db.rollback()
            reward = None

    return user, True, reward


def update_profile(db: Session, user: User, data: ProfileUpdate) -> User:
    """Apply the fields sent in a profile update; unset fields keep their value."""
    changes = {k: v for k, v in data.model_dump(exclude_unset=True).items() if v is not None}
    for key, value in changes.items():
        setattr(user, key, value)

    db.commit()
    db.refresh(user)
    logger.info(f"User {user.id} updated profile fields {sorted(changes)}")
    return user
