"""
Pomodoro Service

Records focus and break sessions. Qualifying work sessions advance the
evolution progress of the user's Pokemon.
"""
import logging
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from habitflow.models.db_models import PomodoroSession
from habitflow.models.schemas import PomodoroCreate, RewardResult
from habitflow.services.rewards import RewardEngine

logger = logging.getLogger(__name__)


def record_session(
    db: Session,
    user_id: str,
    data: PomodoroCreate,
    engine: RewardEngine,
) -> tuple[PomodoroSession, List[RewardResult]]:
    """
    Store a finished session and run the evolution protocol for it.

    Evolution failures are logged and leave the stored session intact.

    Returns:
        Tuple of (session, evolution rewards).
    """
    completed_at = data.completed_at or datetime.now()
    session = PomodoroSession(
        user_id=user_id,
        session_type=data.session_type.value,
        duration=data.duration,
        completed_at=completed_at,
        date=completed_at.date(),
    )
    db.add(session)
    db.flush()

    evolutions: List[RewardResult] = []
    try:
        with db.begin_nested():
            evolutions = engine.handle_focus_session(
                db, user_id, data.session_type.value, data.duration
            )
    except Exception as e:
        logger.error(f"Evolution processing failed for user {user_id}: {e}")
        evolutions = []

    db.commit()
    db.refresh(session)
    logger.info(
        f"User {user_id} finished {session.session_type} session ({session.duration} min), "
        f"{len(evolutions)} evolution(s)"
    )
    return session, evolutions


def list_sessions(
    db: Session,
    user_id: str,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    session_type: Optional[str] = None,
) -> List[PomodoroSession]:
    query = db.query(PomodoroSession).filter(PomodoroSession.user_id == user_id)
    if start_date and end_date:
        query = query.filter(PomodoroSession.date >= start_date, PomodoroSession.date <= end_date)
    if session_type:
        query = query.filter(PomodoroSession.session_type == session_type)
    return query.order_by(PomodoroSession.completed_at.desc(), PomodoroSession.id.desc()).all()
