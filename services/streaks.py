import logging
from datetime import date, datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
from models import ReadingStreak
from services.badges import check_streak_milestones

logger = logging.getLogger(__name__)


def streak_today() -> date:
    return datetime.now(config.STREAK_TIMEZONE).date()


def advance_streak(streak: ReadingStreak, today: date) -> bool:
    """Apply one "finished a book on `today`" event. Returns False when already counted."""
    last = streak.last_read_date
    if last is None:
        streak.current_streak = 1
        streak.longest_streak = max(1, streak.longest_streak or 0)
        streak.last_read_date = today
        return True

    gap = (today - last).days
    if gap == 0:
        return False
    if gap == 1:
        streak.current_streak = (streak.current_streak or 0) + 1
        streak.longest_streak = max(streak.longest_streak or 0, streak.current_streak)
    else:
        # broken, or a clock that moved backwards
        logger.info("streak reset after %s days (%s day gap)", streak.current_streak, gap)
        streak.current_streak = 1
        streak.longest_streak = max(streak.longest_streak or 0, 1)
    streak.last_read_date = today
    return True


def _load_or_create(db: Session, user_id: str, today: date):
    streak = db.query(ReadingStreak).filter_by(user_id=user_id).first()
    if streak is not None:
        return streak, False

    streak = ReadingStreak(user_id=user_id, current_streak=1, longest_streak=1, last_read_date=today)
    db.add(streak)
    try:
        db.commit()
    except IntegrityError:
        # two finishes for the same reader raced to create the row
        db.rollback()
        return db.query(ReadingStreak).filter_by(user_id=user_id).one(), False
    logger.info("started streak for user %s", user_id)
    return streak, True


def update_reading_streak(db: Session, user_id: str, today: date = None) -> list:
    """Count a finish for today, then award any streak badges. Returns new badges."""
    today = today or streak_today()

    streak, created = _load_or_create(db, user_id, today)
    if not created:
        before = streak.current_streak
        if advance_streak(streak, today):
            db.commit()
            logger.info("user %s streak %s -> %s days", user_id, before, streak.current_streak)

    db.refresh(streak)
    return check_streak_milestones(db, user_id, streak.current_streak)


def get_streak(db: Session, user_id: str):
    return db.query(ReadingStreak).filter_by(user_id=user_id).first()
