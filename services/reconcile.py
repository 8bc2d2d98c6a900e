"""Recompute-from-scratch pass for derived state.

Fan-out steps that failed during a request are not retried inline; running
this pass (scripts/reconcile.py, or after an import) brings book ratings,
goal counters, challenge values and milestone badges back in line with the
records. Streaks are event driven and are left alone.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Book, ReadingGoal, ReadingRecord, ReadingStreak, User
from services.badges import check_all_badges, check_streak_milestones
from services.progress import count_finished_in_year, goal_years, mark_reached, update_challenge_progress
from services.ratings import recompute_book_rating

logger = logging.getLogger(__name__)


def reconcile_goals(db: Session, user_id: str) -> int:
    changed = 0
    for year in goal_years(db, user_id):
        goal = db.query(ReadingGoal).filter_by(user_id=user_id, year=year).one()
        count = count_finished_in_year(db, user_id, year)
        if goal.current_books != count:
            logger.info("goal %s for user %s drifted: %s -> %s", year, user_id, goal.current_books, count)
            goal.current_books = count
            changed += 1
        mark_reached(goal)
    db.commit()
    return changed


def reconcile_user(db: Session, user_id: str) -> dict:
    book_ids = [b for (b,) in db.query(ReadingRecord.book_id).filter_by(user_id=user_id).distinct().all()]
    for book_id in book_ids:
        recompute_book_rating(db, book_id)

    goals_changed = reconcile_goals(db, user_id)
    completed = update_challenge_progress(db, user_id)
    badges = check_all_badges(db, user_id)

    streak = db.query(ReadingStreak).filter_by(user_id=user_id).first()
    if streak is not None:
        badges += check_streak_milestones(db, user_id, streak.current_streak)
    db.commit()

    return {
        "user_id": user_id,
        "books": len(book_ids),
        "goals_changed": goals_changed,
        "challenges_completed": len(completed),
        "badges_awarded": [b.name for b in badges],
    }


def reconcile_all(db: Session) -> dict:
    users = [u for (u,) in db.query(User.id).order_by(User.id).all()]
    failed = []
    for user_id in users:
        try:
            reconcile_user(db, user_id)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("reconcile failed for user %s", user_id)
            failed.append(user_id)

    # books nobody has a record for any more still carry stale aggregates
    orphans = (
        db.query(Book.id)
          .outerjoin(ReadingRecord, ReadingRecord.book_id == Book.id)
          .filter(ReadingRecord.id.is_(None), Book.total_ratings != 0)
          .all()
    )
    for (book_id,) in orphans:
        recompute_book_rating(db, book_id)

    return {"users": len(users), "failed": failed, "orphan_books": len(orphans)}
