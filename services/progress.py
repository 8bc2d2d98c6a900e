"""Reading goals and challenge progress.

Both counters are recomputed from the finished records every time, never
incremented. Challenge completion is sticky: once a UserChallenge is
completed it stays completed even if its value later drops.
"""
import logging
from datetime import date, datetime, timezone

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ConflictError, NotFoundError
from models import (
    Book, Challenge, ChallengeKind, ReadingGoal, ReadingRecord, ReadingStatus, UserChallenge,
)
from services.streaks import streak_today

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------- goals

def count_finished_in_year(db: Session, user_id: str, year: int) -> int:
    return (
        db.query(ReadingRecord)
          .filter(ReadingRecord.user_id == user_id,
                  ReadingRecord.status == ReadingStatus.FINISHED,
                  ReadingRecord.finish_date >= date(year, 1, 1),
                  ReadingRecord.finish_date < date(year + 1, 1, 1))
          .count()
    )


def update_reading_goal(db: Session, user_id: str, finish_date) -> bool:
    """Recount the goal for finish_date's year. Returns True when the goal was just reached."""
    if finish_date is None:
        return False
    year = finish_date.year

    goal = db.query(ReadingGoal).filter_by(user_id=user_id, year=year).first()
    if goal is None:
        return False

    goal.current_books = count_finished_in_year(db, user_id, year)
    just_reached = mark_reached(goal)
    db.commit()

    logger.info("goal %s for user %s: %s/%s books", year, user_id, goal.current_books, goal.target_books)
    return just_reached


def mark_reached(goal: ReadingGoal) -> bool:
    """Stamp achieved_at the first time the target is met. Returns True on that call."""
    if goal.achieved_at is None and goal.current_books >= goal.target_books:
        goal.achieved_at = datetime.now(timezone.utc)
        return True
    return False


def _retarget(goal: ReadingGoal, target_books: int, current: int) -> None:
    # a new target re-arms the reached marker; one already met is stamped quietly
    if goal.target_books != target_books:
        goal.achieved_at = None
    goal.target_books = target_books
    goal.current_books = current
    mark_reached(goal)


def set_goal(db: Session, user_id: str, year: int, target_books: int) -> ReadingGoal:
    current = count_finished_in_year(db, user_id, year)
    goal = db.query(ReadingGoal).filter_by(user_id=user_id, year=year).first()
    if goal is None:
        goal = ReadingGoal(user_id=user_id, year=year, target_books=target_books, current_books=current)
        mark_reached(goal)
        db.add(goal)
    else:
        _retarget(goal, target_books, current)
    try:
        db.commit()
    except IntegrityError:
        # created concurrently; fall back to updating the winner's row
        db.rollback()
        goal = db.query(ReadingGoal).filter_by(user_id=user_id, year=year).one()
        _retarget(goal, target_books, current)
        db.commit()
    return goal


def get_goal(db: Session, user_id: str, year: int) -> ReadingGoal:
    goal = db.query(ReadingGoal).filter_by(user_id=user_id, year=year).first()
    if goal is None:
        raise NotFoundError(f"no reading goal for {year}")
    return goal


def delete_goal(db: Session, user_id: str, year: int) -> None:
    db.delete(get_goal(db, user_id, year))
    db.commit()


def goal_years(db: Session, user_id: str) -> list:
    return [y for (y,) in db.query(ReadingGoal.year).filter_by(user_id=user_id).all()]


# ---------------------------------------------------------------- challenges

def _matches(challenge: Challenge, book: Book) -> bool:
    if challenge.kind == ChallengeKind.GENRE:
        wanted = (challenge.genre or "").strip().lower()
        return bool(wanted) and wanted in {g.lower() for g in book.genre_list}
    if challenge.kind == ChallengeKind.AUTHOR:
        wanted = (challenge.author or "").strip().lower()
        return bool(wanted) and wanted in (book.author or "").lower()
    return True


def challenge_value(db: Session, user_id: str, challenge: Challenge) -> int:
    rows = (
        db.query(Book)
          .join(ReadingRecord, ReadingRecord.book_id == Book.id)
          .filter(ReadingRecord.user_id == user_id,
                  ReadingRecord.status == ReadingStatus.FINISHED,
                  ReadingRecord.finish_date >= challenge.start_date,
                  ReadingRecord.finish_date <= challenge.end_date)
          .all()
    )
    books = [b for b in rows if _matches(challenge, b)]
    if challenge.kind == ChallengeKind.PAGES:
        return sum(b.pages or 0 for b in books)
    return len(books)


def refresh_user_challenge(db: Session, uc: UserChallenge) -> bool:
    """Recompute one membership. Returns True when it completed on this call."""
    uc.current_value = challenge_value(db, uc.user_id, uc.challenge)
    just_completed = False
    if not uc.is_completed and uc.current_value >= uc.challenge.target_value:
        uc.is_completed = True
        uc.completed_at = datetime.now(timezone.utc)
        just_completed = True
    return just_completed


def update_challenge_progress(db: Session, user_id: str, book_id: int = None, today: date = None) -> list:
    """Recompute the reader's open challenges the book can affect.

    A challenge is open while it is active and its end date has not passed.

    Returns ids of UserChallenge rows completed by this call.
    """
    today = today or streak_today()
    book = db.get(Book, book_id) if book_id is not None else None

    memberships = (
        db.query(UserChallenge)
          .join(Challenge, Challenge.id == UserChallenge.challenge_id)
          .filter(UserChallenge.user_id == user_id,
                  Challenge.is_active.is_(True),
                  Challenge.end_date >= today)
          .all()
    )

    completed = []
    for uc in memberships:
        if book is not None and not _matches(uc.challenge, book):
            continue
        if refresh_user_challenge(db, uc):
            completed.append(uc.id)
            logger.info("user %s completed challenge %r", user_id, uc.challenge.name)
        logger.debug("challenge %s for user %s: %s/%s", uc.challenge_id, user_id,
                     uc.current_value, uc.challenge.target_value)
    db.commit()
    return completed


def create_challenge(db: Session, **fields) -> Challenge:
    challenge = Challenge(**fields)
    db.add(challenge)
    db.commit()
    return challenge


def list_active_challenges(db: Session, today: date = None):
    today = today or streak_today()
    return (
        db.query(Challenge)
          .filter(Challenge.is_active.is_(True), Challenge.end_date >= today)
          .order_by(Challenge.start_date.asc(), Challenge.id.asc())
          .all()
    )


def join_challenge(db: Session, user_id: str, challenge_id: int, today: date = None) -> UserChallenge:
    today = today or streak_today()
    challenge = db.get(Challenge, challenge_id)
    if challenge is None or not challenge.is_active or challenge.end_date < today:
        raise NotFoundError(f"challenge {challenge_id} not found")

    uc = UserChallenge(user_id=user_id, challenge_id=challenge_id, current_value=0)
    db.add(uc)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise ConflictError("already joined this challenge")

    # books finished earlier in the window count straight away
    refresh_user_challenge(db, uc)
    db.commit()
    logger.info("user %s joined challenge %r", user_id, challenge.name)
    return uc


def list_user_challenges(db: Session, user_id: str):
    return (
        db.query(UserChallenge)
          .filter(UserChallenge.user_id == user_id)
          .order_by(UserChallenge.joined_at.desc(), UserChallenge.id.desc())
          .all()
    )


def finished_pages(db: Session, user_id: str) -> int:
    return int(
        db.query(func.coalesce(func.sum(Book.pages), 0))
          .join(ReadingRecord, ReadingRecord.book_id == Book.id)
          .filter(ReadingRecord.user_id == user_id,
                  ReadingRecord.status == ReadingStatus.FINISHED)
          .scalar()
    )
