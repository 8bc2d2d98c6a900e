"""Milestone badges.

Badge rows are not seeded. The first reader to cross a threshold creates the
row, so creation goes through get_or_create_badge: insert, and when the
(name, type) unique constraint is hit by a concurrent creator, re-read the
winner's row instead of failing. Awards are keyed on (user_id, badge_id) and
are a no-op when already present.

Every check re-scans the reader's records and re-checks all thresholds, so an
evaluation can be run again at any time.
"""
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Badge, BadgeType, Book, ReadingRecord, ReadingStatus, UserBadge

logger = logging.getLogger(__name__)

# (threshold, badge name)
READING_MILESTONES = [
    (5, "Bookworm Beginner"),
    (10, "Ten Book Triumph"),
    (25, "Avid Reader"),
    (50, "Book Enthusiast"),
    (100, "Literary Legend"),
]
REVIEW_MILESTONES = [
    (5, "Reviewer Rookie"),
    (25, "Review Master"),
    (50, "Critique Connoisseur"),
    (100, "Review Legend"),
]
STREAK_MILESTONES = [
    (7, "Week Warrior"),
    (30, "Monthly Maven"),
    (100, "Centurion Streak"),
    (365, "Year-Long Reader"),
]
GENRE_EXPLORER_THRESHOLD = 5
GENRE_EXPLORER_POINTS = 25


@dataclass(frozen=True)
class BadgeDef:
    name: str
    type: BadgeType
    description: str
    criteria: dict
    points: int


@dataclass
class Created:
    badge: Badge


@dataclass
class AlreadyExists:
    badge: Badge


BadgeLookup = Union[Created, AlreadyExists]


def _find_badge(db: Session, name: str, badge_type: BadgeType):
    return db.query(Badge).filter_by(name=name, type=badge_type).first()


def get_or_create_badge(db: Session, defn: BadgeDef) -> BadgeLookup:
    existing = _find_badge(db, defn.name, defn.type)
    if existing is not None:
        return AlreadyExists(existing)

    badge = Badge(
        name=defn.name,
        type=defn.type,
        description=defn.description,
        criteria=defn.criteria,
        points=defn.points,
    )
    db.add(badge)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        winner = _find_badge(db, defn.name, defn.type)
        if winner is None:
            raise
        logger.debug("badge %r (%s) created concurrently, using existing row %s",
                     defn.name, defn.type.value, winner.id)
        return AlreadyExists(winner)

    logger.info("created badge %r (%s)", badge.name, badge.type.value)
    return Created(badge)


def award_badge(db: Session, user_id: str, badge: Badge) -> bool:
    """Return True only when this call inserted the UserBadge row."""
    held = db.query(UserBadge.id).filter_by(user_id=user_id, badge_id=badge.id).first()
    if held is not None:
        return False

    db.add(UserBadge(user_id=user_id, badge_id=badge.id))
    try:
        db.commit()
    except IntegrityError:
        # a concurrent evaluation for the same reader got there first
        db.rollback()
        return False

    logger.info("user %s earned %r (%s)", user_id, badge.name, badge.type.value)
    return True


def _award_all(db: Session, user_id: str, defs) -> list:
    earned = []
    for defn in defs:
        badge = get_or_create_badge(db, defn).badge
        if award_badge(db, user_id, badge):
            earned.append(badge)
    return earned


def _finished(db: Session, user_id: str):
    return db.query(ReadingRecord).filter(
        ReadingRecord.user_id == user_id,
        ReadingRecord.status == ReadingStatus.FINISHED,
    )


def reading_milestone_defs(finished_count: int) -> list:
    return [
        BadgeDef(name, BadgeType.READING_MILESTONE, f"Read {n} books",
                  {"books_finished": n}, n * 10)
        for n, name in READING_MILESTONES
        if finished_count >= n
    ]


def review_milestone_defs(review_count: int) -> list:
    return [
        BadgeDef(name, BadgeType.REVIEW_MASTER, f"Write {n} reviews",
                  {"reviews_written": n}, n * 5)
        for n, name in REVIEW_MILESTONES
        if review_count >= n
    ]


def streak_milestone_defs(current_streak: int) -> list:
    return [
        BadgeDef(name, BadgeType.READING_STREAK, f"Read for {n} consecutive days",
                  {"streak_days": n}, n)
        for n, name in STREAK_MILESTONES
        if current_streak >= n
    ]


def genre_badge_name(genre: str) -> str:
    return f"{genre.strip().title()} Explorer"


def genre_explorer_defs(genre_counts: Counter) -> list:
    defs = []
    for genre, count in sorted(genre_counts.items()):
        if count >= GENRE_EXPLORER_THRESHOLD:
            defs.append(BadgeDef(
                genre_badge_name(genre), BadgeType.GENRE_EXPLORER,
                f"Read {GENRE_EXPLORER_THRESHOLD} {genre} books",
                {"genre": genre, "books_in_genre": GENRE_EXPLORER_THRESHOLD},
                GENRE_EXPLORER_POINTS,
            ))
    return defs


def check_reading_milestones(db: Session, user_id: str) -> list:
    count = _finished(db, user_id).count()
    return _award_all(db, user_id, reading_milestone_defs(count))


def check_review_master(db: Session, user_id: str) -> list:
    count = (
        _finished(db, user_id)
          .filter(ReadingRecord.review.isnot(None), ReadingRecord.review != "")
          .count()
    )
    return _award_all(db, user_id, review_milestone_defs(count))


def count_finished_genres(db: Session, user_id: str) -> Counter:
    rows = (
        db.query(Book.genres)
          .join(ReadingRecord, ReadingRecord.book_id == Book.id)
          .filter(ReadingRecord.user_id == user_id,
                  ReadingRecord.status == ReadingStatus.FINISHED,
                  Book.genres.isnot(None))
          .all()
    )
    counts = Counter()
    for (genres,) in rows:
        # one book counts once per genre even if the tag repeats
        tags = {g.strip().lower() for g in genres.split(",") if g.strip()}
        counts.update(tags)
    return counts


def check_genre_explorer(db: Session, user_id: str) -> list:
    return _award_all(db, user_id, genre_explorer_defs(count_finished_genres(db, user_id)))


def check_streak_milestones(db: Session, user_id: str, current_streak: int) -> list:
    return _award_all(db, user_id, streak_milestone_defs(current_streak))


def check_all_badges(db: Session, user_id: str) -> list:
    earned = []
    earned += check_reading_milestones(db, user_id)
    earned += check_review_master(db, user_id)
    earned += check_genre_explorer(db, user_id)
    return earned


def user_badges(db: Session, user_id: str):
    return (
        db.query(UserBadge)
          .filter(UserBadge.user_id == user_id)
          .order_by(UserBadge.earned_at.desc(), UserBadge.id.desc())
          .all()
    )
