"""Reading record lifecycle.

A record moves between WANT_TO_READ, CURRENTLY_READING, FINISHED and
DID_NOT_FINISH in any direction. Rating and review only survive on a
FINISHED record; any other resulting status clears them before the write.

Every mutation commits the record first and then fans out to the derived
state (book rating, badges, streak, goal, challenges). Each fan-out step
recomputes from the records on its own and commits on its own. A failing
step is logged and skipped, and the record write still stands. The
reconciliation pass in services.reconcile repairs whatever was missed.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from errors import ConflictError, ForbiddenError, InvalidUpdateError, NotFoundError
from models import Book, ReadingRecord, ReadingStatus, User
from schemas import RecordCreate, RecordUpdate, RereadRequest
from services.activity import build_activity_events
from services.badges import check_all_badges
from services.progress import update_challenge_progress, update_reading_goal
from services.ratings import recompute_book_rating
from services.streaks import streak_today, update_reading_streak

logger = logging.getLogger(__name__)

FINISHED = ReadingStatus.FINISHED


@dataclass(frozen=True)
class Snapshot:
    user_id: str
    book_id: int
    status: ReadingStatus
    rating: Optional[float]
    review: Optional[str]
    finish_date: Optional[date]
    is_private: bool

    @classmethod
    def of(cls, record: ReadingRecord) -> "Snapshot":
        return cls(
            user_id=record.user_id,
            book_id=record.book_id,
            status=record.status,
            rating=record.rating,
            review=record.review,
            finish_date=record.finish_date,
            is_private=bool(record.is_private),
        )


@dataclass
class FanoutPlan:
    ratings: bool = False
    badges: bool = False
    streak: bool = False
    goal_dates: tuple = ()
    challenges: bool = False

    def is_empty(self) -> bool:
        return not (self.ratings or self.badges or self.streak or self.goal_dates or self.challenges)


@dataclass
class FanoutResult:
    new_badges: list = field(default_factory=list)
    completed_challenges: list = field(default_factory=list)
    goals_achieved: list = field(default_factory=list)
    failed_steps: list = field(default_factory=list)
    activity: list = field(default_factory=list)


def _distinct_years(*dates) -> tuple:
    seen, out = set(), []
    for d in dates:
        if d is not None and d.year not in seen:
            seen.add(d.year)
            out.append(d)
    return tuple(out)


def plan_fanout(old: Optional[Snapshot], new: Optional[Snapshot], finished_event: bool = False) -> FanoutPlan:
    """Decide which derived state a transition touches.

    old is None for a new record, new is None for a deleted one.
    finished_event forces the "entered FINISHED" plan (re-reads).
    """
    was_finished = old is not None and old.status == FINISHED
    is_finished = new is not None and new.status == FINISHED

    if is_finished and (finished_event or not was_finished):
        prior = old.finish_date if was_finished else None
        return FanoutPlan(
            ratings=True, badges=True, streak=True,
            goal_dates=_distinct_years(new.finish_date, prior),
            challenges=True,
        )

    if was_finished and not is_finished:
        return FanoutPlan(ratings=True, goal_dates=_distinct_years(old.finish_date), challenges=True)

    if was_finished and is_finished:
        plan = FanoutPlan()
        plan.ratings = old.rating != new.rating or old.is_private != new.is_private
        if old.finish_date != new.finish_date:
            plan.goal_dates = _distinct_years(old.finish_date, new.finish_date)
            plan.challenges = True
        plan.badges = bool(new.review) and not old.review
        return plan

    return FanoutPlan()


def _step(db: Session, result: FanoutResult, name: str, user_id: str, fn):
    # the record is already committed; a step never turns that into a failure
    try:
        return fn()
    except Exception:
        db.rollback()
        logger.exception("fan-out step %s failed for user %s", name, user_id)
        result.failed_steps.append(name)
        return None


def run_fanout(db: Session, user_id: str, book_id: int, plan: FanoutPlan,
               today: date = None, result: FanoutResult = None) -> FanoutResult:
    result = result or FanoutResult()
    if plan.is_empty():
        db.commit()
        return result

    if plan.ratings:
        _step(db, result, "ratings", user_id, lambda: recompute_book_rating(db, book_id))
    if plan.badges:
        result.new_badges += _step(db, result, "badges", user_id, lambda: check_all_badges(db, user_id)) or []
    if plan.streak:
        result.new_badges += _step(db, result, "streak", user_id,
                                   lambda: update_reading_streak(db, user_id, today)) or []
    for finish_date in plan.goal_dates:
        if _step(db, result, "goal", user_id, lambda: update_reading_goal(db, user_id, finish_date)):
            result.goals_achieved.append(finish_date.year)
    if plan.challenges:
        result.completed_challenges += _step(db, result, "challenges", user_id,
                                             lambda: update_challenge_progress(db, user_id, book_id, today)) or []

    # steps can end on a read; release the store before background work runs
    db.commit()
    return result


# ---------------------------------------------------------------- helpers

def _validate(model, payload):
    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise InvalidUpdateError(str(e)) from e


def _normalize(record: ReadingRecord) -> None:
    for attr in ("review", "notes"):
        value = getattr(record, attr)
        if value is not None and not value.strip():
            setattr(record, attr, None)

    if record.status != FINISHED:
        record.rating = None
        record.review = None
    elif not record.read_count:
        record.read_count = 1


def _check_page(current_page, book: Book) -> None:
    if current_page is not None and book is not None and book.pages and current_page > book.pages:
        raise InvalidUpdateError(f"current_page {current_page} is past the last page ({book.pages})")


def ensure_user(db: Session, user_id: str) -> User:
    user = db.get(User, user_id)
    if user is not None:
        return user
    db.add(User(id=user_id, name=user_id))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
    return db.get(User, user_id)


def _owned_record(db: Session, user_id: str, record_id: int) -> ReadingRecord:
    record = db.get(ReadingRecord, record_id)
    if record is None:
        raise NotFoundError(f"reading record {record_id} not found")
    if record.user_id != user_id:
        raise ForbiddenError("reading record belongs to another reader")
    return record


# ---------------------------------------------------------------- operations

def create_record(db: Session, user_id: str, payload, today: date = None):
    payload = _validate(RecordCreate, payload)

    book = db.get(Book, payload.book_id)
    if book is None:
        raise NotFoundError(f"book {payload.book_id} not found")
    _check_page(payload.current_page, book)

    ensure_user(db, user_id)
    record = ReadingRecord(user_id=user_id, **payload.model_dump())
    _normalize(record)
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise ConflictError("reading record already exists for this book")
    logger.info("user %s added book %s as %s", user_id, book.id, record.status.value)

    after = Snapshot.of(record)
    result = FanoutResult(activity=build_activity_events(record, book))
    run_fanout(db, user_id, book.id, plan_fanout(None, after), today, result)
    return record, result


def apply_update(db: Session, user_id: str, record_id: int, changes, today: date = None):
    """Apply a partial change set, then recompute whatever the transition touches."""
    changes = _validate(RecordUpdate, changes).changes()

    record = _owned_record(db, user_id, record_id)
    _check_page(changes.get("current_page"), record.book)

    before = Snapshot.of(record)
    for name, value in changes.items():
        setattr(record, name, value)
    _normalize(record)
    db.commit()

    after = Snapshot.of(record)
    if before.status != after.status:
        logger.info("record %s: %s -> %s", record.id, before.status.value, after.status.value)

    result = FanoutResult(activity=build_activity_events(record, record.book, before.status, before.review))
    run_fanout(db, user_id, record.book_id, plan_fanout(before, after), today, result)
    return record, result


def update_progress(db: Session, user_id: str, record_id: int, current_page: int) -> ReadingRecord:
    if current_page is None or current_page < 0:
        raise InvalidUpdateError("current_page must be zero or more")
    record = _owned_record(db, user_id, record_id)
    _check_page(current_page, record.book)
    record.current_page = current_page
    db.commit()
    return record


def reread(db: Session, user_id: str, record_id: int, payload=None, today: date = None):
    """Mark the book read again: FINISHED, read_count + 1, finish date stamped."""
    payload = _validate(RereadRequest, payload or {})
    record = _owned_record(db, user_id, record_id)

    before = Snapshot.of(record)
    record.status = FINISHED
    record.read_count = (record.read_count or 0) + 1
    record.finish_date = payload.finish_date or today or streak_today()
    for name in ("rating", "review", "notes"):
        if name in payload.model_fields_set:
            setattr(record, name, getattr(payload, name))
    _normalize(record)
    db.commit()
    logger.info("user %s re-read book %s (%s reads)", user_id, record.book_id, record.read_count)

    after = Snapshot.of(record)
    result = FanoutResult(activity=build_activity_events(record, record.book, None, before.review))
    run_fanout(db, user_id, record.book_id, plan_fanout(before, after, finished_event=True), today, result)
    return record, result


def delete_record(db: Session, user_id: str, record_id: int, today: date = None) -> FanoutResult:
    record = _owned_record(db, user_id, record_id)
    before = Snapshot.of(record)

    db.delete(record)
    db.commit()
    logger.info("user %s removed record %s for book %s", user_id, record_id, before.book_id)

    return run_fanout(db, user_id, before.book_id, plan_fanout(before, None), today)


def get_record(db: Session, user_id: str, record_id: int) -> ReadingRecord:
    record = db.get(ReadingRecord, record_id)
    if record is None:
        raise NotFoundError(f"reading record {record_id} not found")
    if record.user_id != user_id and record.is_private:
        raise ForbiddenError("reading record is private")
    return record


def list_records(db: Session, user_id: str, status: ReadingStatus = None, limit: int = 20, offset: int = 0):
    q = db.query(ReadingRecord).filter(ReadingRecord.user_id == user_id)
    if status is not None:
        q = q.filter(ReadingRecord.status == status)
    total = q.count()
    items = (
        q.order_by(ReadingRecord.updated_at.desc(), ReadingRecord.id.desc())
         .offset(offset)
         .limit(limit)
         .all()
    )
    return items, total
