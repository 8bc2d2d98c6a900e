"""Activity feed events.

Logging is best-effort: log_activity is meant to run after the response as a
background task, in its own session, and a failure is logged and dropped.
It never reaches the record mutation that triggered it.
"""
import logging

from sqlalchemy.exc import SQLAlchemyError

from models import Activity, ReadingStatus

logger = logging.getLogger(__name__)

REVIEW_EXCERPT_CHARS = 200


def _event(record, book, kind, **extra) -> dict:
    data = {
        "book_id": book.id,
        "book_title": book.title,
        "book_author": book.author,
    }
    data.update({k: v for k, v in extra.items() if v is not None})
    return {"user_id": record.user_id, "kind": kind, "data": data}


def build_activity_events(record, book, old_status=None, old_review=None) -> list:
    events = []
    if record.status != old_status:
        if record.status == ReadingStatus.CURRENTLY_READING:
            events.append(_event(record, book, "started_book"))
        elif record.status == ReadingStatus.FINISHED:
            events.append(_event(record, book, "finished_book", rating=record.rating))

    if record.review and record.review != old_review:
        events.append(_event(
            record, book, "reviewed_book",
            rating=record.rating,
            review_excerpt=record.review[:REVIEW_EXCERPT_CHARS],
        ))
    return events


def log_activity(session_factory, event: dict) -> None:
    db = session_factory()
    try:
        db.add(Activity(user_id=event["user_id"], kind=event["kind"], data=event["data"]))
        db.commit()
        logger.debug("logged %s activity for user %s", event["kind"], event["user_id"])
    except SQLAlchemyError:
        db.rollback()
        logger.warning("dropping %s activity for user %s", event["kind"], event["user_id"], exc_info=True)
    finally:
        db.close()


def recent_activity(db, user_id: str, limit: int = 20):
    return (
        db.query(Activity)
          .filter(Activity.user_id == user_id)
          .order_by(Activity.created_at.desc(), Activity.id.desc())
          .limit(limit)
          .all()
    )
