import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import Book, ReadingRecord, ReadingStatus

logger = logging.getLogger(__name__)


def rated_records_filter(book_id: int):
    return (
        ReadingRecord.book_id == book_id,
        ReadingRecord.status == ReadingStatus.FINISHED,
        ReadingRecord.is_private.is_(False),
        ReadingRecord.rating.isnot(None),
    )


def recompute_book_rating(db: Session, book_id: int):
    # full recompute from the record set; safe to re-run
    book = db.get(Book, book_id)
    if book is None:
        logger.debug("rating recompute skipped, book %s is gone", book_id)
        return None

    total, avg = (
        db.query(func.count(ReadingRecord.id), func.avg(ReadingRecord.rating))
          .filter(*rated_records_filter(book_id))
          .one()
    )

    book.total_ratings = int(total or 0)
    book.average_rating = float(avg) if total else None
    db.commit()

    logger.debug("book %s rating -> %s over %s ratings", book_id, book.average_rating, book.total_ratings)
    return book
