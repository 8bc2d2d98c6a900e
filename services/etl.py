import io
import logging
from datetime import datetime
import pandas as pd
from sqlalchemy.orm import Session

from models import Book, ReadingRecord, ReadingStatus
from services.records import ensure_user
from services.reconcile import reconcile_user

logger = logging.getLogger(__name__)

# columns Goodreads puts in the standard export
REQUIRED = [
    "Title", "Author", "My Rating", "Number of Pages",
    "Original Publication Year", "Exclusive Shelf", "Bookshelves", "Date Read"
]

# Goodreads exclusive shelf -> record status
SHELF_STATUS = {
    "read": ReadingStatus.FINISHED,
    "currently-reading": ReadingStatus.CURRENTLY_READING,
    "to-read": ReadingStatus.WANT_TO_READ,
    "did-not-finish": ReadingStatus.DID_NOT_FINISH,
    "dnf": ReadingStatus.DID_NOT_FINISH,
}

def _to_int(x):
    try:
        if x is None:
            return None
        if isinstance(x, (int, float)):
            if pd.isna(x):
                return None
            v = int(float(x))
            return v if v != 0 else None
        # strings like "384.0" or "1,024"
        s = str(x).strip()
        if not s or s.lower() == "nan":
            return None
        s = s.replace(",", "")
        v = int(float(s))
        return v if v != 0 else None
    except (TypeError, ValueError):
        return None

def _to_rating(x):
    # Goodreads stars are 1..5 with 0 meaning unrated; records use 1..10
    v = _to_int(x)
    return float(v * 2) if (v is not None and 1 <= v <= 5) else None

def _to_date(s):
    if s is None or (not isinstance(s, str) and pd.isna(s)):
        return None
    s = str(s).strip()
    if not s:
        return None
    for fmt in ("%Y/%m/%d", "%Y-%m-%d", "%m/%d/%Y"):
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None

def _merge_genres(current, shelves):
    tags = [t.strip() for t in (current or "").split(",") if t.strip()]
    for t in shelves.split(","):
        t = t.strip()
        if t and t not in SHELF_STATUS and t not in tags:
            tags.append(t)
    return ",".join(tags) or None

def import_goodreads_csv(file_bytes: bytes, db: Session, user_id: str = "me") -> dict:
    # Read the Goodreads export CSV and upsert into Book and ReadingRecord
    df = pd.read_csv(io.BytesIO(file_bytes))
    missing = [c for c in REQUIRED if c not in df.columns]
    if missing:
        return {"ok": False, "error": f"missing columns: {missing}"}

    ensure_user(db, user_id)

    books_upserted = 0
    records_upserted = 0
    skipped = 0

    for _, row in df.iterrows():
        title  = str(row["Title"]).strip() if pd.notna(row["Title"]) else None
        author = str(row["Author"]).strip() if pd.notna(row["Author"]) else None
        if not title or not author:
            skipped += 1
            continue

        pages   = _to_int(row["Number of Pages"])
        year    = _to_int(row["Original Publication Year"])
        rating  = _to_rating(row["My Rating"])
        shelf   = str(row["Exclusive Shelf"]).strip().lower() if pd.notna(row["Exclusive Shelf"]) else ""
        shelves = str(row["Bookshelves"]).strip() if pd.notna(row["Bookshelves"]) else ""
        date_read = _to_date(row.get("Date Read"))

        status = SHELF_STATUS.get(shelf)
        if status is None:
            skipped += 1
            continue

        # get-or-create book on (title, author)
        book = db.query(Book).filter_by(title=title, author=author).first()
        if not book:
            book = Book(title=title, author=author, pages=pages, year=year,
                        genres=_merge_genres(None, shelves))
            db.add(book)
            books_upserted += 1
        else:
            if pages and not book.pages:
                book.pages = pages
            if year and not book.year:
                book.year = year
            book.genres = _merge_genres(book.genres, shelves)

        db.flush()  # ensure book.id exists

        record = db.query(ReadingRecord).filter_by(user_id=user_id, book_id=book.id).first()
        if not record:
            record = ReadingRecord(user_id=user_id, book_id=book.id)
            db.add(record)
            records_upserted += 1

        record.status = status
        if status == ReadingStatus.FINISHED:
            if rating is not None:
                record.rating = rating
            if date_read:
                record.finish_date = date_read
            record.read_count = record.read_count or 1
        else:
            # only finished records carry a rating or review
            record.rating = None
            record.review = None

    db.commit()
    logger.info("imported goodreads export for user %s: %s books, %s records, %s skipped",
                user_id, books_upserted, records_upserted, skipped)

    # derived state is recomputed once for the whole batch
    summary = reconcile_user(db, user_id)
    return {
        "ok": True,
        "books_upserted": books_upserted,
        "records_upserted": records_upserted,
        "skipped": skipped,
        "total_rows": int(len(df)),
        "badges_awarded": summary["badges_awarded"],
    }
