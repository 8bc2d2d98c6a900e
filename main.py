import logging
from datetime import date as _date
from typing import Optional

from fastapi import FastAPI, UploadFile, File, HTTPException, Depends, Header, BackgroundTasks, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.orm import Session

import config
import models
from database import Base, engine, get_db, SessionLocal
from errors import ShelfError, NotFoundError, ForbiddenError, ConflictError, InvalidUpdateError
from schemas import (
    RecordCreate, RecordUpdate, ProgressUpdate, RereadRequest, GoalIn, ChallengeCreate,
    BookOut, RecordOut, BadgeOut, UserBadgeOut, RecordMutationOut, StreakOut, GoalOut,
    ChallengeOut, UserChallengeOut, ActivityOut,
)
from services import records, progress
from services.activity import log_activity, recent_activity
from services.badges import user_badges
from services.etl import import_goodreads_csv
from services.streaks import get_streak

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("shelf")

app = FastAPI(title="Shelf Journal")

# create tables once at startup
Base.metadata.create_all(bind=engine)

ERROR_STATUS = {
    NotFoundError: 404,
    ForbiddenError: 403,
    ConflictError: 409,
    InvalidUpdateError: 400,
}


@app.exception_handler(ShelfError)
async def handle_shelf_error(request: Request, exc: ShelfError):
    status_code = ERROR_STATUS.get(type(exc), 400)
    logger.debug("%s %s -> %s: %s", request.method, request.url.path, status_code, exc.message)
    return JSONResponse({"detail": exc.message}, status_code=status_code)


def current_user(x_user_id: str = Header(...)) -> str:
    # identity is authenticated upstream; this layer only reads it
    user_id = x_user_id.strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="missing reader identity")
    return user_id


def _emit_activity(tasks: BackgroundTasks, result: records.FanoutResult):
    for event in result.activity:
        tasks.add_task(log_activity, SessionLocal, event)


def _mutation_out(record, result: records.FanoutResult) -> RecordMutationOut:
    return RecordMutationOut(
        record=RecordOut.model_validate(record) if record is not None else None,
        new_badges=[BadgeOut.model_validate(b) for b in result.new_badges],
        completed_challenges=result.completed_challenges,
        goals_achieved=result.goals_achieved,
    )


@app.get("/")
def health():
    return {"status": "ok"}


@app.post("/import/goodreads")
async def import_goodreads(
    file: UploadFile = File(...),
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db)
):
    if not file.filename.endswith(".csv"):
        raise HTTPException(status_code=415, detail="upload a .csv file")
    content = await file.read()
    result = import_goodreads_csv(content, db, user_id=user_id)
    return result


@app.get("/stats/overview")
def stats_overview(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    mine = db.query(models.ReadingRecord).filter(models.ReadingRecord.user_id == user_id)

    by_status = {s.value: 0 for s in models.ReadingStatus}
    for status, n in (
        db.query(models.ReadingRecord.status, func.count(models.ReadingRecord.id))
          .filter(models.ReadingRecord.user_id == user_id)
          .group_by(models.ReadingRecord.status)
          .all()
    ):
        by_status[status.value] = n

    avg_rating = (
        db.query(func.avg(models.ReadingRecord.rating))
          .filter(models.ReadingRecord.user_id == user_id,
                  models.ReadingRecord.rating.isnot(None))
          .scalar()
    )

    total_pages_read = progress.finished_pages(db, user_id)

    first_read = (
        db.query(func.min(models.ReadingRecord.finish_date))
          .filter(models.ReadingRecord.user_id == user_id,
                  models.ReadingRecord.status == models.ReadingStatus.FINISHED)
          .scalar()
    )
    days = max(1, (_date.today() - first_read).days) if first_read else 1
    pages_per_day = round(total_pages_read / days, 2) if total_pages_read else 0

    streak = get_streak(db, user_id)
    return {
        "total_records": mine.count(),
        "by_status": by_status,
        "avg_rating": round(float(avg_rating), 2) if avg_rating is not None else None,
        "total_pages_read": int(total_pages_read),
        "pages_per_day": pages_per_day,
        "since": str(first_read) if first_read else None,
        "current_streak": streak.current_streak if streak else 0,
        "longest_streak": streak.longest_streak if streak else 0,
        "badges": len(user_badges(db, user_id)),
    }


# ---- reading records ----

@app.post("/records", status_code=201, response_model=RecordMutationOut)
def create_record(
    body: RecordCreate,
    tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db)
):
    record, result = records.create_record(db, user_id, body)
    _emit_activity(tasks, result)
    return _mutation_out(record, result)


@app.get("/records")
def list_records(
    status: Optional[models.ReadingStatus] = None,
    limit: int = 20,
    offset: int = 0,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db)
):
    limit = max(1, min(limit, config.MAX_PAGE_SIZE))
    items, total = records.list_records(db, user_id, status=status, limit=limit, offset=max(0, offset))
    return {
        "items": [RecordOut.model_validate(r) for r in items],
        "total": total,
        "has_more": total > offset + limit,
    }


@app.get("/records/{record_id}", response_model=RecordOut)
def get_record(record_id: int, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return records.get_record(db, user_id, record_id)


@app.patch("/records/{record_id}", response_model=RecordMutationOut)
def update_record(
    record_id: int,
    body: RecordUpdate,
    tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db)
):
    record, result = records.apply_update(db, user_id, record_id, body)
    _emit_activity(tasks, result)
    return _mutation_out(record, result)


@app.patch("/records/{record_id}/progress", response_model=RecordOut)
def update_progress(
    record_id: int,
    body: ProgressUpdate,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db)
):
    return records.update_progress(db, user_id, record_id, body.current_page)


@app.post("/records/{record_id}/reread", response_model=RecordMutationOut)
def reread_record(
    record_id: int,
    body: RereadRequest,
    tasks: BackgroundTasks,
    user_id: str = Depends(current_user),
    db: Session = Depends(get_db)
):
    record, result = records.reread(db, user_id, record_id, body)
    _emit_activity(tasks, result)
    return _mutation_out(record, result)


@app.delete("/records/{record_id}", response_model=RecordMutationOut)
def delete_record(record_id: int, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    result = records.delete_record(db, user_id, record_id)
    return _mutation_out(None, result)


@app.get("/books/{book_id}", response_model=BookOut)
def get_book(book_id: int, db: Session = Depends(get_db)):
    book = db.get(models.Book, book_id)
    if book is None:
        raise NotFoundError(f"book {book_id} not found")
    return book


# ---- achievements ----

@app.get("/me/streak", response_model=StreakOut)
def my_streak(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return get_streak(db, user_id) or StreakOut()


@app.get("/me/badges", response_model=list[UserBadgeOut])
def my_badges(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return user_badges(db, user_id)


@app.get("/goals/{year}", response_model=GoalOut)
def get_goal(year: int, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return progress.get_goal(db, user_id, year)


@app.put("/goals/{year}", response_model=GoalOut)
def set_goal(year: int, body: GoalIn, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    records.ensure_user(db, user_id)
    return progress.set_goal(db, user_id, year, body.target_books)


@app.delete("/goals/{year}", status_code=204)
def delete_goal(year: int, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    progress.delete_goal(db, user_id, year)


@app.get("/challenges", response_model=list[ChallengeOut])
def list_challenges(db: Session = Depends(get_db)):
    return progress.list_active_challenges(db)


@app.post("/challenges", status_code=201, response_model=ChallengeOut)
def create_challenge(body: ChallengeCreate, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return progress.create_challenge(db, **body.model_dump())


@app.post("/challenges/{challenge_id}/join", status_code=201, response_model=UserChallengeOut)
def join_challenge(challenge_id: int, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    records.ensure_user(db, user_id)
    return progress.join_challenge(db, user_id, challenge_id)


@app.get("/me/challenges", response_model=list[UserChallengeOut])
def my_challenges(user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return progress.list_user_challenges(db, user_id)


@app.get("/me/activity", response_model=list[ActivityOut])
def my_activity(limit: int = 20, user_id: str = Depends(current_user), db: Session = Depends(get_db)):
    return recent_activity(db, user_id, limit=max(1, min(limit, config.MAX_PAGE_SIZE)))
