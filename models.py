import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Float, Date, DateTime, Boolean, Text, JSON,
    Enum, ForeignKey, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class ReadingStatus(str, enum.Enum):
    WANT_TO_READ = "WANT_TO_READ"
    CURRENTLY_READING = "CURRENTLY_READING"
    FINISHED = "FINISHED"
    DID_NOT_FINISH = "DID_NOT_FINISH"


class BadgeType(str, enum.Enum):
    READING_MILESTONE = "READING_MILESTONE"
    REVIEW_MASTER = "REVIEW_MASTER"
    GENRE_EXPLORER = "GENRE_EXPLORER"
    READING_STREAK = "READING_STREAK"


class ChallengeKind(str, enum.Enum):
    BOOKS = "BOOKS"
    PAGES = "PAGES"
    GENRE = "GENRE"
    AUTHOR = "AUTHOR"


class User(Base):
    __tablename__ = "users"
    id   = Column(String, primary_key=True)
    name = Column(String, nullable=False)


class Book(Base):
    __tablename__ = "books"
    id     = Column(Integer, primary_key=True, autoincrement=True)
    title  = Column(String, nullable=False, index=True)
    author = Column(String, nullable=False, index=True)
    pages  = Column(Integer)
    year   = Column(Integer)
    genres = Column(String)                      # comma-joined tags

    # derived from reading_records, see services.ratings
    average_rating = Column(Float)
    total_ratings  = Column(Integer, nullable=False, default=0)

    __table_args__ = (UniqueConstraint("title", "author", name="uq_title_author"),)

    records = relationship("ReadingRecord", back_populates="book", cascade="all, delete")

    @property
    def genre_list(self):
        return [g.strip() for g in (self.genres or "").split(",") if g.strip()]


class ReadingRecord(Base):
    __tablename__ = "reading_records"
    id          = Column(Integer, primary_key=True, autoincrement=True)
    user_id     = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    book_id     = Column(Integer, ForeignKey("books.id"), nullable=False, index=True)
    status      = Column(Enum(ReadingStatus), nullable=False, default=ReadingStatus.WANT_TO_READ)
    rating      = Column(Float)                  # 1.0 .. 10.0, FINISHED only
    review      = Column(Text)                   # FINISHED only
    notes       = Column(Text)
    start_date  = Column(Date)
    finish_date = Column(Date)
    is_favorite = Column(Boolean, nullable=False, default=False)
    is_private  = Column(Boolean, nullable=False, default=False)
    current_page = Column(Integer)
    read_count  = Column(Integer, nullable=False, default=0)
    created_at  = Column(DateTime(timezone=True), default=_utcnow)
    updated_at  = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (UniqueConstraint("user_id", "book_id", name="uq_record_user_book"),)

    user = relationship("User")
    book = relationship("Book", back_populates="records")


class ReadingStreak(Base):
    __tablename__ = "reading_streaks"
    id             = Column(Integer, primary_key=True, autoincrement=True)
    user_id        = Column(String, ForeignKey("users.id"), nullable=False, unique=True)
    current_streak = Column(Integer, nullable=False, default=0)
    longest_streak = Column(Integer, nullable=False, default=0)
    last_read_date = Column(Date)


class Badge(Base):
    __tablename__ = "badges"
    id          = Column(Integer, primary_key=True, autoincrement=True)
    name        = Column(String, nullable=False)
    description = Column(String)
    type        = Column(Enum(BadgeType), nullable=False)
    criteria    = Column(JSON)
    points      = Column(Integer, nullable=False, default=0)
    created_at  = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (UniqueConstraint("name", "type", name="uq_badge_name_type"),)


class UserBadge(Base):
    __tablename__ = "user_badges"
    id        = Column(Integer, primary_key=True, autoincrement=True)
    user_id   = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    badge_id  = Column(Integer, ForeignKey("badges.id"), nullable=False)
    earned_at = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (UniqueConstraint("user_id", "badge_id", name="uq_user_badge"),)

    badge = relationship("Badge")


class Challenge(Base):
    __tablename__ = "challenges"
    id           = Column(Integer, primary_key=True, autoincrement=True)
    name         = Column(String, nullable=False)
    description  = Column(Text)
    kind         = Column(Enum(ChallengeKind), nullable=False, default=ChallengeKind.BOOKS)
    target_value = Column(Integer, nullable=False)
    start_date   = Column(Date, nullable=False)
    end_date     = Column(Date, nullable=False)
    is_active    = Column(Boolean, nullable=False, default=True)
    genre        = Column(String)                # GENRE challenges only
    author       = Column(String)                # AUTHOR challenges only


class UserChallenge(Base):
    __tablename__ = "user_challenges"
    id            = Column(Integer, primary_key=True, autoincrement=True)
    user_id       = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    challenge_id  = Column(Integer, ForeignKey("challenges.id"), nullable=False)
    current_value = Column(Integer, nullable=False, default=0)
    is_completed  = Column(Boolean, nullable=False, default=False)
    completed_at  = Column(DateTime(timezone=True))
    joined_at     = Column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (UniqueConstraint("user_id", "challenge_id", name="uq_user_challenge"),)

    challenge = relationship("Challenge")


class ReadingGoal(Base):
    __tablename__ = "reading_goals"
    id            = Column(Integer, primary_key=True, autoincrement=True)
    user_id       = Column(String, ForeignKey("users.id"), nullable=False)
    year          = Column(Integer, nullable=False)
    target_books  = Column(Integer, nullable=False)
    current_books = Column(Integer, nullable=False, default=0)
    achieved_at   = Column(DateTime(timezone=True))  # first time current_books met the target

    __table_args__ = (UniqueConstraint("user_id", "year", name="uq_goal_user_year"),)


class Activity(Base):
    __tablename__ = "activities"
    id         = Column(Integer, primary_key=True, autoincrement=True)
    user_id    = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    kind       = Column(String, nullable=False)
    data       = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
