from datetime import date, datetime
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import ReadingStatus, BadgeType, ChallengeKind

Rating = Annotated[float, Field(ge=1.0, le=10.0)]


class RecordCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    book_id: int
    status: ReadingStatus = ReadingStatus.WANT_TO_READ
    rating: Optional[Rating] = None
    review: Optional[str] = None
    notes: Optional[str] = None
    start_date: Optional[date] = None
    finish_date: Optional[date] = None
    is_favorite: bool = False
    is_private: bool = False
    current_page: Optional[int] = Field(default=None, ge=0)


class RecordUpdate(BaseModel):
    """Partial change set; only fields the caller sent are applied."""

    model_config = ConfigDict(extra="forbid")

    status: Optional[ReadingStatus] = None
    rating: Optional[Rating] = None
    review: Optional[str] = None
    notes: Optional[str] = None
    start_date: Optional[date] = None
    finish_date: Optional[date] = None
    is_favorite: Optional[bool] = None
    is_private: Optional[bool] = None
    current_page: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _flags_not_null(self):
        for name in ("status", "is_favorite", "is_private"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class ProgressUpdate(BaseModel):
    current_page: int = Field(..., ge=0)


class RereadRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rating: Optional[Rating] = None
    review: Optional[str] = None
    notes: Optional[str] = None
    finish_date: Optional[date] = None


class GoalIn(BaseModel):
    target_books: int = Field(..., ge=1)


class ChallengeCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    kind: ChallengeKind = ChallengeKind.BOOKS
    target_value: int = Field(..., ge=1)
    start_date: date
    end_date: date
    genre: Optional[str] = None
    author: Optional[str] = None

    @model_validator(mode="after")
    def _check_window_and_filter(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if self.kind == ChallengeKind.GENRE and not self.genre:
            raise ValueError("GENRE challenges need a genre")
        if self.kind == ChallengeKind.AUTHOR and not self.author:
            raise ValueError("AUTHOR challenges need an author")
        return self


# ---- responses ----

class BookOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    author: str
    pages: Optional[int] = None
    year: Optional[int] = None
    genres: Optional[str] = None
    average_rating: Optional[float] = None
    total_ratings: int = 0


class RecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    book_id: int
    status: ReadingStatus
    rating: Optional[float] = None
    review: Optional[str] = None
    notes: Optional[str] = None
    start_date: Optional[date] = None
    finish_date: Optional[date] = None
    is_favorite: bool
    is_private: bool
    current_page: Optional[int] = None
    read_count: int = 0


class BadgeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    type: BadgeType
    points: int


class UserBadgeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    badge: BadgeOut
    earned_at: Optional[datetime] = None


class RecordMutationOut(BaseModel):
    record: Optional[RecordOut] = None
    new_badges: list[BadgeOut] = []
    completed_challenges: list[int] = []
    goals_achieved: list[int] = []


class StreakOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    current_streak: int = 0
    longest_streak: int = 0
    last_read_date: Optional[date] = None


class GoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    year: int
    target_books: int
    current_books: int
    achieved_at: Optional[datetime] = None


class ChallengeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    kind: ChallengeKind
    target_value: int
    start_date: date
    end_date: date
    is_active: bool
    genre: Optional[str] = None
    author: Optional[str] = None


class UserChallengeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    challenge: ChallengeOut
    current_value: int
    is_completed: bool
    completed_at: Optional[datetime] = None


class ActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    kind: str
    data: Optional[dict] = None
    created_at: Optional[datetime] = None
