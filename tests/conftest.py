import itertools
import os
from datetime import date

# the app binds its engine at import time
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from fastapi.testclient import TestClient

from database import Base, engine, SessionLocal
from models import Book, User
from services import records


@pytest.fixture
def schema():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(schema):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(schema):
    from main import app
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(db):
    def _make(user_id="alice"):
        user = db.get(User, user_id)
        if user is None:
            user = User(id=user_id, name=user_id.title())
            db.add(user)
            db.commit()
        return user
    return _make


@pytest.fixture
def make_book(db):
    counter = itertools.count(1)

    def _make(title=None, author="Ann Author", pages=300, genres=None, year=2001):
        n = next(counter)
        book = Book(title=title or f"Book {n}", author=author, pages=pages, genres=genres, year=year)
        db.add(book)
        db.commit()
        return book
    return _make


@pytest.fixture
def finish(db):
    """Add a book to the reader's list as FINISHED on `day`."""
    def _finish(user_id, book, day=date(2024, 3, 1), rating=None, review=None, is_private=False):
        payload = {
            "book_id": book.id,
            "status": "FINISHED",
            "finish_date": day,
            "is_private": is_private,
        }
        if rating is not None:
            payload["rating"] = rating
        if review is not None:
            payload["review"] = review
        return records.create_record(db, user_id, payload, today=day)
    return _finish
