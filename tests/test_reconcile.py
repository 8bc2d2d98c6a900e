"""Recompute-from-scratch repairs drift left by failed fan-out steps."""

from datetime import date

from sqlalchemy.exc import OperationalError

from models import Book, ReadingGoal, ReadingRecord, ReadingStatus, UserBadge
from services import records
from services.progress import set_goal
from services.reconcile import reconcile_all, reconcile_goals, reconcile_user


class TestReconcile:
    def test_repairs_after_failed_fanout(self, db, make_user, make_book, monkeypatch) -> None:
        make_user("alice")
        set_goal(db, "alice", 2024, 3)

        def store_down(*args, **kwargs):
            raise OperationalError("UPDATE", {}, Exception("locked"))

        with monkeypatch.context() as m:
            m.setattr(records, "recompute_book_rating", store_down)
            m.setattr(records, "update_reading_goal", store_down)
            book = make_book()
            _, result = records.create_record(db, "alice", {
                "book_id": book.id, "status": "FINISHED", "rating": 7.0, "finish_date": "2024-07-07",
            }, today=date(2024, 7, 7))

        assert result.failed_steps == ["ratings", "goal"]
        db.expire_all()
        assert db.get(Book, book.id).total_ratings == 0

        summary = reconcile_user(db, "alice")

        assert summary["goals_changed"] == 1
        db.expire_all()
        assert db.get(Book, book.id).average_rating == 7.0
        assert db.query(ReadingGoal).filter_by(user_id="alice").one().current_books == 1

    def test_goals_already_in_line(self, db, make_user, make_book, finish) -> None:
        make_user("alice")
        set_goal(db, "alice", 2024, 3)
        finish("alice", make_book(), day=date(2024, 3, 3))

        assert reconcile_goals(db, "alice") == 0

    def test_missed_badges_are_awarded(self, db, make_user, make_book) -> None:
        make_user("alice")
        for _ in range(5):
            db.add(ReadingRecord(user_id="alice", book_id=make_book().id, status=ReadingStatus.FINISHED,
                                 finish_date=date(2024, 1, 1), read_count=1))
        db.commit()

        summary = reconcile_user(db, "alice")

        assert summary["badges_awarded"] == ["Bookworm Beginner"]
        assert reconcile_user(db, "alice")["badges_awarded"] == []
        assert db.query(UserBadge).count() == 1

    def test_reconcile_all_fixes_orphan_books(self, db, make_user, make_book, finish) -> None:
        book = make_book()
        finish("alice", book, rating=9.0)
        orphan = make_book()
        orphan.total_ratings = 3
        orphan.average_rating = 4.5
        db.commit()

        summary = reconcile_all(db)

        assert summary == {"users": 1, "failed": [], "orphan_books": 1}
        db.expire_all()
        orphan = db.get(Book, orphan.id)
        assert (orphan.total_ratings, orphan.average_rating) == (0, None)
        assert db.get(Book, book.id).average_rating == 9.0
