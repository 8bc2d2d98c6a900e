"""Tests for the reading record state machine and its fan-out."""

from datetime import date, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from errors import ConflictError, ForbiddenError, InvalidUpdateError, NotFoundError
from models import Badge, BadgeType, Book, ReadingGoal, ReadingRecord, ReadingStatus, ReadingStreak, UserBadge
from services import records
from services.records import FanoutPlan, Snapshot, plan_fanout

NON_FINISHED = [
    ReadingStatus.WANT_TO_READ,
    ReadingStatus.CURRENTLY_READING,
    ReadingStatus.DID_NOT_FINISH,
]


def snap(status, rating=None, review=None, finish_date=None, is_private=False):
    return Snapshot(
        user_id="alice", book_id=1, status=status, rating=rating,
        review=review, finish_date=finish_date, is_private=is_private,
    )


# =============================================================================
# plan_fanout
# =============================================================================


class TestPlanFanout:
    """Which recomputations a transition triggers."""

    def test_entering_finished_runs_everything(self) -> None:
        plan = plan_fanout(snap(ReadingStatus.CURRENTLY_READING),
                           snap(ReadingStatus.FINISHED, finish_date=date(2024, 5, 1)))

        assert plan.ratings and plan.badges and plan.streak and plan.challenges
        assert plan.goal_dates == (date(2024, 5, 1),)

    def test_new_finished_record_runs_everything(self) -> None:
        plan = plan_fanout(None, snap(ReadingStatus.FINISHED))

        assert plan.ratings and plan.badges and plan.streak
        assert plan.goal_dates == ()

    def test_leaving_finished_uses_prior_finish_date(self) -> None:
        plan = plan_fanout(snap(ReadingStatus.FINISHED, rating=8.0, finish_date=date(2023, 12, 31)),
                           snap(ReadingStatus.CURRENTLY_READING, finish_date=date(2023, 12, 31)))

        assert plan.ratings is True
        assert plan.badges is False
        assert plan.streak is False
        assert plan.goal_dates == (date(2023, 12, 31),)

    def test_deleting_finished_record(self) -> None:
        plan = plan_fanout(snap(ReadingStatus.FINISHED, finish_date=date(2024, 1, 2)), None)

        assert plan.ratings is True
        assert plan.goal_dates == (date(2024, 1, 2),)

    def test_deleting_unfinished_record_is_a_no_op(self) -> None:
        assert plan_fanout(snap(ReadingStatus.WANT_TO_READ), None).is_empty()

    def test_rating_change_while_finished_only_touches_ratings(self) -> None:
        plan = plan_fanout(snap(ReadingStatus.FINISHED, rating=6.0),
                           snap(ReadingStatus.FINISHED, rating=9.0))

        assert plan == FanoutPlan(ratings=True)

    def test_privacy_change_while_finished_touches_ratings(self) -> None:
        plan = plan_fanout(snap(ReadingStatus.FINISHED, rating=6.0),
                           snap(ReadingStatus.FINISHED, rating=6.0, is_private=True))

        assert plan.ratings is True

    def test_finish_date_moved_across_years_recounts_both_goals(self) -> None:
        plan = plan_fanout(snap(ReadingStatus.FINISHED, finish_date=date(2023, 12, 30)),
                           snap(ReadingStatus.FINISHED, finish_date=date(2024, 1, 2)))

        assert plan.goal_dates == (date(2023, 12, 30), date(2024, 1, 2))
        assert plan.challenges is True

    def test_review_attached_while_finished_reevaluates_badges(self) -> None:
        plan = plan_fanout(snap(ReadingStatus.FINISHED),
                           snap(ReadingStatus.FINISHED, review="Loved it"))

        assert plan.badges is True
        assert plan.streak is False

    def test_moves_between_unfinished_states_touch_nothing(self) -> None:
        assert plan_fanout(snap(ReadingStatus.WANT_TO_READ),
                           snap(ReadingStatus.DID_NOT_FINISH)).is_empty()

    def test_reread_forces_finish_plan(self) -> None:
        old = snap(ReadingStatus.FINISHED, finish_date=date(2023, 6, 1))
        new = snap(ReadingStatus.FINISHED, finish_date=date(2024, 6, 1))

        plan = plan_fanout(old, new, finished_event=True)

        assert plan.streak and plan.badges
        assert plan.goal_dates == (date(2024, 6, 1), date(2023, 6, 1))


# =============================================================================
# status-gated fields
# =============================================================================


class TestStatusGatedFields:
    """Rating and review only survive on FINISHED records."""

    @pytest.mark.parametrize("status", NON_FINISHED)
    def test_create_clears_rating_and_review(self, db, make_book, status) -> None:
        book = make_book()

        record, _ = records.create_record(db, "alice", {
            "book_id": book.id, "status": status.value, "rating": 7.5, "review": "great",
        })

        assert record.rating is None
        assert record.review is None

    @pytest.mark.parametrize("status", NON_FINISHED)
    def test_update_away_from_finished_clears_fields(self, db, make_book, finish, status) -> None:
        record, _ = finish("alice", make_book(), rating=9.0, review="wow")

        record, _ = records.apply_update(db, "alice", record.id, {"status": status.value})

        db.expire_all()
        stored = db.get(ReadingRecord, record.id)
        assert stored.status == status
        assert stored.rating is None
        assert stored.review is None

    def test_rating_sent_with_unfinished_status_is_dropped(self, db, make_book) -> None:
        record, _ = records.create_record(db, "alice", {"book_id": make_book().id})

        record, _ = records.apply_update(db, "alice", record.id, {
            "status": "CURRENTLY_READING", "rating": 10.0, "review": "early take",
        })

        assert record.rating is None
        assert record.review is None

    def test_finished_keeps_rating_and_review(self, db, make_book, finish) -> None:
        record, _ = finish("alice", make_book(), rating=8.5, review="solid")

        assert record.rating == 8.5
        assert record.review == "solid"
        assert record.read_count == 1

    def test_blank_review_is_stored_as_empty(self, db, make_book, finish) -> None:
        record, _ = finish("alice", make_book(), review="   ")

        assert record.review is None


# =============================================================================
# validation and ownership
# =============================================================================


class TestFailures:
    """Typed failures, nothing partially applied."""

    @pytest.mark.parametrize("changes", [
        {"rating": 10.5},
        {"rating": 0.5},
        {"status": "ABANDONED"},
        {"finish_date": "not-a-date"},
        {"current_page": -1},
        {"status": None},
        {"color": "blue"},
    ])
    def test_invalid_changes_are_rejected_untouched(self, db, make_book, finish, changes) -> None:
        record, _ = finish("alice", make_book(), rating=6.0)

        with pytest.raises(InvalidUpdateError):
            records.apply_update(db, "alice", record.id, changes)

        db.expire_all()
        stored = db.get(ReadingRecord, record.id)
        assert stored.status == ReadingStatus.FINISHED
        assert stored.rating == 6.0

    def test_page_past_end_of_book_is_rejected(self, db, make_book) -> None:
        record, _ = records.create_record(db, "alice", {"book_id": make_book(pages=100).id})

        with pytest.raises(InvalidUpdateError):
            records.apply_update(db, "alice", record.id, {"current_page": 101})

        db.expire_all()
        assert db.get(ReadingRecord, record.id).current_page is None

    def test_unknown_record(self, db) -> None:
        with pytest.raises(NotFoundError):
            records.apply_update(db, "alice", 999, {"notes": "x"})

    def test_unknown_book(self, db) -> None:
        with pytest.raises(NotFoundError):
            records.create_record(db, "alice", {"book_id": 999})

    def test_other_readers_record_is_forbidden(self, db, make_book) -> None:
        record, _ = records.create_record(db, "alice", {"book_id": make_book().id})

        with pytest.raises(ForbiddenError):
            records.apply_update(db, "bob", record.id, {"notes": "mine now"})
        with pytest.raises(ForbiddenError):
            records.delete_record(db, "bob", record.id)

    def test_private_record_is_hidden_from_others(self, db, make_book) -> None:
        record, _ = records.create_record(db, "alice", {"book_id": make_book().id, "is_private": True})

        with pytest.raises(ForbiddenError):
            records.get_record(db, "bob", record.id)
        assert records.get_record(db, "alice", record.id).id == record.id

    def test_second_record_for_same_book_conflicts(self, db, make_book) -> None:
        book = make_book()
        records.create_record(db, "alice", {"book_id": book.id})

        with pytest.raises(ConflictError):
            records.create_record(db, "alice", {"book_id": book.id, "status": "FINISHED"})

        assert db.query(ReadingRecord).filter_by(user_id="alice").count() == 1


# =============================================================================
# fan-out
# =============================================================================


class TestFanout:
    """Derived state follows the record."""

    def test_first_finish_scenario(self, db, make_book, finish) -> None:
        """No prior records, finish with 8.5: aggregate set, streak starts, no badge yet."""
        book = make_book()

        _, result = finish("alice", book, day=date(2024, 4, 1), rating=8.5)

        db.expire_all()
        book = db.get(Book, book.id)
        assert book.average_rating == 8.5
        assert book.total_ratings == 1
        assert result.new_badges == []
        assert db.query(UserBadge).count() == 0
        streak = db.query(ReadingStreak).filter_by(user_id="alice").one()
        assert streak.current_streak == 1

    def test_five_consecutive_days_scenario(self, db, make_book, finish) -> None:
        """Fifth finish on the fifth day awards the first milestone once, streak is 5."""
        start = date(2024, 4, 1)
        earned = []
        for i in range(5):
            _, result = finish("alice", make_book(), day=start + timedelta(days=i), rating=7.0)
            earned += [b.name for b in result.new_badges]

        assert earned == ["Bookworm Beginner"]
        assert db.query(UserBadge).filter_by(user_id="alice").count() == 1
        streak = db.query(ReadingStreak).filter_by(user_id="alice").one()
        assert streak.current_streak == 5
        assert streak.longest_streak == 5

    def test_unfinishing_scenario(self, db, make_book, make_user, finish) -> None:
        """FINISHED -> CURRENTLY_READING clears fields, aggregate and goal drop."""
        make_user("alice")
        db.add(ReadingGoal(user_id="alice", year=2023, target_books=10, current_books=0))
        db.commit()
        book = make_book()
        record, _ = finish("alice", book, day=date(2023, 8, 1), rating=9.0, review="good")
        finish("bob", book, day=date(2023, 8, 2), rating=5.0)

        db.expire_all()
        assert db.get(Book, book.id).average_rating == 7.0
        assert db.query(ReadingGoal).filter_by(user_id="alice", year=2023).one().current_books == 1

        records.apply_update(db, "alice", record.id, {"status": "CURRENTLY_READING"})

        db.expire_all()
        stored = db.get(ReadingRecord, record.id)
        assert stored.rating is None and stored.review is None
        book = db.get(Book, book.id)
        assert book.average_rating == 5.0
        assert book.total_ratings == 1
        assert db.query(ReadingGoal).filter_by(user_id="alice", year=2023).one().current_books == 0

    def test_delete_recomputes_aggregates(self, db, make_book, make_user, finish) -> None:
        make_user("alice")
        db.add(ReadingGoal(user_id="alice", year=2024, target_books=3, current_books=0))
        db.commit()
        book = make_book()
        record, _ = finish("alice", book, day=date(2024, 2, 2), rating=4.0)

        records.delete_record(db, "alice", record.id)

        db.expire_all()
        assert db.get(ReadingRecord, record.id) is None
        book = db.get(Book, book.id)
        assert book.average_rating is None
        assert book.total_ratings == 0
        assert db.query(ReadingGoal).filter_by(user_id="alice").one().current_books == 0

    def test_failed_step_does_not_fail_the_mutation(self, db, make_book, monkeypatch) -> None:
        def store_down(*args, **kwargs):
            raise OperationalError("UPDATE books", {}, Exception("store unavailable"))

        monkeypatch.setattr(records, "recompute_book_rating", store_down)
        book = make_book()

        record, result = records.create_record(db, "alice", {
            "book_id": book.id, "status": "FINISHED", "rating": 6.0,
        }, today=date(2024, 1, 1))

        assert result.failed_steps == ["ratings"]
        db.expire_all()
        assert db.get(ReadingRecord, record.id).rating == 6.0
        # later steps still ran
        assert db.query(ReadingStreak).filter_by(user_id="alice").one().current_streak == 1
        assert db.get(Book, book.id).total_ratings == 0

    def test_unexpected_error_in_a_step_is_isolated(self, db, make_book, monkeypatch) -> None:
        def broken(*args, **kwargs):
            raise ValueError("bad threshold table")

        monkeypatch.setattr(records, "check_all_badges", broken)

        record, result = records.create_record(db, "alice", {
            "book_id": make_book().id, "status": "FINISHED", "rating": 8.0,
        }, today=date(2024, 1, 1))

        assert result.failed_steps == ["badges"]
        db.expire_all()
        assert db.get(ReadingRecord, record.id).status == ReadingStatus.FINISHED
        assert db.query(ReadingStreak).filter_by(user_id="alice").one().current_streak == 1

    def test_activity_events_for_finish_with_review(self, db, make_book, finish) -> None:
        _, result = finish("alice", make_book(title="Dune"), rating=9.0, review="x" * 500)

        kinds = [e["kind"] for e in result.activity]
        assert kinds == ["finished_book", "reviewed_book"]
        review_event = result.activity[1]
        assert review_event["data"]["book_title"] == "Dune"
        assert len(review_event["data"]["review_excerpt"]) == 200

    def test_started_book_activity(self, db, make_book) -> None:
        record, _ = records.create_record(db, "alice", {"book_id": make_book().id})

        _, result = records.apply_update(db, "alice", record.id, {"status": "CURRENTLY_READING"})

        assert [e["kind"] for e in result.activity] == ["started_book"]


# =============================================================================
# progress and re-reads
# =============================================================================


class TestProgressAndReread:
    def test_update_progress(self, db, make_book) -> None:
        record, _ = records.create_record(db, "alice", {
            "book_id": make_book(pages=250).id, "status": "CURRENTLY_READING",
        })

        record = records.update_progress(db, "alice", record.id, 120)

        assert record.current_page == 120
        with pytest.raises(InvalidUpdateError):
            records.update_progress(db, "alice", record.id, 251)

    def test_reread_increments_count_and_restamps(self, db, make_book, finish) -> None:
        record, _ = finish("alice", make_book(), day=date(2024, 1, 10), rating=6.0)

        record, result = records.reread(db, "alice", record.id, {"rating": 9.0}, today=date(2024, 1, 11))

        assert record.read_count == 2
        assert record.finish_date == date(2024, 1, 11)
        assert record.rating == 9.0
        assert db.query(ReadingStreak).filter_by(user_id="alice").one().current_streak == 2

    def test_reread_same_day_does_not_double_count_streak(self, db, make_book, finish) -> None:
        record, _ = finish("alice", make_book(), day=date(2024, 1, 10))

        records.reread(db, "alice", record.id, today=date(2024, 1, 10))

        assert db.query(ReadingStreak).filter_by(user_id="alice").one().current_streak == 1

    def test_list_records_filters_by_status(self, db, make_book, finish) -> None:
        finish("alice", make_book())
        records.create_record(db, "alice", {"book_id": make_book().id})
        records.create_record(db, "bob", {"book_id": make_book().id})

        items, total = records.list_records(db, "alice", status=ReadingStatus.FINISHED)

        assert total == 1
        assert items[0].status == ReadingStatus.FINISHED
        _, total = records.list_records(db, "alice")
        assert total == 2

    def test_badge_rows_are_created_lazily(self, db, make_book, finish) -> None:
        assert db.query(Badge).count() == 0
        for i in range(5):
            finish("alice", make_book(), day=date(2024, 1, 1) + timedelta(days=i))

        badge = db.query(Badge).one()
        assert badge.type == BadgeType.READING_MILESTONE
        assert badge.points == 50
