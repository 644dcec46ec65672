import sqlite3
import threading
from datetime import datetime, timedelta, timezone

import pytest

from smart_library import circulation
from smart_library.database import get_db_connection
from smart_library.errors import ConflictError, ForbiddenError, NotFoundError
from smart_library.models import IssueStatus, to_timestamp
from smart_library.penalties import compute_overdue

NOW = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)


def available(lib, book_id):
    return lib.find_book(book_id, include_inactive=True).available_copies


def test_issue_and_return_scenario(lib, student, other_student, make_book):
    book = make_book(total_copies=1)

    issue = circulation.issue_book(student, book.id, now=NOW)
    assert issue.status is IssueStatus.ISSUED
    assert issue.issue_date == NOW
    assert issue.due_date == NOW + timedelta(days=7)
    assert issue.book["title"] == "Clean Code"
    assert available(lib, book.id) == 0

    with pytest.raises(ConflictError, match="No available copies"):
        circulation.issue_book(other_student, book.id, now=NOW)
    assert available(lib, book.id) == 0

    returned = circulation.return_book(student, issue.id, now=NOW + timedelta(days=2))
    assert returned.status is IssueStatus.RETURNED
    assert returned.return_date == NOW + timedelta(days=2)
    assert returned.penalty_amount == 0
    assert available(lib, book.id) == 1


def test_duplicate_open_issue_rejected(lib, student, make_book):
    book = make_book(total_copies=2)
    circulation.issue_book(student, book.id, now=NOW)

    with pytest.raises(ConflictError, match="already issued"):
        circulation.issue_book(student, book.id, now=NOW)
    assert available(lib, book.id) == 1


def test_can_borrow_again_after_returning(lib, student, make_book):
    book = make_book(total_copies=1)
    first = circulation.issue_book(student, book.id, now=NOW)
    circulation.return_book(student, first.id, now=NOW + timedelta(days=1))

    second = circulation.issue_book(student, book.id, now=NOW + timedelta(days=2))
    assert second.id != first.id
    assert available(lib, book.id) == 0


def test_issue_missing_or_inactive_book(lib, student, make_book):
    with pytest.raises(NotFoundError):
        circulation.issue_book(student, 999, now=NOW)

    book = make_book()
    lib.remove_book(book.id)
    with pytest.raises(NotFoundError, match="inactive"):
        circulation.issue_book(student, book.id, now=NOW)


def test_return_twice_conflicts_without_incrementing(lib, student, make_book):
    book = make_book(total_copies=3)
    issue = circulation.issue_book(student, book.id, now=NOW)
    circulation.return_book(student, issue.id, now=NOW)
    assert available(lib, book.id) == 3

    with pytest.raises(ConflictError, match="already returned"):
        circulation.return_book(student, issue.id, now=NOW)
    assert available(lib, book.id) == 3


def test_return_missing_issue(student):
    with pytest.raises(NotFoundError, match="Issue not found"):
        circulation.return_book(student, 42, now=NOW)


def test_admin_may_return_for_another_user(lib, student, admin, make_book):
    book = make_book()
    issue = circulation.issue_book(student, book.id, now=NOW)

    returned = circulation.return_book(admin, issue.id, now=NOW)
    assert returned.status is IssueStatus.RETURNED
    assert available(lib, book.id) == 1


def test_student_cannot_return_someone_elses_issue(lib, student, other_student, make_book):
    book = make_book()
    issue = circulation.issue_book(student, book.id, now=NOW)

    with pytest.raises(ForbiddenError):
        circulation.return_book(other_student, issue.id, now=NOW)
    assert available(lib, book.id) == 0
    assert circulation.get_issue(issue.id).status is IssueStatus.ISSUED


def test_return_of_soft_deleted_book_still_restores_copy(lib, student, make_book):
    book = make_book(total_copies=2)
    issue = circulation.issue_book(student, book.id, now=NOW)
    lib.remove_book(book.id)

    circulation.return_book(student, issue.id, now=NOW)
    assert available(lib, book.id) == 2


def test_available_copies_never_exceed_total_on_return(lib, student, make_book):
    book = make_book(total_copies=2)
    issue = circulation.issue_book(student, book.id, now=NOW)
    # an admin shrank the stock while the copy was out
    lib.update_book(book.id, total_copies=1, available_copies=1)

    circulation.return_book(student, issue.id, now=NOW)
    assert available(lib, book.id) == 1


def test_late_return_freezes_penalty(lib, student, make_book):
    book = make_book()
    issue = circulation.issue_book(student, book.id, now=NOW)

    returned = circulation.return_book(student, issue.id, now=NOW + timedelta(days=10, hours=3))
    assert returned.penalty_amount == 15
    assert returned.penalty_paid is False

    later = compute_overdue(returned, NOW + timedelta(days=30))
    assert later.penalty_amount == 15
    assert later.is_overdue is False


class TestPayPenalty:
    def _late_return(self, student, make_book):
        book = make_book()
        issue = circulation.issue_book(student, book.id, now=NOW)
        return circulation.return_book(student, issue.id, now=NOW + timedelta(days=9))

    def test_admin_settles_penalty(self, student, admin, make_book):
        issue = self._late_return(student, make_book)
        paid = circulation.pay_penalty(admin, issue.id)
        assert paid.penalty_paid is True
        assert paid.penalty_amount == 10

        with pytest.raises(ConflictError, match="already paid"):
            circulation.pay_penalty(admin, issue.id)

    def test_student_cannot_settle(self, student, make_book):
        issue = self._late_return(student, make_book)
        with pytest.raises(ForbiddenError):
            circulation.pay_penalty(student, issue.id)

    def test_open_issue_cannot_be_settled(self, student, admin, make_book):
        book = make_book()
        issue = circulation.issue_book(student, book.id, now=NOW)
        with pytest.raises(ConflictError, match="returned"):
            circulation.pay_penalty(admin, issue.id)

    def test_nothing_to_settle(self, student, admin, make_book):
        book = make_book()
        issue = circulation.issue_book(student, book.id, now=NOW)
        circulation.return_book(student, issue.id, now=NOW)
        with pytest.raises(ConflictError, match="No penalty"):
            circulation.pay_penalty(admin, issue.id)

    def test_missing_issue(self, admin):
        with pytest.raises(NotFoundError):
            circulation.pay_penalty(admin, 7)


def test_mark_overdue_is_idempotent(lib, student, make_book):
    book = make_book()
    issue = circulation.issue_book(student, book.id, now=NOW)

    assert circulation.mark_overdue(NOW + timedelta(days=7, hours=12)) == 0
    assert circulation.mark_overdue(NOW + timedelta(days=8)) == 1
    assert circulation.mark_overdue(NOW + timedelta(days=9)) == 0
    assert circulation.get_issue(issue.id).status is IssueStatus.OVERDUE

    # an overdue issue still blocks a duplicate and can be returned
    with pytest.raises(ConflictError):
        circulation.issue_book(student, book.id, now=NOW + timedelta(days=9))
    returned = circulation.return_book(student, issue.id, now=NOW + timedelta(days=9))
    assert returned.status is IssueStatus.RETURNED
    assert returned.penalty_amount == 10
    assert available(lib, book.id) == 1


def test_list_issues_is_scoped_by_role(student, other_student, admin, make_book):
    first = make_book(title="Refactoring", total_copies=2)
    second = make_book(title="Dune", total_copies=2)
    circulation.issue_book(student, first.id, now=NOW)
    circulation.issue_book(other_student, first.id, now=NOW + timedelta(minutes=1))
    circulation.issue_book(student, second.id, now=NOW + timedelta(minutes=2))

    mine = circulation.list_issues(student)
    assert [i.book["title"] for i in mine] == ["Dune", "Refactoring"]
    assert len(circulation.list_issues(admin)) == 3
    assert circulation.list_issues(admin, own_only=True) == []
    assert len(circulation.list_issues(admin, limit=2)) == 2


def test_list_open_issues_filters(student, make_book):
    early = make_book(title="Early")
    late = make_book(title="Late")
    circulation.issue_book(student, late.id, now=NOW)
    circulation.issue_book(student, early.id, now=NOW - timedelta(days=3))

    open_issues = circulation.list_open_issues(user_id=student.id)
    assert [i.book["title"] for i in open_issues] == ["Early", "Late"]

    overdue = circulation.list_open_issues(due_before=NOW + timedelta(days=5))
    assert [i.book["title"] for i in overdue] == ["Early"]


class TestConcurrency:
    def _race(self, users, book_id):
        barrier = threading.Barrier(len(users))
        outcomes = []
        lock = threading.Lock()

        def borrow(user):
            barrier.wait()
            try:
                circulation.issue_book(user, book_id, now=NOW)
                result = "ok"
            except ConflictError:
                result = "conflict"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=borrow, args=(user,)) for user in users]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return outcomes

    def test_last_copy_is_issued_exactly_once(self, lib, student, other_student, make_book):
        book = make_book(total_copies=1)
        outcomes = self._race([student, other_student], book.id)

        assert sorted(outcomes) == ["conflict", "ok"]
        assert available(lib, book.id) == 0

    def test_many_borrowers_never_overdraw(self, lib, make_user, make_book):
        book = make_book(total_copies=3)
        users = [make_user() for _ in range(8)]
        outcomes = self._race(users, book.id)

        assert outcomes.count("ok") == 3
        assert outcomes.count("conflict") == 5
        assert available(lib, book.id) == 0
        assert len(circulation.list_open_issues()) == 3


def test_schema_rejects_inconsistent_counts(make_book):
    book = make_book(total_copies=1)
    conn = get_db_connection()
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("UPDATE books SET available_copies = 2 WHERE id = ?", (book.id,))
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("UPDATE books SET available_copies = -1 WHERE id = ?", (book.id,))
    finally:
        conn.close()


def test_schema_rejects_second_open_issue(student, make_book):
    book = make_book(total_copies=2)
    circulation.issue_book(student, book.id, now=NOW)
    stamp = to_timestamp(NOW)
    conn = get_db_connection()
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO issues (user_id, book_id, issue_date, due_date, status, created_at) "
                "VALUES (?, ?, ?, ?, 'issued', ?)",
                (student.id, book.id, stamp, stamp, stamp),
            )
    finally:
        conn.close()
