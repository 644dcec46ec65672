"""Issue and return transactions.

This is the only module that changes ``books.available_copies``. Each
operation runs as one SQLite write transaction: the checks, the ledger write
and the copy-count update commit together or not at all. The decrement is a
conditional update (``available_copies > 0``), so it behaves like a
compare-and-swap even if the surrounding locking were weaker.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import List, Optional

from smart_library.auth import require_admin
from smart_library.config import settings
from smart_library.database import get_db_connection, run_in_transaction
from smart_library.errors import ConflictError, ForbiddenError, NotFoundError
from smart_library.models import Issue, IssueStatus, User, to_timestamp, utcnow
from smart_library.penalties import ONE_DAY, accrued_penalty

logger = logging.getLogger(__name__)

OPEN_STATUSES = (IssueStatus.ISSUED.value, IssueStatus.OVERDUE.value)

ISSUE_SELECT = """
    SELECT i.*,
           b.title AS book_title, b.author AS book_author,
           b.category AS book_category, b.cover_image AS book_cover_image,
           u.name AS user_name, u.email AS user_email
    FROM issues i
    LEFT JOIN books b ON b.id = i.book_id
    LEFT JOIN users u ON u.id = i.user_id
"""


def _fetch_issue(conn: sqlite3.Connection, issue_id: int) -> Optional[Issue]:
    row = conn.execute(f"{ISSUE_SELECT} WHERE i.id = ?", (issue_id,)).fetchone()
    return Issue.from_row(row) if row else None


def get_issue(issue_id: int) -> Issue:
    conn = get_db_connection()
    try:
        issue = _fetch_issue(conn, issue_id)
    finally:
        conn.close()
    if not issue:
        raise NotFoundError("Issue not found")
    return issue


def issue_book(acting_user: User, book_id: int, now: Optional[datetime] = None) -> Issue:
    """Lend one copy of ``book_id`` to ``acting_user`` for the loan period."""
    now = now or utcnow()
    due_date = now + timedelta(days=settings.loan_period_days)

    def work(conn: sqlite3.Connection) -> int:
        book = conn.execute(
            "SELECT id, available_copies FROM books WHERE id = ? AND is_active = 1", (book_id,)
        ).fetchone()
        if not book:
            raise NotFoundError("Book not found or inactive")
        if book["available_copies"] <= 0:
            raise ConflictError("No available copies left")

        duplicate = conn.execute(
            "SELECT id FROM issues WHERE user_id = ? AND book_id = ? AND status IN (?, ?)",
            (acting_user.id, book_id, *OPEN_STATUSES),
        ).fetchone()
        if duplicate:
            raise ConflictError("Book is already issued to this user")

        cursor = conn.execute(
            """
            UPDATE books SET available_copies = available_copies - 1, updated_at = ?
            WHERE id = ? AND is_active = 1 AND available_copies > 0
            """,
            (to_timestamp(now), book_id),
        )
        if cursor.rowcount != 1:
            raise ConflictError("No available copies left")

        try:
            cursor = conn.execute(
                """
                INSERT INTO issues (user_id, book_id, issue_date, due_date, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (acting_user.id, book_id, to_timestamp(now), to_timestamp(due_date),
                 IssueStatus.ISSUED.value, to_timestamp(now)),
            )
        except sqlite3.IntegrityError as e:
            if "FOREIGN KEY" in str(e):
                raise NotFoundError("User not found") from e
            # the open-pair unique index caught a duplicate the SELECT missed
            raise ConflictError("Book is already issued to this user") from e
        return cursor.lastrowid

    try:
        issue_id = run_in_transaction(work)
    except ConflictError as e:
        logger.warning(f"Issue of book {book_id} to user {acting_user.id} rejected: {e.message}")
        raise

    logger.info(f"Issued book {book_id} to user {acting_user.id} (issue {issue_id}, due {due_date:%Y-%m-%d})")
    return get_issue(issue_id)


def return_book(acting_user: User, issue_id: int, now: Optional[datetime] = None) -> Issue:
    """Close an issue and put the copy back on the shelf.

    The owner or any admin may return. The penalty accrued up to ``now`` is
    frozen onto the issue; available_copies never exceeds total_copies.
    """
    now = now or utcnow()

    def work(conn: sqlite3.Connection) -> float:
        issue = _fetch_issue(conn, issue_id)
        if not issue:
            raise NotFoundError("Issue not found")
        if issue.user_id != acting_user.id and not acting_user.is_admin:
            raise ForbiddenError("Not allowed to return this issue")
        if issue.status is IssueStatus.RETURNED or issue.return_date is not None:
            raise ConflictError("Book already returned")

        book = conn.execute("SELECT id FROM books WHERE id = ?", (issue.book_id,)).fetchone()
        if not book:
            raise NotFoundError("Related book not found")

        penalty = accrued_penalty(issue, now)
        cursor = conn.execute(
            """
            UPDATE issues SET return_date = ?, status = ?, penalty_amount = ?
            WHERE id = ? AND status != ?
            """,
            (to_timestamp(now), IssueStatus.RETURNED.value, penalty, issue_id, IssueStatus.RETURNED.value),
        )
        if cursor.rowcount != 1:
            raise ConflictError("Book already returned")

        conn.execute(
            """
            UPDATE books SET available_copies = MIN(available_copies + 1, total_copies), updated_at = ?
            WHERE id = ?
            """,
            (to_timestamp(now), issue.book_id),
        )
        return penalty

    try:
        penalty = run_in_transaction(work)
    except (ConflictError, ForbiddenError) as e:
        logger.warning(f"Return of issue {issue_id} by user {acting_user.id} rejected: {e.message}")
        raise

    logger.info(f"Issue {issue_id} returned by user {acting_user.id} (penalty {penalty:g})")
    return get_issue(issue_id)


def list_issues(acting_user: User, limit: Optional[int] = None, own_only: bool = False) -> List[Issue]:
    """All issues for admins, the user's own issues otherwise; newest first."""
    query = ISSUE_SELECT
    params: list = []
    if own_only or not acting_user.is_admin:
        query += " WHERE i.user_id = ?"
        params.append(acting_user.id)
    query += " ORDER BY i.created_at DESC, i.id DESC"
    if limit:
        query += " LIMIT ?"
        params.append(limit)

    conn = get_db_connection()
    try:
        return [Issue.from_row(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def list_open_issues(user_id: Optional[int] = None, due_before: Optional[datetime] = None,
                     limit: Optional[int] = None) -> List[Issue]:
    """Issued or overdue entries, oldest due date first."""
    query = f"{ISSUE_SELECT} WHERE i.status IN (?, ?)"
    params: list = list(OPEN_STATUSES)
    if user_id is not None:
        query += " AND i.user_id = ?"
        params.append(user_id)
    if due_before is not None:
        query += " AND i.due_date < ?"
        params.append(to_timestamp(due_before))
    query += " ORDER BY i.due_date ASC, i.id ASC"
    if limit:
        query += " LIMIT ?"
        params.append(limit)

    conn = get_db_connection()
    try:
        return [Issue.from_row(row) for row in conn.execute(query, params).fetchall()]
    finally:
        conn.close()


def pay_penalty(acting_user: User, issue_id: int) -> Issue:
    """Admin records that the frozen penalty of a returned issue was paid."""
    require_admin(acting_user)

    def work(conn: sqlite3.Connection) -> None:
        issue = _fetch_issue(conn, issue_id)
        if not issue:
            raise NotFoundError("Issue not found")
        if issue.is_open:
            raise ConflictError("Penalty can only be settled after the book is returned")
        if issue.penalty_paid:
            raise ConflictError("Penalty already paid")
        if issue.penalty_amount <= 0:
            raise ConflictError("No penalty due for this issue")
        conn.execute("UPDATE issues SET penalty_paid = 1 WHERE id = ?", (issue_id,))

    run_in_transaction(work)
    logger.info(f"Penalty for issue {issue_id} marked paid by admin {acting_user.id}")
    return get_issue(issue_id)


def mark_overdue(now: Optional[datetime] = None) -> int:
    """Persist status 'overdue' on issues at least one full day past due. Idempotent."""
    now = now or utcnow()
    cutoff = to_timestamp(now - ONE_DAY)

    def work(conn: sqlite3.Connection) -> int:
        cursor = conn.execute(
            "UPDATE issues SET status = ? WHERE status = ? AND due_date <= ?",
            (IssueStatus.OVERDUE.value, IssueStatus.ISSUED.value, cutoff),
        )
        return cursor.rowcount

    changed = run_in_transaction(work)
    if changed:
        logger.info(f"Marked {changed} issue(s) overdue")
    return changed
