"""Role-scoped dashboard views built on the issue ledger."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from smart_library.auth import require_admin
from smart_library.circulation import OPEN_STATUSES, list_issues, list_open_issues
from smart_library.database import get_db_connection
from smart_library.models import IssueStatus, User, utcnow
from smart_library.penalties import annotate, compute_overdue_alerts

OVERDUE_LIMIT = 50
RECENT_LIMIT = 10
MY_RECENT_LIMIT = 5


def get_stats(user: User) -> Dict[str, int]:
    conn = get_db_connection()
    try:
        if user.is_admin:
            total_books = conn.execute("SELECT COUNT(*) FROM books WHERE is_active = 1").fetchone()[0]
            issued_books = conn.execute(
                "SELECT COUNT(*) FROM issues WHERE status IN (?, ?)", OPEN_STATUSES
            ).fetchone()[0]
            total_users = conn.execute("SELECT COUNT(*) FROM users WHERE is_active = 1").fetchone()[0]
            available_copies = conn.execute(
                "SELECT COALESCE(SUM(available_copies), 0) FROM books WHERE is_active = 1"
            ).fetchone()[0]
            return {
                "totalBooks": total_books,
                "issuedBooks": issued_books,
                "totalUsers": total_users,
                "availableBooks": available_copies,
            }

        issued_books = conn.execute(
            "SELECT COUNT(*) FROM issues WHERE user_id = ? AND status IN (?, ?)",
            (user.id, *OPEN_STATUSES),
        ).fetchone()[0]
        return {"issuedBooks": issued_books}
    finally:
        conn.close()


def get_overdue(user: User, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Open issues past their due date, oldest first, with accrued penalties."""
    require_admin(user)
    now = now or utcnow()
    issues = list_open_issues(due_before=now, limit=OVERDUE_LIMIT)
    return [annotate(issue, now) for issue in issues]


def get_recent_issues(user: User, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    require_admin(user)
    return [annotate(issue, now) for issue in list_issues(user, limit=RECENT_LIMIT)]


def get_my_recent_issues(user: User, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    # scoped to the caller even for admins
    return [annotate(issue, now) for issue in list_issues(user, limit=MY_RECENT_LIMIT, own_only=True)]


def get_due_alerts(user: User, now: Optional[datetime] = None) -> Dict[str, List[Dict[str, Any]]]:
    now = now or utcnow()
    alerts = compute_overdue_alerts(list_open_issues(user_id=user.id), now)
    return {
        "dueSoon": [annotate(issue, now) for issue in alerts["due_soon"]],
        "overdue": [annotate(issue, now) for issue in alerts["overdue"]],
    }


def count_by_status() -> Dict[str, int]:
    conn = get_db_connection()
    try:
        rows = conn.execute("SELECT status, COUNT(*) AS n FROM issues GROUP BY status").fetchall()
    finally:
        conn.close()
    counts = {status.value: 0 for status in IssueStatus}
    counts.update({row["status"]: row["n"] for row in rows})
    return counts
