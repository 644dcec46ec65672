"""Overdue and penalty calculation.

Everything here is a pure function of an issue and a point in time; nothing
is written back. Open issues accrue a penalty for each whole day past their
due date, returned issues report the penalty frozen at return time.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from smart_library.config import settings
from smart_library.models import Issue, IssueStatus, utcnow

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class OverdueInfo:
    days_overdue: int
    is_overdue: bool
    penalty_amount: float
    days_until_due: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "daysOverdue": self.days_overdue,
            "isOverdue": self.is_overdue,
            "penaltyAmount": self.penalty_amount,
            "daysUntilDue": self.days_until_due,
        }


def days_overdue(due_date: datetime, now: datetime) -> int:
    """Whole days elapsed since ``due_date``; zero until the first full day has passed."""
    return max(0, math.floor((now - due_date) / ONE_DAY))


def days_until_due(due_date: datetime, now: datetime) -> int:
    """Whole days left before ``due_date``; negative once it has passed."""
    return math.floor((due_date - now) / ONE_DAY)


def penalty_for(days: int, unit_penalty: Optional[float] = None) -> float:
    unit = settings.unit_penalty if unit_penalty is None else unit_penalty
    return float(days * unit)


def accrued_penalty(issue: Issue, moment: datetime, unit_penalty: Optional[float] = None) -> float:
    """Penalty an issue has accrued by ``moment``, ignoring any frozen value."""
    return penalty_for(days_overdue(issue.due_date, moment), unit_penalty)


def compute_overdue(issue: Issue, now: Optional[datetime] = None,
                    unit_penalty: Optional[float] = None) -> OverdueInfo:
    now = now or utcnow()
    until_due = days_until_due(issue.due_date, now)

    if issue.status is IssueStatus.RETURNED:
        return OverdueInfo(
            days_overdue=days_overdue(issue.due_date, issue.return_date or now),
            is_overdue=False,
            penalty_amount=issue.penalty_amount,
            days_until_due=until_due,
        )

    days = days_overdue(issue.due_date, now)
    return OverdueInfo(
        days_overdue=days,
        is_overdue=days > 0,
        penalty_amount=penalty_for(days, unit_penalty),
        days_until_due=until_due,
    )


def annotate(issue: Issue, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Serialize an issue together with its read-time overdue fields."""
    payload = issue.to_dict()
    payload.update(compute_overdue(issue, now).to_dict())
    return payload


def compute_overdue_alerts(issues: Iterable[Issue], now: Optional[datetime] = None,
                           window_days: Optional[int] = None) -> Dict[str, List[Issue]]:
    """Split open issues into those due within the window and those already past due.

    ``due_soon`` holds issues not yet due whose whole-day countdown
    (``daysUntilDue``) is at most ``window_days``;
    ``overdue`` holds issues whose due date has passed. Both are ordered by
    due date.
    """
    now = now or utcnow()
    window = settings.due_soon_days if window_days is None else window_days

    due_soon: List[Issue] = []
    overdue: List[Issue] = []
    for issue in issues:
        if not issue.is_open:
            continue
        if issue.due_date < now:
            overdue.append(issue)
        elif days_until_due(issue.due_date, now) <= window:
            due_soon.append(issue)

    due_soon.sort(key=lambda i: i.due_date)
    overdue.sort(key=lambda i: i.due_date)
    return {"due_soon": due_soon, "overdue": overdue}
