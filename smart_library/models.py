from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for storage; naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Role(str, Enum):
    STUDENT = "student"
    ADMIN = "admin"

    @classmethod
    def from_request(cls, value: Optional[str]) -> "Role":
        """Only an explicit 'admin' yields an admin account."""
        return cls.ADMIN if (value or "").strip().lower() == cls.ADMIN.value else cls.STUDENT


class IssueStatus(str, Enum):
    ISSUED = "issued"
    RETURNED = "returned"
    OVERDUE = "overdue"

    @property
    def is_open(self) -> bool:
        return self is not IssueStatus.RETURNED


@dataclass
class User:
    """A library account."""
    id: int
    name: str
    email: str
    password_hash: str = field(repr=False)
    role: Role = Role.STUDENT
    points: int = 0
    is_active: bool = True
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def to_dict(self) -> Dict[str, Any]:
        # password_hash never leaves the process
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "points": self.points,
            "isActive": self.is_active,
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "User":
        return User(
            id=row["id"],
            name=row["name"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=Role(row["role"]),
            points=row["points"],
            is_active=bool(row["is_active"]),
            created_at=parse_timestamp(row["created_at"]),
        )


@dataclass
class Book:
    """A catalog entry with its copy counters."""
    id: int
    title: str
    author: str
    category: str
    total_copies: int
    available_copies: int
    description: str = ""
    ai_summary: str = ""
    cover_image: str = ""
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "description": self.description,
            "aiSummary": self.ai_summary,
            "coverImage": self.cover_image,
            "totalCopies": self.total_copies,
            "availableCopies": self.available_copies,
            "isActive": self.is_active,
            "createdAt": to_timestamp(self.created_at),
            "updatedAt": to_timestamp(self.updated_at),
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Book":
        return Book(
            id=row["id"],
            title=row["title"],
            author=row["author"],
            category=row["category"],
            total_copies=row["total_copies"],
            available_copies=row["available_copies"],
            description=row["description"] or "",
            ai_summary=row["ai_summary"] or "",
            cover_image=row["cover_image"] or "",
            is_active=bool(row["is_active"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )


@dataclass
class Issue:
    """One borrow event in the ledger.

    ``book`` and ``user`` hold small summaries (title/author, name/email)
    when the issue was loaded for a listing.
    """
    id: int
    user_id: int
    book_id: int
    issue_date: datetime
    due_date: datetime
    return_date: Optional[datetime] = None
    status: IssueStatus = IssueStatus.ISSUED
    fine_amount: float = 0.0  # legacy, never populated
    penalty_amount: float = 0.0
    penalty_paid: bool = False
    created_at: Optional[datetime] = None
    book: Optional[Dict[str, Any]] = None
    user: Optional[Dict[str, Any]] = None

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "bookId": self.book_id,
            "issueDate": to_timestamp(self.issue_date),
            "dueDate": to_timestamp(self.due_date),
            "returnDate": to_timestamp(self.return_date),
            "status": self.status.value,
            "fineAmount": self.fine_amount,
            "penaltyAmount": self.penalty_amount,
            "penaltyPaid": self.penalty_paid,
            "createdAt": to_timestamp(self.created_at),
            "book": self.book,
            "user": self.user,
        }

    @staticmethod
    def from_row(row: sqlite3.Row) -> "Issue":
        keys = row.keys()
        book = None
        if "book_title" in keys and row["book_title"] is not None:
            book = {
                "id": row["book_id"],
                "title": row["book_title"],
                "author": row["book_author"],
                "category": row["book_category"],
                "coverImage": row["book_cover_image"],
            }
        user = None
        if "user_name" in keys and row["user_name"] is not None:
            user = {"id": row["user_id"], "name": row["user_name"], "email": row["user_email"]}

        return Issue(
            id=row["id"],
            user_id=row["user_id"],
            book_id=row["book_id"],
            issue_date=parse_timestamp(row["issue_date"]),
            due_date=parse_timestamp(row["due_date"]),
            return_date=parse_timestamp(row["return_date"]),
            status=IssueStatus(row["status"]),
            fine_amount=row["fine_amount"],
            penalty_amount=row["penalty_amount"],
            penalty_paid=bool(row["penalty_paid"]),
            created_at=parse_timestamp(row["created_at"]),
            book=book,
            user=user,
        )
