import asyncio
import logging
import sqlite3
from typing import Any, Dict, List, Optional

import smart_library.database as database
from smart_library.database import get_db_connection, initialize_database, run_in_transaction
from smart_library.errors import NotFoundError, ValidationError
from smart_library.models import Book, to_timestamp, utcnow
from smart_library.services.ai_summary_service import SummaryResult, SummaryService
from smart_library.validators import CopyCountValidator, TextValidator

logger = logging.getLogger(__name__)

# Columns an admin may change through update_book
EDITABLE_FIELDS = (
    "title", "author", "category", "description", "ai_summary", "cover_image",
    "total_copies", "available_copies",
)


class Library:
    """Manages the book catalog and its AI summaries."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        if db_file:
            database.DATABASE_FILE = db_file

        # Make sure the schema is current on every start
        initialize_database()

        self.summarizer = SummaryService()
        self._inflight_summaries: Dict[int, asyncio.Future] = {}

    # ------------------------- Core operations ------------------------- #
    def add_book(self, title: str, author: str, category: str, total_copies: Any,
                 available_copies: Any, description: str = "", ai_summary: str = "",
                 cover_image: str = "") -> Book:
        """Insert a new active book after validating its copy counts."""
        title = TextValidator.require(title, "title")
        author = TextValidator.require(author, "author")
        category = TextValidator.require(category, "category")
        total, available = CopyCountValidator.validate(total_copies, available_copies)
        now = to_timestamp(utcnow())

        conn = get_db_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO books (
                    title, author, category, description, ai_summary, cover_image,
                    total_copies, available_copies, is_active, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    title, author, category, TextValidator.sanitize_text(description),
                    (ai_summary or "").strip(), (cover_image or "").strip(),
                    total, available, now, now,
                ),
            )
            conn.commit()
            book_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Invalid book data: {e}") from e
        finally:
            conn.close()

        logger.info(f"Added book {book_id}: {title} ({available}/{total} copies)")
        return self.get_book(book_id)

    def list_books(self, search: Optional[str] = None, category: Optional[str] = None,
                   available_only: bool = False) -> List[Book]:
        """List active books, newest first, optionally filtered."""
        clauses = ["is_active = 1"]
        params: List[Any] = []
        if search and search.strip():
            term = f"%{search.strip()}%"
            clauses.append("(title LIKE ? OR author LIKE ? OR category LIKE ?)")
            params.extend([term, term, term])
        if category:
            clauses.append("category = ?")
            params.append(category)
        if available_only:
            clauses.append("available_copies > 0")

        conn = get_db_connection()
        try:
            rows = conn.execute(
                f"SELECT * FROM books WHERE {' AND '.join(clauses)} ORDER BY created_at DESC, id DESC",
                params,
            ).fetchall()
            return [Book.from_row(row) for row in rows]
        finally:
            conn.close()

    def find_book(self, book_id: int, include_inactive: bool = False) -> Optional[Book]:
        """Return the book with this id, or None when missing or soft-deleted."""
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
        finally:
            conn.close()
        if not row:
            return None
        book = Book.from_row(row)
        if not book.is_active and not include_inactive:
            return None
        return book

    def get_book(self, book_id: int) -> Book:
        book = self.find_book(book_id)
        if not book:
            raise NotFoundError("Book not found")
        return book

    def update_book(self, book_id: int, **fields: Any) -> Book:
        """Update an active book.

        When only total_copies changes, available_copies is clamped down to
        the new total; explicit counts must satisfy available <= total.
        """
        unknown = set(fields) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        updates = {k: v for k, v in fields.items() if v is not None}
        if not updates:
            raise ValidationError("Nothing to update")

        for key in ("title", "author", "category"):
            if key in updates:
                updates[key] = TextValidator.require(updates[key], key)
        if "description" in updates:
            updates["description"] = TextValidator.sanitize_text(updates["description"])

        def work(conn: sqlite3.Connection) -> None:
            row = conn.execute(
                "SELECT total_copies, available_copies FROM books WHERE id = ? AND is_active = 1",
                (book_id,),
            ).fetchone()
            if not row:
                raise NotFoundError("Book not found")

            if "total_copies" in updates or "available_copies" in updates:
                total = updates.get("total_copies", row["total_copies"])
                if "available_copies" in updates:
                    available = updates["available_copies"]
                else:
                    available = min(row["available_copies"], CopyCountValidator.coerce(total, "totalCopies"))
                updates["total_copies"], updates["available_copies"] = CopyCountValidator.validate(total, available)

            updates["updated_at"] = to_timestamp(utcnow())
            set_clause = ", ".join(f"{column} = ?" for column in updates)
            conn.execute(f"UPDATE books SET {set_clause} WHERE id = ?", [*updates.values(), book_id])

        run_in_transaction(work)
        logger.info(f"Updated book {book_id}: {', '.join(sorted(updates))}")
        return self.get_book(book_id)

    def remove_book(self, book_id: int) -> bool:
        """Soft-delete a book. Returns False when it was missing or already inactive."""
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "UPDATE books SET is_active = 0, updated_at = ? WHERE id = ? AND is_active = 1",
                (to_timestamp(utcnow()), book_id),
            )
            conn.commit()
            removed = cursor.rowcount > 0
        finally:
            conn.close()
        if removed:
            logger.info(f"Book {book_id} deactivated")
        return removed

    def get_statistics(self) -> Dict[str, Any]:
        conn = get_db_connection()
        try:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_books,
                       COALESCE(SUM(total_copies), 0) AS total_copies,
                       COALESCE(SUM(available_copies), 0) AS available_copies,
                       COUNT(DISTINCT author) AS unique_authors,
                       COUNT(DISTINCT category) AS categories
                FROM books WHERE is_active = 1
                """
            ).fetchone()
            return dict(row)
        finally:
            conn.close()

    # ------------------------- AI powered features ------------------------- #
    def save_ai_summary(self, book_id: int, summary: str) -> None:
        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE books SET ai_summary = ?, updated_at = ? WHERE id = ?",
                (summary, to_timestamp(utcnow()), book_id),
            )
            conn.commit()
        finally:
            conn.close()

    async def generate_ai_summary(self, book_id: int) -> SummaryResult:
        """Return the stored summary or ask the AI service for one and store it.

        Concurrent requests for the same book share a single upstream call.
        """
        book = self.get_book(book_id)
        if book.ai_summary.strip():
            return SummaryResult(summary=book.ai_summary, cached=True)

        task = self._inflight_summaries.get(book.id)
        if task is None or task.done():
            task = asyncio.ensure_future(self._summarize_and_store(book))
            self._inflight_summaries[book.id] = task
        try:
            return await task
        finally:
            if self._inflight_summaries.get(book.id) is task and task.done():
                self._inflight_summaries.pop(book.id, None)

    async def _summarize_and_store(self, book: Book) -> SummaryResult:
        result = await self.summarizer.summarize_book(book)
        self.save_ai_summary(book.id, result.summary)
        logger.info(f"Stored AI summary for book {book.id}")
        return result

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
