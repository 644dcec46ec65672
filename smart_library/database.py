import logging
import sqlite3
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, TypeVar

from smart_library.config import settings
from smart_library.errors import ConflictError

logger = logging.getLogger(__name__)

# Tests and the CLI override this before calling initialize_database().
DATABASE_FILE = settings.database_file

T = TypeVar("T")


def get_db_connection(autocommit: bool = False) -> sqlite3.Connection:
    """Open a connection to the SQLite database with row access by column name.

    With ``autocommit`` the connection does not open implicit transactions,
    so callers control BEGIN/COMMIT themselves.
    """
    conn = sqlite3.connect(
        DATABASE_FILE,
        timeout=settings.database_busy_timeout,
        check_same_thread=False,
        isolation_level=None if autocommit else "DEFERRED",
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Run the enclosed statements in one write transaction.

    BEGIN IMMEDIATE takes the database write lock up front, so concurrent
    read-modify-write sequences on the same rows are serialized.
    """
    conn = get_db_connection(autocommit=True)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
    finally:
        conn.close()


def _is_busy_error(exc: sqlite3.OperationalError) -> bool:
    message = str(exc).lower()
    return "locked" in message or "busy" in message


def run_in_transaction(
    work: Callable[[sqlite3.Connection], T],
    retries: Optional[int] = None,
    backoff: Optional[float] = None,
) -> T:
    """Execute ``work`` inside a write transaction, retrying when the database is busy.

    Only lock contention is retried; any other error propagates on the first
    attempt and the transaction is rolled back.
    """
    retries = retries if retries is not None else settings.transaction_retries
    backoff = backoff if backoff is not None else settings.transaction_backoff
    attempts = max(1, retries)

    for attempt in range(attempts):
        try:
            with transaction() as conn:
                return work(conn)
        except sqlite3.OperationalError as exc:
            if not _is_busy_error(exc):
                raise
            if attempt < attempts - 1:
                wait_time = backoff * (2 ** attempt)
                logger.warning(f"Database busy, retrying in {wait_time:.2f}s (attempt {attempt + 1}/{attempts})")
                time.sleep(wait_time)
                continue
            raise ConflictError("The library is busy right now, please try again") from exc
    raise ConflictError("The library is busy right now, please try again")


def create_tables() -> None:
    """Create the tables and indexes if they do not exist yet."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        # WAL lets readers proceed while a circulation transaction holds the write lock
        cursor.execute("PRAGMA journal_mode=WAL;")

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL,
                role TEXT NOT NULL DEFAULT 'student' CHECK(role IN ('student', 'admin')),
                points INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                category TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                ai_summary TEXT NOT NULL DEFAULT '',
                cover_image TEXT NOT NULL DEFAULT '',
                total_copies INTEGER NOT NULL CHECK(total_copies >= 0),
                available_copies INTEGER NOT NULL
                    CHECK(available_copies >= 0 AND available_copies <= total_copies),
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS issues (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                book_id INTEGER NOT NULL,
                issue_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'issued' CHECK(status IN ('issued', 'returned', 'overdue')),
                fine_amount REAL NOT NULL DEFAULT 0 CHECK(fine_amount >= 0),
                penalty_amount REAL NOT NULL DEFAULT 0 CHECK(penalty_amount >= 0),
                penalty_paid INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES users(id),
                FOREIGN KEY (book_id) REFERENCES books(id)
            )
        """)

        # API usage tracking for the AI summary service
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS api_usage_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                api_name TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                success BOOLEAN NOT NULL,
                status_code INTEGER,
                response_time_ms INTEGER,
                characters_used INTEGER DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        # One open (issued/overdue) ledger entry per user and book
        cursor.execute("""
            CREATE UNIQUE INDEX IF NOT EXISTS idx_issues_open_pair
            ON issues(user_id, book_id) WHERE status IN ('issued', 'overdue')
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_issues_user_book ON issues(user_id, book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_issues_status_due ON issues(status, due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_issues_created_at ON issues(created_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_api_usage_logs_created_at ON api_usage_logs(created_at)")

        conn.commit()
    finally:
        conn.close()


def initialize_database() -> None:
    """Initialize the database, creating tables when needed."""
    create_tables()
    logger.debug(f"Database ready at {DATABASE_FILE}")
