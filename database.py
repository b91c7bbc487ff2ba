import logging
import os
import sqlite3
from datetime import datetime

from dotenv import load_dotenv

# Load .env before reading LIBRARY_DB_FILE so the override is honoured even
# when this module is imported ahead of config.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file. Library(db_file=...) replaces it at runtime.
DATABASE_FILE = os.environ.get("LIBRARY_DB_FILE") or "library.db"


def timestamp(moment: datetime | None = None) -> str:
    """Return the ISO-8601 string stored in every *_at / *_date column."""
    return (moment or datetime.now()).isoformat(timespec="seconds")


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite database with dict-like rows."""
    conn = sqlite3.connect(DATABASE_FILE)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def create_tables() -> None:
    """Creates the necessary tables in the database if they don't exist."""
    conn = get_db_connection()
    cursor = conn.cursor()
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS departments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            code TEXT UNIQUE NOT NULL,
            name TEXT NOT NULL,
            created_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            email TEXT UNIQUE NOT NULL,
            register_number TEXT UNIQUE,
            role TEXT NOT NULL CHECK(role IN ('admin', 'staff', 'student')),
            department TEXT,
            is_active INTEGER NOT NULL DEFAULT 1,
            password_hash TEXT,
            created_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS books (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            title TEXT NOT NULL,
            author TEXT NOT NULL,
            isbn TEXT UNIQUE NOT NULL,
            department TEXT NOT NULL,
            total_copies INTEGER NOT NULL DEFAULT 0,
            available_copies INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    # Copies go with their book; transactions keep copy_number as plain text
    # so circulation history survives a catalog delete.
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS book_copies (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            book_id INTEGER NOT NULL,
            copy_number TEXT UNIQUE NOT NULL,
            status TEXT NOT NULL DEFAULT 'Available'
                CHECK(status IN ('Available', 'Issued', 'Lost', 'Damaged')),
            created_at TEXT NOT NULL,
            FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            student_id INTEGER NOT NULL,
            book_id INTEGER NOT NULL,
            copy_number TEXT NOT NULL,
            issue_date TEXT NOT NULL,
            due_date TEXT NOT NULL,
            return_date TEXT,
            status TEXT NOT NULL DEFAULT 'Issued' CHECK(status IN ('Issued', 'Returned')),
            fine REAL NOT NULL DEFAULT 0,
            is_fine_paid INTEGER NOT NULL DEFAULT 0,
            fine_reason TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS system_config (
            id INTEGER PRIMARY KEY CHECK(id = 1),
            max_books_per_student INTEGER NOT NULL,
            issue_days_limit INTEGER NOT NULL,
            fine_per_day REAL NOT NULL,
            updated_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS audit_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            actor_id INTEGER,
            actor_name TEXT NOT NULL,
            action TEXT NOT NULL,
            details TEXT,
            ip TEXT NOT NULL DEFAULT '0.0.0.0',
            created_at TEXT NOT NULL
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS feedback (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            student_id INTEGER NOT NULL,
            subject TEXT NOT NULL,
            message TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'Pending' CHECK(status IN ('Pending', 'Replied')),
            reply TEXT,
            replied_by INTEGER,
            replied_at TEXT,
            created_at TEXT NOT NULL
        )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_author ON books(author)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_created_at ON books(created_at)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_book_copies_book_status ON book_copies(book_id, status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_student_status ON transactions(student_id, status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_copy_status ON transactions(copy_number, status)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_updated_at ON transactions(updated_at DESC)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at ON audit_logs(created_at DESC)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_feedback_student ON feedback(student_id)")

    conn.commit()
    conn.close()


def initialize_database() -> None:
    """Initializes the database, creating tables if needed."""
    create_tables()
    logger.debug(f"Database ready at {DATABASE_FILE}")
