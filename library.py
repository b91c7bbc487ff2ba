import csv
import io
import logging
import os
import sqlite3
from typing import List, Optional, Dict, Any, Iterable

import database
from audit import log_audit
from book import Book, BookCopy, CopyStatus
from database import get_db_connection, initialize_database, timestamp
from user import Department
from utils.validators import MAX_COPIES_PER_REQUEST, ISBNValidator, TextValidator, parse_quantity

logger = logging.getLogger(__name__)


class Library:
    """Manages the catalog: departments, books and their physical copies."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        # Callers (and tests) point every service at one database file by
        # setting database.DATABASE_FILE before the schema is initialised.
        if db_file:
            database.DATABASE_FILE = db_file
        elif os.environ.get("LIBRARY_DB_FILE"):
            database.DATABASE_FILE = os.environ["LIBRARY_DB_FILE"]

        initialize_database()

    # ------------------------- Departments ------------------------- #
    def add_department(self, code: str, name: str) -> Department:
        department = Department(code=code or "", name=name or "")
        if not department.code or not department.name:
            raise ValueError("Department code and name are required.")

        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO departments (code, name, created_at) VALUES (?, ?, ?)",
                (department.code, department.name, timestamp())
            )
            conn.commit()
            department.id = cursor.lastrowid
            logger.info(f"Department {department.code} added")
            return self.find_department(department.code)
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Department {department.code} already exists.") from e
        finally:
            conn.close()

    def list_departments(self) -> List[Department]:
        conn = get_db_connection()
        try:
            rows = conn.execute("SELECT * FROM departments ORDER BY code").fetchall()
            return [Department.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def find_department(self, code: Optional[str]) -> Optional[Department]:
        if not code:
            return None
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM departments WHERE code = ?", (code.strip().upper(),)).fetchone()
            return Department.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    # ------------------------- Books ------------------------- #
    def create_book(self, title: str, author: str, isbn: str, department: str, quantity: int = 1,
                    actor_id: Optional[int] = None, ip: Optional[str] = None) -> Book:
        """Create a title and generate `quantity` Available copies numbered ISBN-1..ISBN-n."""
        isbn = ISBNValidator.normalize_isbn(isbn)
        if not isbn:
            raise ValueError("ISBN cannot be empty.")
        if not TextValidator.validate_title(title):
            raise ValueError("Title cannot be empty.")
        if not TextValidator.validate_author(author):
            raise ValueError("Author must be a non-numeric name.")
        if quantity < 0:
            raise ValueError("Quantity cannot be negative.")
        if quantity > MAX_COPIES_PER_REQUEST:
            raise ValueError(f"Quantity cannot exceed {MAX_COPIES_PER_REQUEST}.")

        if not self.find_department(department):
            raise ValueError(f"Invalid Department Code: '{department}'")
        if self.find_book_by_isbn(isbn):
            raise ValueError("Book with this ISBN already exists")

        book = Book(title=title, author=author, isbn=isbn, department=department)
        conn = get_db_connection()
        try:
            now = timestamp()
            cursor = conn.execute(
                """
                INSERT INTO books (title, author, isbn, department, total_copies, available_copies, created_at, updated_at)
                VALUES (?, ?, ?, ?, 0, 0, ?, ?)
                """,
                (book.title, book.author, book.isbn, book.department, now, now)
            )
            book.id = cursor.lastrowid
            self._add_copies(conn, book, quantity)
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise ValueError("Book with this ISBN already exists") from e
        finally:
            conn.close()

        logger.info(f"Book {book.isbn} created with {quantity} copies")
        if actor_id is not None:
            log_audit(actor_id, "BOOK_CREATE", f"Created {book.title} ({book.isbn}) with {quantity} copies", ip)
        return self.find_book(book.id)

    def list_books(self, query: Optional[str] = None) -> List[Book]:
        """All titles, newest first; `query` matches title, author or ISBN."""
        conn = get_db_connection()
        try:
            if query:
                like = f"%{query.strip()}%"
                rows = conn.execute(
                    """
                    SELECT * FROM books WHERE title LIKE ? OR author LIKE ? OR isbn LIKE ?
                    ORDER BY created_at DESC, id DESC
                    """,
                    (like, like, like)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM books ORDER BY created_at DESC, id DESC").fetchall()
            return [Book.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def find_book(self, book_id: int) -> Optional[Book]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def find_book_by_isbn(self, isbn: str) -> Optional[Book]:
        norm = ISBNValidator.normalize_isbn(isbn)
        if not norm:
            return None
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM books WHERE isbn = ?", (norm,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def update_book(self, book_id: int, *, title: Optional[str] = None, author: Optional[str] = None,
                    department: Optional[str] = None, actor_id: Optional[int] = None,
                    ip: Optional[str] = None) -> Optional[Book]:
        """Update title, author and/or department. Returns updated book or None if not found."""
        if title is None and author is None and department is None:
            raise ValueError("Nothing to update. Provide title, author and/or department.")

        book = self.find_book(book_id)
        if not book:
            return None

        if department is not None and not self.find_department(department):
            raise ValueError("Invalid Department Code")
        if author is not None and author.strip() and not TextValidator.validate_author(author):
            raise ValueError("Author must be a non-numeric name.")

        new_title = title.strip() if title is not None and title.strip() else book.title
        new_author = author.strip() if author is not None and author.strip() else book.author
        new_department = department.strip().upper() if department is not None else book.department

        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE books SET title = ?, author = ?, department = ?, updated_at = ? WHERE id = ?",
                (new_title, new_author, new_department, timestamp(), book_id)
            )
            conn.commit()
        finally:
            conn.close()

        if actor_id is not None:
            log_audit(actor_id, "BOOK_UPDATE", f"Updated {book.isbn}", ip)
        return self.find_book(book_id)

    def remove_book(self, book_id: int, actor_id: Optional[int] = None, ip: Optional[str] = None) -> bool:
        """Delete a title and all of its copies. Circulation history is kept."""
        book = self.find_book(book_id)
        if not book:
            return False

        conn = get_db_connection()
        try:
            self._ensure_no_issued_copies(conn, [book_id])
            conn.execute("DELETE FROM book_copies WHERE book_id = ?", (book_id,))
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            conn.commit()
            removed = cursor.rowcount > 0
        finally:
            conn.close()

        if removed and actor_id is not None:
            log_audit(actor_id, "BOOK_DELETE", f"Deleted {book.title} ({book.isbn}) and its copies", ip)
        return removed

    def bulk_remove_books(self, book_ids: List[int], actor_id: Optional[int] = None,
                          ip: Optional[str] = None) -> int:
        """Delete several titles with their copies; returns how many books were removed."""
        if not book_ids:
            raise ValueError("No books selected")

        ids = list(dict.fromkeys(book_ids))
        placeholders = ",".join("?" for _ in ids)
        conn = get_db_connection()
        try:
            self._ensure_no_issued_copies(conn, ids)
            conn.execute(f"DELETE FROM book_copies WHERE book_id IN ({placeholders})", ids)
            cursor = conn.execute(f"DELETE FROM books WHERE id IN ({placeholders})", ids)
            conn.commit()
            removed = cursor.rowcount
        finally:
            conn.close()

        logger.info(f"Bulk delete removed {removed} of {len(ids)} requested books")
        if actor_id is not None:
            log_audit(actor_id, "BOOK_BULK_DELETE", f"Deleted {removed} books and their copies", ip)
        return removed

    # ------------------------- CSV import ------------------------- #
    def import_books_csv(self, text: str, actor_id: Optional[int] = None,
                         ip: Optional[str] = None) -> Dict[str, Any]:
        """Import rows of Title, Author, ISBN, Department, Quantity.

        New ISBNs are created; existing ones only receive extra copies. Each row
        succeeds or fails on its own and failures are reported in `errors`.
        """
        errors: List[str] = []
        added_count = 0
        updated_count = 0

        valid_dept_codes = {d.code for d in self.list_departments()}
        reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))

        conn = get_db_connection()
        try:
            for row in reader:
                title = (row.get("Title") or row.get("title") or "").strip()
                author = (row.get("Author") or row.get("author") or "").strip()
                isbn = ISBNValidator.normalize_isbn(row.get("ISBN") or row.get("isbn"))
                dept = (row.get("Department") or row.get("department") or "").strip()

                if not isbn or not title:
                    errors.append("Row missing ISBN or Title")
                    continue

                if not dept or dept.upper() not in valid_dept_codes:
                    errors.append(f"ISBN {isbn}: Invalid or Missing Department '{dept}'. Please add Dept first.")
                    continue

                try:
                    quantity = parse_quantity(row.get("Quantity") or row.get("quantity"))
                except ValueError:
                    errors.append(f"ISBN {isbn}: Invalid Quantity '{row.get('Quantity') or row.get('quantity')}'")
                    continue

                try:
                    existing = conn.execute("SELECT * FROM books WHERE isbn = ?", (isbn,)).fetchone()
                    if existing:
                        book = Book.from_dict(dict(existing))
                        updated_count += 1
                    else:
                        book = Book(title=title, author=author or "Unknown Author", isbn=isbn, department=dept)
                        now = timestamp()
                        cursor = conn.execute(
                            """
                            INSERT INTO books (title, author, isbn, department, total_copies, available_copies, created_at, updated_at)
                            VALUES (?, ?, ?, ?, 0, 0, ?, ?)
                            """,
                            (book.title, book.author, book.isbn, book.department, now, now)
                        )
                        book.id = cursor.lastrowid
                        added_count += 1

                    self._add_copies(conn, book, quantity)
                    conn.commit()
                except sqlite3.IntegrityError:
                    conn.rollback()
                    errors.append(f"ISBN {isbn}: Duplicate Entry Detected (ISBN or Copy Number)")
                except sqlite3.Error as e:
                    conn.rollback()
                    errors.append(f"ISBN {isbn}: {e}")
        finally:
            conn.close()

        logger.info(f"CSV import finished: added={added_count} updated={updated_count} errors={len(errors)}")
        if actor_id is not None:
            log_audit(actor_id, "CSV_IMPORT",
                      f"Imported CSV: {added_count} added, {updated_count} updated, {len(errors)} errors", ip)
        return {
            "message": "Process Complete",
            "added": added_count,
            "updated": updated_count,
            "errors": errors,
        }

    # ------------------------- Copies ------------------------- #
    def list_copies(self, book_id: int) -> List[BookCopy]:
        if not self.find_book(book_id):
            raise LookupError("Book not found")
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM book_copies WHERE book_id = ? ORDER BY id", (book_id,)
            ).fetchall()
            return [BookCopy.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def find_copy(self, copy_id: int) -> Optional[BookCopy]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM book_copies WHERE id = ?", (copy_id,)).fetchone()
            return BookCopy.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def find_copy_by_number(self, copy_number: str) -> Optional[BookCopy]:
        conn = get_db_connection()
        try:
            row = conn.execute(
                "SELECT * FROM book_copies WHERE copy_number = ?", ((copy_number or "").strip(),)
            ).fetchone()
            return BookCopy.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def add_copies(self, book_id: int, count: int, actor_id: Optional[int] = None,
                   ip: Optional[str] = None) -> List[BookCopy]:
        if count < 1:
            raise ValueError("Count must be at least 1.")
        if count > MAX_COPIES_PER_REQUEST:
            raise ValueError(f"Count cannot exceed {MAX_COPIES_PER_REQUEST}.")
        book = self.find_book(book_id)
        if not book:
            raise LookupError("Book not found")

        conn = get_db_connection()
        try:
            numbers = self._add_copies(conn, book, count)
            conn.commit()
        finally:
            conn.close()

        if actor_id is not None:
            log_audit(actor_id, "COPY_ADD", f"Added {count} copies of {book.isbn}", ip)
        return [self.find_copy_by_number(n) for n in numbers]

    def remove_copy(self, copy_id: int, actor_id: Optional[int] = None, ip: Optional[str] = None) -> bool:
        """Delete a copy and adjust its book's counters. Issued copies cannot be removed."""
        copy = self.find_copy(copy_id)
        if not copy:
            return False
        if copy.status == CopyStatus.ISSUED.value:
            raise ValueError("Cannot delete a copy that is currently issued.")

        conn = get_db_connection()
        try:
            # Only delete the copy in the state it was read in; an issue may have claimed it since.
            cursor = conn.execute(
                "DELETE FROM book_copies WHERE id = ? AND status = ? AND status != ?",
                (copy_id, copy.status, CopyStatus.ISSUED.value)
            )
            if cursor.rowcount == 0:
                conn.rollback()
                if not self.find_copy(copy_id):
                    return False
                raise ValueError("Copy status changed while deleting (it may have been issued). Reload and try again.")
            conn.execute(
                """
                UPDATE books SET total_copies = total_copies - 1,
                       available_copies = available_copies - ?, updated_at = ?
                WHERE id = ?
                """,
                (1 if copy.is_available else 0, timestamp(), copy.book_id)
            )
            conn.commit()
        finally:
            conn.close()

        if actor_id is not None:
            log_audit(actor_id, "COPY_DELETE", f"Deleted copy {copy.copy_number}", ip)
        return True

    def update_copy_status(self, copy_id: int, status: str, actor_id: Optional[int] = None,
                           ip: Optional[str] = None) -> Optional[BookCopy]:
        """Mark a copy Available, Lost or Damaged, keeping available_copies in step.

        Issued is reserved for circulation: a copy cannot be moved into or out
        of it here.
        """
        try:
            new_status = CopyStatus(status).value
        except ValueError as e:
            allowed = ", ".join(s.value for s in CopyStatus)
            raise ValueError(f"Invalid status '{status}'. Allowed: {allowed}") from e

        copy = self.find_copy(copy_id)
        if not copy:
            return None
        if copy.status == new_status:
            return copy
        if CopyStatus.ISSUED.value in (copy.status, new_status):
            raise ValueError("Issued status is managed by circulation (issue/return).")

        delta = 0
        if copy.status == CopyStatus.AVAILABLE.value:
            delta = -1
        elif new_status == CopyStatus.AVAILABLE.value:
            delta = 1

        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "UPDATE book_copies SET status = ? WHERE id = ? AND status = ?",
                (new_status, copy_id, copy.status)
            )
            if cursor.rowcount == 0:
                conn.rollback()
                if not self.find_copy(copy_id):
                    return None
                raise ValueError(f"Copy is no longer {copy.status} (it may have been issued). Reload and try again.")
            conn.execute(
                "UPDATE books SET available_copies = available_copies + ?, updated_at = ? WHERE id = ?",
                (delta, timestamp(), copy.book_id)
            )
            conn.commit()
        finally:
            conn.close()

        if actor_id is not None:
            log_audit(actor_id, "COPY_STATUS", f"{copy.copy_number}: {copy.status} -> {new_status}", ip)
        return self.find_copy(copy_id)

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        """Get catalog statistics."""
        conn = get_db_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*), COALESCE(SUM(total_copies), 0), COALESCE(SUM(available_copies), 0) FROM books")
            total_books, total_copies, available_copies = cursor.fetchone()

            cursor.execute("SELECT status, COUNT(*) FROM book_copies GROUP BY status")
            by_status = {s.value: 0 for s in CopyStatus}
            for status, count in cursor.fetchall():
                by_status[status] = count

            cursor.execute("SELECT COUNT(DISTINCT author) FROM books")
            unique_authors = cursor.fetchone()[0]

            return {
                "total_books": total_books,
                "total_copies": total_copies,
                "available_copies": available_copies,
                "unique_authors": unique_authors,
                "copies_by_status": by_status,
            }
        finally:
            conn.close()

    # ------------------------- Utilities ------------------------- #
    @staticmethod
    def _next_copy_numbers(conn: sqlite3.Connection, book: Book, count: int) -> List[str]:
        """Continue after the book's current total, skipping numbers already taken."""
        numbers: List[str] = []
        n = book.total_copies + 1
        while len(numbers) < count:
            candidate = f"{book.isbn}-{n}"
            taken = conn.execute("SELECT 1 FROM book_copies WHERE copy_number = ?", (candidate,)).fetchone()
            if not taken:
                numbers.append(candidate)
            n += 1
        return numbers

    def _add_copies(self, conn: sqlite3.Connection, book: Book, count: int) -> List[str]:
        """Insert `count` Available copies and bump both counters. Caller commits."""
        if count <= 0:
            return []
        numbers = self._next_copy_numbers(conn, book, count)
        now = timestamp()
        conn.executemany(
            "INSERT INTO book_copies (book_id, copy_number, status, created_at) VALUES (?, ?, ?, ?)",
            [(book.id, n, CopyStatus.AVAILABLE.value, now) for n in numbers]
        )
        conn.execute(
            """
            UPDATE books SET total_copies = total_copies + ?, available_copies = available_copies + ?,
                   updated_at = ?
            WHERE id = ?
            """,
            (len(numbers), len(numbers), now, book.id)
        )
        book.total_copies += len(numbers)
        book.available_copies += len(numbers)
        return numbers

    @staticmethod
    def _ensure_no_issued_copies(conn: sqlite3.Connection, book_ids: Iterable[int]) -> None:
        ids = list(book_ids)
        placeholders = ",".join("?" for _ in ids)
        row = conn.execute(
            f"SELECT COUNT(*) FROM book_copies WHERE book_id IN ({placeholders}) AND status = ?",
            (*ids, CopyStatus.ISSUED.value)
        ).fetchone()
        if row[0]:
            raise ValueError("Cannot delete books while copies are issued. Return them first.")

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None
