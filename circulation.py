import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from audit import log_audit
from book import BookCopy, CopyStatus
from config import settings
from database import get_db_connection, timestamp
from transaction import SystemConfig, Transaction, TransactionStatus
from utils.validators import ISBNValidator

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_LIMIT = 5


def _as_date(value: date | datetime | str) -> date:
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if isinstance(value, datetime):
        return value.date()
    return value


def compute_fine(due_date: date | datetime | str, returned_at: date | datetime | str, fine_per_day: float) -> float:
    """Fine for a return: whole calendar days past the due day times the daily rate.

    Both moments are truncated to midnight, so returning any time on the due
    day (or earlier) costs nothing and one day late costs one day's fine.
    """
    due_day = _as_date(due_date)
    return_day = _as_date(returned_at)
    if return_day <= due_day:
        return 0.0
    return float((return_day - due_day).days * fine_per_day)


def _detailed(row: Any, *extra: str) -> Dict[str, Any]:
    data = dict(row)
    payload = Transaction.from_dict(data).to_dict()
    for key in extra:
        payload[key] = data.get(key)
    return payload


class Circulation:
    """Issue/return workflow, fines and the circulation dashboard."""

    # ------------------------- Configuration ------------------------- #
    def get_config(self) -> SystemConfig:
        """Load the circulation rules, creating the row from settings on first use."""
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM system_config WHERE id = 1").fetchone()
            if not row:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO system_config (id, max_books_per_student, issue_days_limit, fine_per_day, updated_at)
                    VALUES (1, ?, ?, ?, ?)
                    """,
                    (settings.default_max_books_per_student, settings.default_issue_days_limit,
                     settings.default_fine_per_day, timestamp())
                )
                conn.commit()
                logger.info("System configuration initialised from defaults")
                row = conn.execute("SELECT * FROM system_config WHERE id = 1").fetchone()
            return SystemConfig.from_dict(dict(row))
        finally:
            conn.close()

    def update_config(self, *, max_books_per_student: Optional[int] = None, issue_days_limit: Optional[int] = None,
                      fine_per_day: Optional[float] = None, actor_id: Optional[int] = None,
                      ip: Optional[str] = None) -> SystemConfig:
        if max_books_per_student is not None and max_books_per_student < 1:
            raise ValueError("max_books_per_student must be at least 1.")
        if issue_days_limit is not None and issue_days_limit < 1:
            raise ValueError("issue_days_limit must be at least 1.")
        if fine_per_day is not None and fine_per_day < 0:
            raise ValueError("fine_per_day cannot be negative.")

        current = self.get_config()
        updated = SystemConfig(
            max_books_per_student=max_books_per_student if max_books_per_student is not None else current.max_books_per_student,
            issue_days_limit=issue_days_limit if issue_days_limit is not None else current.issue_days_limit,
            fine_per_day=fine_per_day if fine_per_day is not None else current.fine_per_day,
        )
        conn = get_db_connection()
        try:
            conn.execute(
                """
                UPDATE system_config SET max_books_per_student = ?, issue_days_limit = ?, fine_per_day = ?, updated_at = ?
                WHERE id = 1
                """,
                (updated.max_books_per_student, updated.issue_days_limit, updated.fine_per_day, timestamp())
            )
            conn.commit()
        finally:
            conn.close()

        if actor_id is not None:
            log_audit(actor_id, "CONFIG_UPDATE",
                      f"Max books {updated.max_books_per_student}, {updated.issue_days_limit} days, "
                      f"fine {updated.fine_per_day:g}/day", ip)
        return self.get_config()

    # ------------------------- Issue / Return ------------------------- #
    def issue_book(self, student_id: int, isbn: Optional[str] = None, copy_number: Optional[str] = None,
                   actor_id: Optional[int] = None, ip: Optional[str] = None) -> Dict[str, Any]:
        """Issue a specific copy, or the first Available copy of an ISBN, to a student.

        The copy is claimed with a conditional UPDATE (Available -> Issued), so two
        desks cannot hand out the same copy. Any failure after the claim rolls the
        whole issue back.
        """
        if not isbn and not copy_number:
            raise ValueError("Provide an ISBN or a copy number.")

        config = self.get_config()
        conn = get_db_connection()
        try:
            student = conn.execute("SELECT * FROM users WHERE id = ?", (student_id,)).fetchone()
            if not student:
                raise LookupError("Student not found")
            if not student["is_active"]:
                raise ValueError("Student account is blocked")

            active_count = conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE student_id = ? AND status = ?",
                (student_id, TransactionStatus.ISSUED.value)
            ).fetchone()[0]
            if active_count >= config.max_books_per_student:
                raise ValueError(f"Limit reached ({config.max_books_per_student} books max)")

            if copy_number:
                copy_number = copy_number.strip()
                cursor = conn.execute(
                    "UPDATE book_copies SET status = ? WHERE copy_number = ? AND status = ?",
                    (CopyStatus.ISSUED.value, copy_number, CopyStatus.AVAILABLE.value)
                )
                if cursor.rowcount == 0:
                    raise ValueError("Copy is not available (Already Issued or Lost)")
                row = conn.execute("SELECT * FROM book_copies WHERE copy_number = ?", (copy_number,)).fetchone()
            else:
                book = conn.execute(
                    "SELECT id FROM books WHERE isbn = ?", (ISBNValidator.normalize_isbn(isbn),)
                ).fetchone()
                if not book:
                    raise LookupError("Book ISBN not found")
                row = conn.execute(
                    "SELECT * FROM book_copies WHERE book_id = ? AND status = ? ORDER BY id LIMIT 1",
                    (book["id"], CopyStatus.AVAILABLE.value)
                ).fetchone()
                if not row:
                    raise ValueError("No copies currently available")
                cursor = conn.execute(
                    "UPDATE book_copies SET status = ? WHERE id = ? AND status = ?",
                    (CopyStatus.ISSUED.value, row["id"], CopyStatus.AVAILABLE.value)
                )
                if cursor.rowcount == 0:
                    raise ValueError("No copies currently available")

            copy = BookCopy.from_dict(dict(row))
            copy.status = CopyStatus.ISSUED.value

            now = datetime.now()
            due_date = now + timedelta(days=config.issue_days_limit)
            conn.execute(
                "UPDATE books SET available_copies = available_copies - 1, updated_at = ? WHERE id = ?",
                (timestamp(now), copy.book_id)
            )
            transaction = Transaction(
                student_id=student_id,
                book_id=copy.book_id,
                copy_number=copy.copy_number,
                issue_date=timestamp(now),
                due_date=timestamp(due_date),
                created_at=timestamp(now),
                updated_at=timestamp(now),
            )
            cursor = conn.execute(
                """
                INSERT INTO transactions (student_id, book_id, copy_number, issue_date, due_date, status,
                                          fine, is_fine_paid, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
                """,
                (transaction.student_id, transaction.book_id, transaction.copy_number, transaction.issue_date,
                 transaction.due_date, transaction.status, transaction.created_at, transaction.updated_at)
            )
            transaction.id = cursor.lastrowid
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        register_number = student["register_number"] or student["email"]
        logger.info(f"Issued {copy.copy_number} to {register_number}, due {transaction.due_date}")
        if actor_id is not None:
            log_audit(actor_id, "ISSUE_BOOK", f"Issued {copy.copy_number} to {register_number}", ip)

        return {
            "message": "Book Issued Successfully",
            "copy": copy.copy_number,
            "transaction": transaction,
            "due_date": transaction.due_date,
        }

    def return_book(self, copy_number: str, actor_id: Optional[int] = None, ip: Optional[str] = None,
                    returned_at: Optional[datetime] = None) -> Dict[str, Any]:
        """Close the active transaction for a copy and levy any overdue fine."""
        copy_number = (copy_number or "").strip()
        if not copy_number:
            raise ValueError("Copy number is required.")

        config = self.get_config()
        returned_at = returned_at or datetime.now()
        conn = get_db_connection()
        try:
            row = conn.execute(
                """
                SELECT t.*, u.name AS student_name FROM transactions t
                LEFT JOIN users u ON u.id = t.student_id
                WHERE t.copy_number = ? AND t.status = ?
                """,
                (copy_number, TransactionStatus.ISSUED.value)
            ).fetchone()

            if not row:
                copy = conn.execute("SELECT status FROM book_copies WHERE copy_number = ?", (copy_number,)).fetchone()
                if copy and copy["status"] == CopyStatus.AVAILABLE.value:
                    raise ValueError("Book is already marked Returned.")
                raise LookupError("No active Issue record found for this copy.")

            fine = compute_fine(row["due_date"], returned_at, config.fine_per_day)
            conn.execute(
                """
                UPDATE transactions SET return_date = ?, status = ?, fine = ?, is_fine_paid = ?, updated_at = ?
                WHERE id = ?
                """,
                (timestamp(returned_at), TransactionStatus.RETURNED.value, fine, 1 if fine == 0 else 0,
                 timestamp(), row["id"])
            )
            conn.execute(
                "UPDATE book_copies SET status = ? WHERE copy_number = ?",
                (CopyStatus.AVAILABLE.value, copy_number)
            )
            conn.execute(
                """
                UPDATE books SET available_copies = available_copies + 1, updated_at = ?
                WHERE id = (SELECT book_id FROM book_copies WHERE copy_number = ?)
                """,
                (timestamp(), copy_number)
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

        logger.info(f"Returned {copy_number}, fine {fine:g}")
        if actor_id is not None:
            log_audit(actor_id, "RETURN_BOOK", f"Returned {copy_number}. Fine: {fine:g}", ip)

        return {
            "message": "Book Returned Successfully",
            "fine": fine,
            "student": row["student_name"],
        }

    # ------------------------- Reporting ------------------------- #
    def dashboard_stats(self) -> Dict[str, Any]:
        conn = get_db_connection()
        try:
            total_books = conn.execute("SELECT COUNT(*) FROM books").fetchone()[0]
            total_students = conn.execute(
                "SELECT COUNT(*) FROM users WHERE role = 'student' AND is_active = 1"
            ).fetchone()[0]
            active_issues = conn.execute(
                "SELECT COUNT(*) FROM transactions WHERE status = ?", (TransactionStatus.ISSUED.value,)
            ).fetchone()[0]
            total_fine = conn.execute("SELECT COALESCE(SUM(fine), 0) FROM transactions").fetchone()[0]

            recent_rows = conn.execute(
                """
                SELECT t.*, u.name AS student_name, b.title AS book_title FROM transactions t
                LEFT JOIN users u ON u.id = t.student_id
                LEFT JOIN books b ON b.id = t.book_id
                ORDER BY t.updated_at DESC, t.id DESC LIMIT ?
                """,
                (RECENT_ACTIVITY_LIMIT,)
            ).fetchall()

            # Transactions whose student no longer exists are left out.
            dept_rows = conn.execute(
                """
                SELECT u.department AS department, COUNT(*) AS count FROM transactions t
                JOIN users u ON u.id = t.student_id
                GROUP BY u.department ORDER BY count DESC
                """
            ).fetchall()
        finally:
            conn.close()

        return {
            "total_books": total_books,
            "total_students": total_students,
            "active_issues": active_issues,
            "total_fine": float(total_fine),
            "recent_activity": [_detailed(r, "student_name", "book_title") for r in recent_rows],
            "dept_activity": {
                "labels": [r["department"] or "Unknown" for r in dept_rows],
                "data": [r["count"] for r in dept_rows],
            },
        }

    def history(self) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT t.*, u.name AS student_name, u.register_number AS register_number,
                       u.department AS department, b.title AS book_title
                FROM transactions t
                LEFT JOIN users u ON u.id = t.student_id
                LEFT JOIN books b ON b.id = t.book_id
                ORDER BY t.issue_date DESC, t.id DESC
                """
            ).fetchall()
            return [_detailed(r, "student_name", "register_number", "department", "book_title") for r in rows]
        finally:
            conn.close()

    def unpaid_fines(self) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT t.*, u.name AS student_name, u.register_number AS register_number,
                       u.email AS student_email, b.title AS book_title
                FROM transactions t
                LEFT JOIN users u ON u.id = t.student_id
                LEFT JOIN books b ON b.id = t.book_id
                WHERE t.fine > 0 AND t.is_fine_paid = 0
                ORDER BY t.due_date ASC, t.id ASC
                """
            ).fetchall()
            return [_detailed(r, "student_name", "register_number", "student_email", "book_title") for r in rows]
        finally:
            conn.close()

    def overdue_issues(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Active issues past their due day, with the fine they would incur if returned at `now`."""
        now = now or datetime.now()
        config = self.get_config()
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT t.*, u.name AS student_name, u.register_number AS register_number,
                       u.email AS student_email, b.title AS book_title
                FROM transactions t
                LEFT JOIN users u ON u.id = t.student_id
                LEFT JOIN books b ON b.id = t.book_id
                WHERE t.status = ?
                ORDER BY t.due_date ASC, t.id ASC
                """,
                (TransactionStatus.ISSUED.value,)
            ).fetchall()
        finally:
            conn.close()

        overdue = []
        for row in rows:
            accrued = compute_fine(row["due_date"], now, config.fine_per_day)
            days = (_as_date(now) - _as_date(row["due_date"])).days
            if days <= 0:
                continue
            item = _detailed(row, "student_name", "register_number", "student_email", "book_title")
            item["days_overdue"] = days
            item["accrued_fine"] = accrued
            overdue.append(item)
        return overdue

    def student_issues(self, student_id: int) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT t.*, b.title AS book_title, b.author AS book_author FROM transactions t
                LEFT JOIN books b ON b.id = t.book_id
                WHERE t.student_id = ?
                ORDER BY t.created_at DESC, t.id DESC
                """,
                (student_id,)
            ).fetchall()
            return [_detailed(r, "book_title", "book_author") for r in rows]
        finally:
            conn.close()

    def get_transaction(self, transaction_id: int) -> Optional[Transaction]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM transactions WHERE id = ?", (transaction_id,)).fetchone()
            return Transaction.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    # ------------------------- Fines ------------------------- #
    def collect_fine(self, transaction_id: int, actor_id: Optional[int] = None,
                     ip: Optional[str] = None) -> Transaction:
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise LookupError("Transaction not found")

        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE transactions SET is_fine_paid = 1, updated_at = ? WHERE id = ?",
                (timestamp(), transaction_id)
            )
            conn.commit()
        finally:
            conn.close()

        if actor_id is not None:
            log_audit(actor_id, "FINE_COLLECT", f"Collected {transaction.fine:g} for {transaction.copy_number}", ip)
        return self.get_transaction(transaction_id)

    def edit_fine(self, transaction_id: int, amount: float, reason: Optional[str] = None,
                  actor_id: Optional[int] = None, ip: Optional[str] = None) -> Transaction:
        if amount is None or amount < 0:
            raise ValueError("Fine amount cannot be negative.")
        transaction = self.get_transaction(transaction_id)
        if not transaction:
            raise LookupError("Transaction not found")

        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE transactions SET fine = ?, fine_reason = ?, is_fine_paid = ?, updated_at = ? WHERE id = ?",
                (float(amount), (reason or "").strip() or "Manual Override", 1 if float(amount) == 0 else 0,
                 timestamp(), transaction_id)
            )
            conn.commit()
        finally:
            conn.close()

        if actor_id is not None:
            log_audit(actor_id, "FINE_EDIT", f"Changed fine to {float(amount):g}", ip)
        return self.get_transaction(transaction_id)
