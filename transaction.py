from __future__ import annotations

from enum import Enum


class TransactionStatus(str, Enum):
    ISSUED = "Issued"
    RETURNED = "Returned"


class Transaction:
    """One issue/return lifecycle of a copy for a student."""

    def __init__(self, student_id: int, book_id: int, copy_number: str, issue_date: str, due_date: str,
                 status: str = TransactionStatus.ISSUED.value, return_date: str | None = None,
                 fine: float = 0, is_fine_paid: bool = False, fine_reason: str | None = None,
                 id: int | None = None, created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.student_id = student_id
        self.book_id = book_id
        self.copy_number = copy_number
        self.issue_date = issue_date
        self.due_date = due_date
        self.return_date = return_date
        self.status = TransactionStatus(status).value
        self.fine = float(fine or 0)
        self.is_fine_paid = bool(is_fine_paid)
        self.fine_reason = fine_reason
        self.created_at = created_at
        self.updated_at = updated_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "book_id": self.book_id,
            "copy_number": self.copy_number,
            "issue_date": self.issue_date,
            "due_date": self.due_date,
            "return_date": self.return_date,
            "status": self.status,
            "fine": self.fine,
            "is_fine_paid": self.is_fine_paid,
            "fine_reason": self.fine_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Transaction":
        return Transaction(
            id=data.get("id"),
            student_id=data["student_id"],
            book_id=data["book_id"],
            copy_number=data["copy_number"],
            issue_date=data["issue_date"],
            due_date=data["due_date"],
            return_date=data.get("return_date"),
            status=data.get("status") or TransactionStatus.ISSUED.value,
            fine=data.get("fine") or 0,
            is_fine_paid=bool(data.get("is_fine_paid")),
            fine_reason=data.get("fine_reason"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )


class SystemConfig:
    """Circulation rules; a single row in system_config."""

    def __init__(self, max_books_per_student: int, issue_days_limit: int, fine_per_day: float,
                 updated_at: str | None = None) -> None:
        self.max_books_per_student = int(max_books_per_student)
        self.issue_days_limit = int(issue_days_limit)
        self.fine_per_day = float(fine_per_day)
        self.updated_at = updated_at

    def to_dict(self) -> dict:
        return {
            "max_books_per_student": self.max_books_per_student,
            "issue_days_limit": self.issue_days_limit,
            "fine_per_day": self.fine_per_day,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "SystemConfig":
        return SystemConfig(
            max_books_per_student=data["max_books_per_student"],
            issue_days_limit=data["issue_days_limit"],
            fine_per_day=data["fine_per_day"],
            updated_at=data.get("updated_at"),
        )
