from datetime import date, datetime, timedelta

import pytest

import circulation as circulation_module
from audit import get_audit_logs
from circulation import compute_fine


def test_compute_fine_on_time_and_late():
    due = datetime(2024, 3, 10, 17, 30)
    assert compute_fine(due, datetime(2024, 3, 10, 23, 59), 5) == 0.0
    assert compute_fine(due, datetime(2024, 3, 9, 8, 0), 5) == 0.0
    # Day boundaries count, not hours
    assert compute_fine(due, datetime(2024, 3, 11, 0, 5), 5) == 5.0
    assert compute_fine("2024-03-10T17:30:00", date(2024, 3, 13), 2.5) == 7.5


def test_default_config(circulation):
    config = circulation.get_config()
    assert config.max_books_per_student == 3
    assert config.issue_days_limit == 14
    assert config.fine_per_day == 5.0


def test_update_config_is_partial(circulation, staff):
    updated = circulation.update_config(fine_per_day=2.0, actor_id=staff.id)
    assert updated.fine_per_day == 2.0
    assert updated.max_books_per_student == 3
    assert get_audit_logs()[0].action == "CONFIG_UPDATE"

    with pytest.raises(ValueError):
        circulation.update_config(max_books_per_student=0)


def test_issue_by_isbn(lib, circulation, book, student, staff):
    result = circulation.issue_book(student.id, isbn="978-0132350884", actor_id=staff.id)

    assert result["message"] == "Book Issued Successfully"
    assert result["copy"] == "9780132350884-1"
    transaction = result["transaction"]
    assert transaction.status == "Issued"
    assert transaction.fine == 0
    assert transaction.is_fine_paid is False
    issued = datetime.fromisoformat(transaction.issue_date)
    assert datetime.fromisoformat(result["due_date"]) - issued == timedelta(days=14)

    assert lib.find_copy_by_number("9780132350884-1").status == "Issued"
    assert lib.find_book(book.id).available_copies == 1

    log = get_audit_logs()[0]
    assert log.action == "ISSUE_BOOK"
    assert log.details == "Issued 9780132350884-1 to 21CS001"
    assert log.actor_name == "Desk Staff"


def test_issue_by_copy_number(lib, circulation, book, student):
    result = circulation.issue_book(student.id, copy_number="9780132350884-2")
    assert result["copy"] == "9780132350884-2"

    with pytest.raises(ValueError, match="Copy is not available"):
        circulation.issue_book(student.id, copy_number="9780132350884-2")


def test_issue_errors(lib, circulation, members, book, student):
    with pytest.raises(ValueError, match="Provide an ISBN"):
        circulation.issue_book(student.id)
    with pytest.raises(LookupError, match="Student not found"):
        circulation.issue_book(9999, isbn=book.isbn)
    with pytest.raises(LookupError, match="Book ISBN not found"):
        circulation.issue_book(student.id, isbn="0000")

    members.set_active(student.id, False)
    with pytest.raises(ValueError, match="Student account is blocked"):
        circulation.issue_book(student.id, isbn=book.isbn)


def test_issue_when_no_copy_available(lib, circulation, members, book, student):
    other = members.create_user(name="Ravi", email="ravi@example.com", register_number="21CS002")
    circulation.issue_book(student.id, isbn=book.isbn)
    circulation.issue_book(other.id, isbn=book.isbn)

    with pytest.raises(ValueError, match="No copies currently available"):
        circulation.issue_book(student.id, isbn=book.isbn)


def test_issue_limit(lib, circulation, department, student):
    circulation.update_config(max_books_per_student=2)
    for isbn in ("1", "2", "3"):
        lib.create_book(f"Book {isbn}", "Author", isbn, "CSE")

    circulation.issue_book(student.id, isbn="1")
    circulation.issue_book(student.id, isbn="2")
    with pytest.raises(ValueError, match=r"Limit reached \(2 books max\)"):
        circulation.issue_book(student.id, isbn="3")
    assert lib.find_copy_by_number("3-1").status == "Available"


def test_issue_rolls_back_on_failure(lib, circulation, book, student, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("clock broke")

    circulation.get_config()
    monkeypatch.setattr(circulation_module, "timestamp", boom)
    with pytest.raises(RuntimeError):
        circulation.issue_book(student.id, copy_number="9780132350884-1")
    monkeypatch.undo()

    assert lib.find_copy_by_number("9780132350884-1").status == "Available"
    assert lib.find_book(book.id).available_copies == 2
    assert circulation.history() == []


def test_return_on_time(lib, circulation, book, student, staff):
    circulation.issue_book(student.id, isbn=book.isbn)
    result = circulation.return_book("9780132350884-1", actor_id=staff.id)

    assert result == {"message": "Book Returned Successfully", "fine": 0.0, "student": "Asha Student"}
    assert lib.find_copy_by_number("9780132350884-1").status == "Available"
    assert lib.find_book(book.id).available_copies == 2

    transaction = circulation.history()[0]
    assert transaction["status"] == "Returned"
    assert transaction["is_fine_paid"] is True
    assert get_audit_logs()[0].details == "Returned 9780132350884-1. Fine: 0"


def test_return_late_levies_fine(lib, circulation, book, student):
    issued = circulation.issue_book(student.id, isbn=book.isbn)
    due = datetime.fromisoformat(issued["due_date"])

    result = circulation.return_book("9780132350884-1", returned_at=due + timedelta(days=3))
    assert result["fine"] == 15.0

    fines = circulation.unpaid_fines()
    assert len(fines) == 1
    assert fines[0]["fine"] == 15.0
    assert fines[0]["is_fine_paid"] is False
    assert fines[0]["student_name"] == "Asha Student"


def test_return_errors(lib, circulation, book, student):
    with pytest.raises(ValueError, match="already marked Returned"):
        circulation.return_book("9780132350884-1")
    with pytest.raises(LookupError, match="No active Issue record"):
        circulation.return_book("does-not-exist")


def test_collect_and_edit_fine(lib, circulation, book, student, staff):
    issued = circulation.issue_book(student.id, isbn=book.isbn)
    due = datetime.fromisoformat(issued["due_date"])
    circulation.return_book("9780132350884-1", returned_at=due + timedelta(days=2))
    transaction_id = issued["transaction"].id

    edited = circulation.edit_fine(transaction_id, 4, actor_id=staff.id)
    assert edited.fine == 4.0
    assert edited.fine_reason == "Manual Override"
    assert get_audit_logs()[0].action == "FINE_EDIT"

    paid = circulation.collect_fine(transaction_id, actor_id=staff.id)
    assert paid.is_fine_paid is True
    assert circulation.unpaid_fines() == []

    with pytest.raises(ValueError):
        circulation.edit_fine(transaction_id, -1)
    with pytest.raises(LookupError):
        circulation.collect_fine(9999)


def test_overdue_issues(lib, circulation, book, student):
    issued = circulation.issue_book(student.id, isbn=book.isbn)
    due = datetime.fromisoformat(issued["due_date"])

    assert circulation.overdue_issues(now=due) == []
    overdue = circulation.overdue_issues(now=due + timedelta(days=4))
    assert len(overdue) == 1
    assert overdue[0]["days_overdue"] == 4
    assert overdue[0]["accrued_fine"] == 20.0
    assert overdue[0]["book_title"] == "Clean Code"


def test_student_issues_and_dashboard(lib, circulation, book, student):
    circulation.issue_book(student.id, isbn=book.isbn)

    mine = circulation.student_issues(student.id)
    assert len(mine) == 1
    assert mine[0]["book_title"] == "Clean Code"
    assert mine[0]["book_author"] == "Robert Martin"

    stats = circulation.dashboard_stats()
    assert stats["total_books"] == 1
    assert stats["total_students"] == 1
    assert stats["active_issues"] == 1
    assert stats["total_fine"] == 0.0
    assert stats["recent_activity"][0]["student_name"] == "Asha Student"
    assert stats["dept_activity"] == {"labels": ["CSE"], "data": [1]}


def test_edit_fine_on_paid_return_reopens_it(lib, circulation, book, student):
    issued = circulation.issue_book(student.id, isbn=book.isbn)
    circulation.return_book(issued["copy"])
    transaction_id = issued["transaction"].id
    assert circulation.get_transaction(transaction_id).is_fine_paid is True

    edited = circulation.edit_fine(transaction_id, 7, "Damaged spine")
    assert edited.is_fine_paid is False
    assert [f["id"] for f in circulation.unpaid_fines()] == [transaction_id]

    waived = circulation.edit_fine(transaction_id, 0)
    assert waived.is_fine_paid is True
    assert circulation.unpaid_fines() == []
