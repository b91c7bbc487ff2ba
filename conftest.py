import os
import pytest

from circulation import Circulation
from library import Library
from members import Members


@pytest.fixture
def lib(tmp_path, request, monkeypatch):
    # Every test gets its own database file
    monkeypatch.delenv("LIBRARY_DB_FILE", raising=False)
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def members(lib):
    return Members()


@pytest.fixture
def circulation(lib):
    return Circulation()


@pytest.fixture
def department(lib):
    return lib.add_department("CSE", "Computer Science")


@pytest.fixture
def staff(members):
    return members.create_user(name="Desk Staff", email="staff@example.com", role="staff", password="staffpass")


@pytest.fixture
def student(members, department):
    return members.create_user(
        name="Asha Student",
        email="asha@example.com",
        role="student",
        register_number="21CS001",
        department="CSE",
    )


@pytest.fixture
def book(lib, department):
    return lib.create_book("Clean Code", "Robert Martin", "978-0132350884", "CSE", quantity=2)
