import os
import importlib
import pytest
from fastapi.testclient import TestClient
from config import settings


@pytest.fixture
def api_module(tmp_path, request):
    # Create a unique per-test DB and ensure api picks it up at import time
    db_file = str(tmp_path / f"api_test_{request.node.name}.db")
    os.environ["LIBRARY_DB_FILE"] = db_file

    import api as module
    # Reload api so its global Library() instance uses the test-specific DB
    importlib.reload(module)
    try:
        yield module
    finally:
        os.environ.pop("LIBRARY_DB_FILE", None)
        if os.path.exists(db_file):
            try:
                os.remove(db_file)
            except OSError:
                pass


@pytest.fixture
def client(api_module):
    return TestClient(api_module.app)


@pytest.fixture
def actors(api_module):
    api_module.library.add_department("CSE", "Computer Science")
    members = api_module.members
    admin = members.create_user(name="Admin", email="admin@example.com", role="admin", password="admin123")
    staff = members.create_user(name="Staff", email="staff@example.com", role="staff", password="staff123")
    student = members.create_user(name="Asha", email="asha@example.com", role="student",
                                  register_number="21CS001", department="CSE")
    return {"admin": admin, "staff": staff, "student": student}


def _headers(user, with_key=True):
    headers = {"X-User-Id": str(user.id)}
    if with_key:
        headers["X-API-Key"] = settings.api_key
    return headers


@pytest.fixture
def admin_headers(actors):
    return _headers(actors["admin"])


@pytest.fixture
def staff_headers(actors):
    return _headers(actors["staff"])


@pytest.fixture
def student_headers(actors):
    return _headers(actors["student"], with_key=False)


def _create_book(client, headers, isbn="9780132350884", quantity=2):
    payload = {"title": "Clean Code", "author": "Robert Martin", "isbn": isbn, "department": "CSE",
               "quantity": quantity}
    response = client.post("/books", headers=headers, json=payload)
    assert response.status_code == 201
    return response.json()


def test_root_and_health(client):
    assert client.get("/").json()["name"] == settings.app_name
    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["db"] is True


def test_get_books(client):
    response = client.get("/books")
    assert response.status_code == 200
    assert response.json() == []


def test_add_book_with_valid_api_key(client, staff_headers):
    book = _create_book(client, staff_headers)
    assert book["isbn"] == "9780132350884"
    assert book["total_copies"] == 2
    assert client.get(f"/books/{book['id']}").json()["title"] == "Clean Code"


def test_add_book_with_invalid_api_key(client, actors):
    headers = {"X-API-Key": "invalid-key", "X-User-Id": str(actors["staff"].id)}
    payload = {"title": "T", "author": "A", "isbn": "1", "department": "CSE"}
    response = client.post("/books", headers=headers, json=payload)
    assert response.status_code == 403


def test_staff_route_requires_actor(client):
    response = client.post("/books", headers={"X-API-Key": settings.api_key},
                           json={"title": "T", "author": "A", "isbn": "1", "department": "CSE"})
    assert response.status_code == 401


def test_student_cannot_use_staff_routes(client, actors):
    headers = _headers(actors["student"])
    response = client.get("/circulation/history", headers=headers)
    assert response.status_code == 403


def test_unknown_actor(client):
    headers = {"X-API-Key": settings.api_key, "X-User-Id": "9999"}
    assert client.get("/users", headers=headers).status_code == 401


def test_add_book_errors(client, staff_headers):
    payload = {"title": "T", "author": "A", "isbn": "1", "department": "NOPE"}
    response = client.post("/books", headers=staff_headers, json=payload)
    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid Department Code: 'NOPE'"

    _create_book(client, staff_headers)
    response = client.post("/books", headers=staff_headers, json={
        "title": "Again", "author": "A", "isbn": "978-0132350884", "department": "CSE"})
    assert response.status_code == 400
    assert response.json()["detail"] == "Book with this ISBN already exists"


def test_update_and_delete_book(client, staff_headers):
    book = _create_book(client, staff_headers)

    response = client.put(f"/books/{book['id']}", headers=staff_headers, json={"title": "Clean Code 2"})
    assert response.status_code == 200
    assert response.json()["title"] == "Clean Code 2"

    assert client.put("/books/9999", headers=staff_headers, json={"title": "X"}).status_code == 404
    assert client.delete(f"/books/{book['id']}", headers=staff_headers).status_code == 200
    assert client.get(f"/books/{book['id']}").status_code == 404
    assert client.delete(f"/books/{book['id']}", headers=staff_headers).status_code == 404


def test_bulk_delete(client, staff_headers):
    first = _create_book(client, staff_headers, isbn="111")
    second = _create_book(client, staff_headers, isbn="222")
    response = client.post("/books/bulk-delete", headers=staff_headers,
                           json={"book_ids": [first["id"], second["id"]]})
    assert response.status_code == 200
    assert response.json()["deleted"] == 2

    response = client.post("/books/bulk-delete", headers=staff_headers, json={"book_ids": []})
    assert response.status_code == 400
    assert response.json()["detail"] == "No books selected"


def test_upload_csv(client, staff_headers):
    content = b"Title,Author,ISBN,Department,Quantity\nDune,Frank Herbert,100,CSE,2\nGhost,X,200,MECH,1\n"
    response = client.post("/books/upload", headers=staff_headers,
                           files={"file": ("books.csv", content, "text/csv")})
    assert response.status_code == 200
    body = response.json()
    assert body["added"] == 1
    assert body["errors"] == ["ISBN 200: Invalid or Missing Department 'MECH'. Please add Dept first."]


def test_upload_csv_too_large(client, staff_headers, api_module, monkeypatch):
    monkeypatch.setattr(api_module.settings, "max_upload_size", 10)
    response = client.post("/books/upload", headers=staff_headers,
                           files={"file": ("books.csv", b"Title,Author,ISBN\n" * 5, "text/csv")})
    assert response.status_code == 413


def test_copies_routes(client, staff_headers):
    book = _create_book(client, staff_headers)

    copies = client.get(f"/books/{book['id']}/copies", headers=staff_headers).json()
    assert [c["copy_number"] for c in copies] == ["9780132350884-1", "9780132350884-2"]

    response = client.post("/copies", headers=staff_headers, json={"book_id": book["id"], "count": 1})
    assert response.status_code == 200
    assert response.json()["copies"][0]["copy_number"] == "9780132350884-3"

    copy_id = copies[0]["id"]
    response = client.put(f"/copies/{copy_id}/status", headers=staff_headers, json={"status": "Lost"})
    assert response.status_code == 200
    assert response.json()["status"] == "Lost"
    response = client.put(f"/copies/{copy_id}/status", headers=staff_headers, json={"status": "Issued"})
    assert response.status_code == 400

    assert client.delete(f"/copies/{copy_id}", headers=staff_headers).status_code == 200
    assert client.delete(f"/copies/{copy_id}", headers=staff_headers).status_code == 404
    assert client.get("/books/9999/copies", headers=staff_headers).status_code == 404


def test_issue_and_return_flow(client, actors, staff_headers, student_headers):
    _create_book(client, staff_headers)
    student_id = actors["student"].id

    response = client.post("/circulation/issue", headers=staff_headers,
                           json={"student_id": student_id, "isbn": "9780132350884"})
    assert response.status_code == 201
    body = response.json()
    assert body["message"] == "Book Issued Successfully"
    assert body["copy"] == "9780132350884-1"
    assert body["transaction"]["status"] == "Issued"

    mine = client.get("/circulation/student-history", headers=student_headers).json()
    assert mine[0]["book_title"] == "Clean Code"

    response = client.post("/circulation/return", headers=staff_headers, json={"copy_number": body["copy"]})
    assert response.status_code == 200
    assert response.json() == {"message": "Book Returned Successfully", "fine": 0.0, "student": "Asha"}

    response = client.post("/circulation/return", headers=staff_headers, json={"copy_number": body["copy"]})
    assert response.status_code == 400
    assert response.json()["detail"] == "Book is already marked Returned."

    history = client.get("/circulation/history", headers=staff_headers).json()
    assert history[0]["status"] == "Returned"
    stats = client.get("/circulation/dashboard-stats", headers=staff_headers).json()
    assert stats["active_issues"] == 0
    assert stats["dept_activity"] == {"labels": ["CSE"], "data": [1]}


def test_issue_errors(client, staff_headers):
    response = client.post("/circulation/issue", headers=staff_headers, json={"student_id": 9999, "isbn": "1"})
    assert response.status_code == 404
    assert response.json()["detail"] == "Student not found"

    response = client.post("/circulation/return", headers=staff_headers, json={"copy_number": "nope-1"})
    assert response.status_code == 404


def test_fines_routes(client, api_module, actors, staff_headers):
    from datetime import datetime, timedelta

    _create_book(client, staff_headers)
    issued = api_module.circulation.issue_book(actors["student"].id, isbn="9780132350884")
    due = datetime.fromisoformat(issued["due_date"])
    api_module.circulation.return_book(issued["copy"], returned_at=due + timedelta(days=2))
    transaction_id = issued["transaction"].id

    fines = client.get("/circulation/fines", headers=staff_headers).json()
    assert fines[0]["fine"] == 10.0

    response = client.put(f"/circulation/fines/{transaction_id}/edit", headers=staff_headers,
                          json={"amount": 3, "reason": "Waived partly"})
    assert response.status_code == 200
    assert response.json()["transaction"]["fine_reason"] == "Waived partly"

    response = client.put(f"/circulation/fines/{transaction_id}/pay", headers=staff_headers)
    assert response.status_code == 200
    assert response.json()["transaction"]["is_fine_paid"] is True
    assert client.get("/circulation/fines", headers=staff_headers).json() == []
    assert client.put("/circulation/fines/9999/pay", headers=staff_headers).status_code == 404


def test_overdue_route(client, staff_headers):
    response = client.get("/circulation/overdue", headers=staff_headers)
    assert response.status_code == 200
    assert response.json() == []


def test_users_routes(client, admin_headers, staff_headers, actors):
    payload = {"name": "Ravi", "email": "ravi@example.com", "register_number": "21CS002", "department": "CSE"}
    response = client.post("/users", headers=admin_headers, json=payload)
    assert response.status_code == 201
    assert response.json()["role"] == "student"
    assert "password_hash" not in response.json()

    assert client.post("/users", headers=admin_headers, json=payload).status_code == 400
    assert client.post("/users", headers=staff_headers, json=payload).status_code == 403

    students = client.get("/users", headers=staff_headers, params={"role": "student"}).json()
    assert {u["email"] for u in students} == {"asha@example.com", "ravi@example.com"}

    student_id = actors["student"].id
    response = client.put(f"/users/{student_id}/status", headers=admin_headers, json={"is_active": False})
    assert response.json()["is_active"] is False
    assert client.get(f"/users/{student_id}", headers=staff_headers).json()["is_active"] is False
    assert client.get("/users/9999", headers=staff_headers).status_code == 404


def test_blocked_actor_is_rejected(client, api_module, actors, student_headers):
    api_module.members.set_active(actors["student"].id, False)
    assert client.get("/feedback/my", headers=student_headers).status_code == 403


def test_departments_routes(client, admin_headers, staff_headers):
    assert [d["code"] for d in client.get("/departments").json()] == ["CSE"]
    response = client.post("/departments", headers=admin_headers, json={"code": "ece", "name": "Electronics"})
    assert response.status_code == 201
    assert response.json()["code"] == "ECE"
    assert client.post("/departments", headers=admin_headers,
                       json={"code": "ECE", "name": "Again"}).status_code == 400
    assert client.post("/departments", headers=staff_headers,
                       json={"code": "ME", "name": "Mech"}).status_code == 403


def test_config_routes(client, admin_headers, staff_headers):
    config = client.get("/config", headers=staff_headers).json()
    assert config["max_books_per_student"] == 3

    response = client.put("/config", headers=admin_headers, json={"issue_days_limit": 7})
    assert response.status_code == 200
    assert response.json()["issue_days_limit"] == 7
    assert response.json()["fine_per_day"] == 5.0
    assert client.put("/config", headers=staff_headers, json={"issue_days_limit": 7}).status_code == 403


def test_audit_route(client, admin_headers, staff_headers):
    _create_book(client, staff_headers)
    logs = client.get("/audit", headers=admin_headers).json()
    assert logs[0]["action"] == "BOOK_CREATE"
    assert logs[0]["actor_name"] == "Staff"
    assert client.get("/audit", headers=staff_headers).status_code == 403


def test_feedback_routes(client, student_headers, staff_headers):
    response = client.post("/feedback", headers=student_headers, json={"subject": "Hours", "message": "Open later?"})
    assert response.status_code == 201
    feedback_id = response.json()["id"]

    assert client.post("/feedback", headers=staff_headers,
                       json={"subject": "x", "message": "y"}).status_code == 403

    everything = client.get("/feedback", headers=staff_headers).json()
    assert everything[0]["student_name"] == "Asha"

    response = client.put(f"/feedback/{feedback_id}/reply", headers=staff_headers, json={"reply": "Until 8pm."})
    assert response.status_code == 200
    assert response.json()["status"] == "Replied"

    mine = client.get("/feedback/my", headers=student_headers).json()
    assert mine[0]["reply"] == "Until 8pm."
    assert client.put("/feedback/9999/reply", headers=staff_headers, json={"reply": "x"}).status_code == 404


def test_unhandled_error_returns_500(api_module, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(api_module.library, "list_books", boom)
    client = TestClient(api_module.app, raise_server_exceptions=False)
    response = client.get("/books")
    assert response.status_code == 500


def test_copy_quantity_cap(client, staff_headers):
    payload = {"title": "Huge", "author": "Author", "isbn": "999", "department": "CSE", "quantity": 501}
    assert client.post("/books", headers=staff_headers, json=payload).status_code == 422
    assert client.get("/books").json() == []

    book = _create_book(client, staff_headers)
    response = client.post("/copies", headers=staff_headers, json={"book_id": book["id"], "count": 501})
    assert response.status_code == 422


def test_health_timestamp_is_utc(client):
    assert client.get("/health").json()["timestamp"].endswith("+00:00")
