import bcrypt
import pytest

from audit import get_audit_logs
from database import get_db_connection
from members import hash_password


def test_create_student(members, student):
    assert student.id is not None
    assert student.role == "student"
    assert student.department == "CSE"
    assert student.is_active is True
    assert "password_hash" not in student.to_dict()


def test_password_is_hashed(members):
    user = members.create_user(name="Admin", email="Admin@Example.com", role="admin", password="s3cret!")
    assert user.email == "admin@example.com"
    assert user.password_hash != "s3cret!"
    assert bcrypt.checkpw(b"s3cret!", user.password_hash.encode("utf-8"))
    assert not bcrypt.checkpw(b"wrong", user.password_hash.encode("utf-8"))

    conn = get_db_connection()
    try:
        stored = conn.execute("SELECT password_hash FROM users WHERE id = ?", (user.id,)).fetchone()[0]
    finally:
        conn.close()
    assert stored == user.password_hash


def test_hash_password_is_salted():
    first, second = hash_password("pw"), hash_password("pw")
    assert first != second
    assert bcrypt.checkpw(b"pw", first.encode("utf-8"))


def test_create_user_validation(members, student):
    with pytest.raises(ValueError, match="Invalid email"):
        members.create_user(name="Someone", email="not-an-email")
    with pytest.raises(ValueError, match="Invalid role"):
        members.create_user(name="Someone", email="someone@example.com", role="librarian")
    with pytest.raises(ValueError, match="Invalid Department Code"):
        members.create_user(name="Someone", email="someone@example.com", department="ZZZ")
    with pytest.raises(ValueError, match="already exists"):
        members.create_user(name="Copycat", email="asha@example.com")
    with pytest.raises(ValueError, match="already exists"):
        members.create_user(name="Copycat", email="copycat@example.com", register_number="21CS001")


def test_list_users_by_role(members, student, staff):
    assert {u.email for u in members.list_users()} == {"asha@example.com", "staff@example.com"}
    assert [u.email for u in members.list_users("student")] == ["asha@example.com"]


def test_block_and_unblock(members, student, staff):
    blocked = members.set_active(student.id, False, actor_id=staff.id)
    assert blocked.is_active is False
    assert get_audit_logs()[0].details == "Blocked 21CS001"

    assert members.set_active(student.id, True).is_active is True
    assert members.set_active(9999, False) is None


def test_seed_admin_once(members):
    admin = members.seed_admin("Super Admin", "admin@gmail.com", "admin123")
    assert admin.role == "admin"
    assert members.seed_admin("Other Admin", "other@gmail.com", "admin123") is None


def test_destroy_users(members, student, staff):
    assert members.destroy_users() == 2
    assert members.list_users() == []
