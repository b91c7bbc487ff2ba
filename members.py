import logging
import sqlite3
from typing import List, Optional

import bcrypt

from audit import log_audit
from database import get_db_connection, timestamp
from user import Role, User
from utils.validators import EmailValidator, TextValidator

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


class Members:
    """User accounts: admins, staff and borrowing students."""

    def create_user(self, name: str, email: str, role: str = Role.STUDENT.value,
                    register_number: Optional[str] = None, department: Optional[str] = None,
                    password: Optional[str] = None) -> User:
        if not TextValidator.validate_name(name):
            raise ValueError("Name is required.")
        if not EmailValidator.is_valid_email(email):
            raise ValueError(f"Invalid email address: '{email}'")
        try:
            user = User(name=name, email=email, role=role, register_number=register_number,
                        department=department)
        except ValueError as e:
            allowed = ", ".join(r.value for r in Role)
            raise ValueError(f"Invalid role '{role}'. Allowed: {allowed}") from e

        if user.department:
            conn = get_db_connection()
            try:
                known = conn.execute("SELECT 1 FROM departments WHERE code = ?", (user.department,)).fetchone()
            finally:
                conn.close()
            if not known:
                raise ValueError(f"Invalid Department Code: '{department}'")

        user.password_hash = hash_password(password) if password else None
        conn = get_db_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO users (name, email, register_number, role, department, is_active, password_hash, created_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (user.name, user.email, user.register_number, user.role, user.department,
                 user.password_hash, timestamp())
            )
            conn.commit()
            user_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValueError("A user with this email or register number already exists.") from e
        finally:
            conn.close()

        logger.info(f"User {user.email} created with role {user.role}")
        return self.get_user(user_id)

    def get_user(self, user_id: int) -> Optional[User]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return User.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_users(self, role: Optional[str] = None) -> List[User]:
        conn = get_db_connection()
        try:
            if role:
                rows = conn.execute("SELECT * FROM users WHERE role = ? ORDER BY name", (role,)).fetchall()
            else:
                rows = conn.execute("SELECT * FROM users ORDER BY name").fetchall()
            return [User.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def set_active(self, user_id: int, is_active: bool, actor_id: Optional[int] = None,
                   ip: Optional[str] = None) -> Optional[User]:
        """Block or unblock an account. Blocked students cannot borrow."""
        user = self.get_user(user_id)
        if not user:
            return None

        conn = get_db_connection()
        try:
            conn.execute("UPDATE users SET is_active = ? WHERE id = ?", (1 if is_active else 0, user_id))
            conn.commit()
        finally:
            conn.close()

        if actor_id is not None:
            state = "Unblocked" if is_active else "Blocked"
            log_audit(actor_id, "USER_STATUS", f"{state} {user.register_number or user.email}", ip)
        return self.get_user(user_id)

    def seed_admin(self, name: str, email: str, password: str) -> Optional[User]:
        """Create the first admin. Returns None when an admin already exists."""
        conn = get_db_connection()
        try:
            existing = conn.execute("SELECT 1 FROM users WHERE role = ?", (Role.ADMIN.value,)).fetchone()
        finally:
            conn.close()
        if existing:
            logger.warning("Admin already exists. Seeding skipped.")
            return None
        return self.create_user(name=name, email=email, role=Role.ADMIN.value, password=password)

    def destroy_users(self) -> int:
        conn = get_db_connection()
        try:
            cursor = conn.execute("DELETE FROM users")
            conn.commit()
            logger.warning(f"Removed {cursor.rowcount} users")
            return cursor.rowcount
        finally:
            conn.close()
