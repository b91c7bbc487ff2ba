from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    STUDENT = "student"


class Department:
    """An academic department; books and students are filed under its code."""

    def __init__(self, code: str, name: str, id: int | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.code = code.strip().upper()
        self.name = name.strip()
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {"id": self.id, "code": self.code, "name": self.name, "created_at": self.created_at}

    @staticmethod
    def from_dict(data: dict) -> "Department":
        return Department(id=data.get("id"), code=data["code"], name=data["name"],
                          created_at=data.get("created_at"))


class User:
    """A library account: an admin, a staff member or a borrowing student."""

    def __init__(self, name: str, email: str, role: str, register_number: str | None = None,
                 department: str | None = None, is_active: bool = True, id: int | None = None,
                 password_hash: str | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip().lower()
        self.role = Role(role).value
        self.register_number = register_number.strip() if register_number else None
        self.department = department.strip().upper() if department else None
        self.is_active = bool(is_active)
        self.password_hash = password_hash
        self.created_at = created_at

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.name} <{self.email}> ({self.role})"

    def to_dict(self) -> dict:
        # password_hash never leaves the domain layer
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "register_number": self.register_number,
            "department": self.department,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            role=data["role"],
            register_number=data.get("register_number"),
            department=data.get("department"),
            is_active=bool(data.get("is_active", 1)),
            password_hash=data.get("password_hash"),
            created_at=data.get("created_at"),
        )
