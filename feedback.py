from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from audit import log_audit
from database import get_db_connection, timestamp

logger = logging.getLogger(__name__)


class FeedbackStatus(str, Enum):
    PENDING = "Pending"
    REPLIED = "Replied"


class Feedback:
    """A message from a student to the library desk, with the desk's reply."""

    def __init__(self, student_id: int, subject: str, message: str, status: str = FeedbackStatus.PENDING.value,
                 reply: str | None = None, replied_by: int | None = None, replied_at: str | None = None,
                 id: int | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.student_id = student_id
        self.subject = subject
        self.message = message
        self.status = FeedbackStatus(status).value
        self.reply = reply
        self.replied_by = replied_by
        self.replied_at = replied_at
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "subject": self.subject,
            "message": self.message,
            "status": self.status,
            "reply": self.reply,
            "replied_by": self.replied_by,
            "replied_at": self.replied_at,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Feedback":
        return Feedback(
            id=data.get("id"),
            student_id=data["student_id"],
            subject=data["subject"],
            message=data["message"],
            status=data.get("status") or FeedbackStatus.PENDING.value,
            reply=data.get("reply"),
            replied_by=data.get("replied_by"),
            replied_at=data.get("replied_at"),
            created_at=data.get("created_at"),
        )


class FeedbackDesk:
    """Student feedback submission and staff replies."""

    def submit(self, student_id: int, subject: str, message: str) -> Feedback:
        subject = (subject or "").strip()
        message = (message or "").strip()
        if not subject or not message:
            raise ValueError("Subject and message are required.")

        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO feedback (student_id, subject, message, status, created_at) VALUES (?, ?, ?, ?, ?)",
                (student_id, subject, message, FeedbackStatus.PENDING.value, timestamp())
            )
            conn.commit()
            feedback_id = cursor.lastrowid
        finally:
            conn.close()

        logger.info(f"Feedback {feedback_id} submitted by student {student_id}")
        return self.get(feedback_id)

    def get(self, feedback_id: int) -> Optional[Feedback]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM feedback WHERE id = ?", (feedback_id,)).fetchone()
            return Feedback.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_all(self) -> List[Dict[str, Any]]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                """
                SELECT f.*, u.name AS student_name, u.register_number AS register_number FROM feedback f
                LEFT JOIN users u ON u.id = f.student_id
                ORDER BY f.created_at DESC, f.id DESC
                """
            ).fetchall()
            result = []
            for row in rows:
                item = Feedback.from_dict(dict(row)).to_dict()
                item["student_name"] = row["student_name"]
                item["register_number"] = row["register_number"]
                result.append(item)
            return result
        finally:
            conn.close()

    def list_for_student(self, student_id: int) -> List[Feedback]:
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM feedback WHERE student_id = ? ORDER BY created_at DESC, id DESC", (student_id,)
            ).fetchall()
            return [Feedback.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def reply(self, feedback_id: int, reply: str, actor_id: Optional[int] = None,
              ip: Optional[str] = None) -> Feedback:
        reply = (reply or "").strip()
        if not reply:
            raise ValueError("Reply cannot be empty.")
        if not self.get(feedback_id):
            raise LookupError("Feedback not found")

        conn = get_db_connection()
        try:
            conn.execute(
                "UPDATE feedback SET reply = ?, replied_by = ?, replied_at = ?, status = ? WHERE id = ?",
                (reply, actor_id, timestamp(), FeedbackStatus.REPLIED.value, feedback_id)
            )
            conn.commit()
        finally:
            conn.close()

        if actor_id is not None:
            log_audit(actor_id, "FEEDBACK_REPLY", f"Replied to feedback #{feedback_id}", ip)
        return self.get(feedback_id)
