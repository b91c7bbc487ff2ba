from __future__ import annotations

import logging
from typing import List, Optional

from database import get_db_connection, timestamp

logger = logging.getLogger(__name__)

DEFAULT_IP = "0.0.0.0"


class AuditLog:
    """A single staff/admin action recorded for the admin dashboard."""

    def __init__(self, actor_id: int | None, actor_name: str, action: str, details: str | None = None,
                 ip: str = DEFAULT_IP, id: int | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.actor_id = actor_id
        self.actor_name = actor_name
        self.action = action
        self.details = details
        self.ip = ip
        self.created_at = created_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "actor_id": self.actor_id,
            "actor_name": self.actor_name,
            "action": self.action,
            "details": self.details,
            "ip": self.ip,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "AuditLog":
        return AuditLog(
            id=data.get("id"),
            actor_id=data.get("actor_id"),
            actor_name=data["actor_name"],
            action=data["action"],
            details=data.get("details"),
            ip=data.get("ip") or DEFAULT_IP,
            created_at=data.get("created_at"),
        )


def log_audit(actor_id: Optional[int], action: str, details: str, ip: Optional[str] = None) -> None:
    """Record an action. Failures are logged and never reach the caller's request."""
    conn = None
    try:
        conn = get_db_connection()
        row = None
        if actor_id is not None:
            row = conn.execute("SELECT name FROM users WHERE id = ?", (actor_id,)).fetchone()
        actor_name = row["name"] if row else "Unknown"
        conn.execute(
            "INSERT INTO audit_logs (actor_id, actor_name, action, details, ip, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (actor_id, actor_name, action, details, ip or DEFAULT_IP, timestamp())
        )
        conn.commit()
        logger.info(f"Audit: {action} by {actor_name}: {details}")
    except Exception as e:
        logger.error(f"Failed to write audit log for {action}: {e}")
    finally:
        if conn is not None:
            conn.close()


def get_audit_logs(limit: int = 100) -> List[AuditLog]:
    """Newest first, capped at `limit` entries."""
    conn = get_db_connection()
    try:
        rows = conn.execute(
            "SELECT * FROM audit_logs ORDER BY created_at DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [AuditLog.from_dict(dict(row)) for row in rows]
    finally:
        conn.close()
