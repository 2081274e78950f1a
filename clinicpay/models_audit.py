"""
Audit Log Model - append-only record of security-relevant actions
"""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.sql import func

from .database import Base

AUDIT_MODULES = {
    "doctors",
    "users",
    "appointments",
    "payments",
    "reviews",
    "notifications",
    "cms",
    "settings",
    "support",
    "auth",
    "system",
}

AUDIT_SEVERITIES = {"info", "warning", "critical"}


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)

    # Actor (denormalised so history survives renames/deletes)
    actor_id = Column(Integer, nullable=True, index=True)
    actor_name = Column(String(255), default="")
    actor_role = Column(String(50), default="")

    action = Column(String(100), nullable=False, index=True)
    module = Column(String(30), default="system", nullable=False, index=True)
    severity = Column(String(10), default="info", nullable=False, index=True)
    description = Column(Text, default="")

    target_id = Column(String(64), nullable=True)
    target_model = Column(String(50), nullable=True)
    previous_data = Column(JSON, nullable=True)
    new_data = Column(JSON, nullable=True)

    ip_address = Column(String(64), default="")
    user_agent = Column(String(500), default="")
    method = Column(String(10), nullable=True)
    endpoint = Column(String(500), nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False, index=True)
