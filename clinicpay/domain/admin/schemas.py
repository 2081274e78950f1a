"""Admin domain schemas - Pydantic models for list responses"""

import math
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel


class Pagination(BaseModel):
    currentPage: int
    totalPages: int
    total: int
    limit: int
    hasNext: bool
    hasPrev: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = math.ceil(total / limit) if limit else 0
        return cls(
            currentPage=page,
            totalPages=total_pages,
            total=total,
            limit=limit,
            hasNext=page < total_pages,
            hasPrev=page > 1,
        )


class AuditLogResponse(BaseModel):
    id: int
    actorId: Optional[int] = None
    actorName: str = ""
    actorRole: str = ""
    action: str
    module: str
    severity: str
    description: str = ""
    targetId: Optional[str] = None
    targetModel: Optional[str] = None
    previousData: Optional[dict[str, Any]] = None
    newData: Optional[dict[str, Any]] = None
    ipAddress: str = ""
    userAgent: str = ""
    method: Optional[str] = None
    endpoint: Optional[str] = None
    createdAt: Optional[datetime] = None

    @classmethod
    def from_model(cls, log) -> "AuditLogResponse":
        return cls(
            id=log.id,
            actorId=log.actor_id,
            actorName=log.actor_name or "",
            actorRole=log.actor_role or "",
            action=log.action,
            module=log.module,
            severity=log.severity,
            description=log.description or "",
            targetId=log.target_id,
            targetModel=log.target_model,
            previousData=log.previous_data,
            newData=log.new_data,
            ipAddress=log.ip_address or "",
            userAgent=log.user_agent or "",
            method=log.method,
            endpoint=log.endpoint,
            createdAt=log.created_at,
        )
