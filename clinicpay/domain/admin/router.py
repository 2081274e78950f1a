"""Admin router - Payment reporting and security endpoints"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import require_admin
from ...database import get_db
from ...models import User
from .service import AdminService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


def get_admin_service(db: Session = Depends(get_db)) -> AdminService:
    """Dependency injection for AdminService"""
    return AdminService(db)


# ============================================================================
# PAYMENTS
# ============================================================================


@router.get("/payments")
async def list_payments(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = Query(None),
    paymentMethod: Optional[str] = Query(None),
    startDate: Optional[str] = Query(None),
    endDate: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    current_user: User = Depends(require_admin),
    service: AdminService = Depends(get_admin_service),
):
    """All payments, newest first, with filters and pagination"""
    data = service.list_payments(page, limit, status, paymentMethod, startDate, endDate, search)
    return {"success": True, "data": data}


@router.get("/payments/revenue")
async def revenue_dashboard(
    current_user: User = Depends(require_admin),
    service: AdminService = Depends(get_admin_service),
):
    """Revenue overview for completed payments"""
    return {"success": True, "data": service.revenue_overview()}


# ============================================================================
# SECURITY / AUDIT TRAIL
# ============================================================================


@router.get("/security/logs")
async def list_audit_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    module: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    adminId: Optional[int] = Query(None),
    startDate: Optional[str] = Query(None),
    endDate: Optional[str] = Query(None),
    current_user: User = Depends(require_admin),
    service: AdminService = Depends(get_admin_service),
):
    """Audit log entries, newest first"""
    data = service.list_audit_logs(page, limit, module, action, severity, adminId, startDate, endDate)
    return {"success": True, "data": data}


@router.get("/security/overview")
async def security_overview(
    current_user: User = Depends(require_admin),
    service: AdminService = Depends(get_admin_service),
):
    """Audit trail counts for the security dashboard"""
    return {"success": True, "data": service.security_overview()}
