"""Admin service - Payment reporting and audit trail browsing"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException
from sqlalchemy.orm import Session

from ...models_audit import AUDIT_MODULES, AUDIT_SEVERITIES, AuditLog
from ...models_payment import PAYMENT_METHODS, PaymentStatus
from ..payments.service import money, serialize_payment
from .repository import AdminRepository
from .schemas import AuditLogResponse, Pagination

logger = logging.getLogger(__name__)

MONTH_NAMES = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]
PAYMENT_STATUSES = {s.value for s in PaymentStatus}


def parse_date(value: Optional[str], field: str) -> Optional[datetime]:
    """Accept ISO dates or datetimes from query strings"""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid {field}") from None


def _total(value) -> float:
    return money(Decimal(str(value or 0)))


class AdminService:
    def __init__(self, db: Session):
        self.db = db

    def list_payments(
        self,
        page: int,
        limit: int,
        status: Optional[str] = None,
        payment_method: Optional[str] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        search: Optional[str] = None,
    ) -> dict:
        if status and status not in PAYMENT_STATUSES:
            raise HTTPException(status_code=400, detail="Invalid status filter")
        if payment_method and payment_method not in PAYMENT_METHODS:
            raise HTTPException(status_code=400, detail="Invalid payment method filter")

        payments, total = AdminRepository.list_payments(
            self.db,
            page,
            limit,
            status=status,
            payment_method=payment_method,
            start_date=parse_date(start_date, "startDate"),
            end_date=parse_date(end_date, "endDate"),
            search=search.strip() if search else None,
        )

        items = []
        for payment in payments:
            item = serialize_payment(payment)
            item["patient"] = (
                {"fullName": payment.patient.full_name, "email": payment.patient.email} if payment.patient else None
            )
            item["doctor"] = (
                {
                    "fullName": payment.doctor.full_name,
                    "email": payment.doctor.email,
                    "specialization": payment.doctor.specialization,
                }
                if payment.doctor
                else None
            )
            items.append(item)

        return {"payments": items, "pagination": Pagination.build(page, limit, total).model_dump()}

    def revenue_overview(self) -> dict:
        gross, commission, doctor_earnings, online_fees, count = AdminRepository.completed_totals(self.db)
        pending_total, pending_count = AdminRepository.status_totals(self.db, PaymentStatus.PENDING.value)
        failed_total, failed_count = AdminRepository.status_totals(self.db, PaymentStatus.FAILED.value)
        year_start = datetime(datetime.utcnow().year, 1, 1)

        return {
            "overview": {
                "grossRevenue": _total(gross),
                "platformCommission": _total(commission),
                "doctorEarnings": _total(doctor_earnings),
                "onlineFees": _total(online_fees),
                "totalTransactions": count,
            },
            "pending": {"total": _total(pending_total), "count": pending_count},
            "failed": {"total": _total(failed_total), "count": failed_count},
            "monthlyRevenue": [
                {
                    "month": MONTH_NAMES[int(month) - 1],
                    "revenue": _total(revenue),
                    "commission": _total(month_commission),
                    "count": month_count,
                }
                for month, revenue, month_commission, month_count in AdminRepository.monthly_revenue(
                    self.db, year_start
                )
            ],
            "byMethod": [
                {"method": method or "other", "total": _total(method_total), "count": method_count}
                for method, method_total, method_count in AdminRepository.revenue_by_method(self.db)
            ],
            "recentRefunds": [
                {
                    **serialize_payment(p),
                    "patient": {"fullName": p.patient.full_name, "email": p.patient.email} if p.patient else None,
                    "doctor": {"fullName": p.doctor.full_name} if p.doctor else None,
                }
                for p in AdminRepository.recent_refunds(self.db)
            ],
        }

    def list_audit_logs(
        self,
        page: int,
        limit: int,
        module: Optional[str] = None,
        action: Optional[str] = None,
        severity: Optional[str] = None,
        actor_id: Optional[int] = None,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
    ) -> dict:
        if module and module not in AUDIT_MODULES:
            raise HTTPException(status_code=400, detail="Invalid module filter")
        if severity and severity not in AUDIT_SEVERITIES:
            raise HTTPException(status_code=400, detail="Invalid severity filter")

        logs, total = AdminRepository.list_audit_logs(
            self.db,
            page,
            limit,
            module=module,
            action=action.strip() if action else None,
            severity=severity,
            actor_id=actor_id,
            start_date=parse_date(start_date, "startDate"),
            end_date=parse_date(end_date, "endDate"),
        )
        return {
            "logs": [AuditLogResponse.from_model(log).model_dump(mode="json") for log in logs],
            "pagination": Pagination.build(page, limit, total).model_dump(),
        }

    def security_overview(self) -> dict:
        now = datetime.utcnow()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        return {
            "totalLogs": AdminRepository.count_audit_logs(self.db),
            "todayLogs": AdminRepository.count_audit_logs(self.db, since=today),
            "criticalLogs": AdminRepository.count_audit_logs(self.db, severity="critical"),
            "weekLogs": AdminRepository.count_audit_logs(self.db, since=now - timedelta(days=7)),
            "byModule": {
                module: count for module, count in AdminRepository.audit_counts_by(self.db, AuditLog.module)
            },
            "bySeverity": {
                severity: count for severity, count in AdminRepository.audit_counts_by(self.db, AuditLog.severity)
            },
        }
