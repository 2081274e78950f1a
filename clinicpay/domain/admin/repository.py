"""Admin repository - Reporting queries over payments and the audit trail"""

from datetime import datetime
from typing import Optional

from sqlalchemy import extract, func, or_
from sqlalchemy.orm import Session, joinedload

from ...models_audit import AuditLog
from ...models_payment import Payment, PaymentStatus


class AdminRepository:
    """Read-only queries backing the admin dashboards"""

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    @staticmethod
    def list_payments(
        db: Session,
        page: int,
        limit: int,
        status: Optional[str] = None,
        payment_method: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
    ) -> tuple[list[Payment], int]:
        query = db.query(Payment)
        if status:
            query = query.filter(Payment.status == status)
        if payment_method:
            query = query.filter(Payment.payment_method == payment_method)
        if start_date:
            query = query.filter(Payment.created_at >= start_date)
        if end_date:
            query = query.filter(Payment.created_at <= end_date)
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(
                    Payment.gateway_order_id.ilike(pattern),
                    Payment.gateway_payment_id.ilike(pattern),
                    Payment.refund_transaction_id.ilike(pattern),
                )
            )

        total = query.count()
        payments = (
            query.options(
                joinedload(Payment.patient),
                joinedload(Payment.doctor),
                joinedload(Payment.appointment),
            )
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return payments, total

    @staticmethod
    def completed_totals(db: Session):
        return (
            db.query(
                func.coalesce(func.sum(Payment.amount), 0),
                func.coalesce(func.sum(Payment.platform_commission), 0),
                func.coalesce(func.sum(Payment.doctor_earning), 0),
                func.coalesce(func.sum(Payment.online_payment_fee), 0),
                func.count(Payment.id),
            )
            .filter(Payment.status == PaymentStatus.COMPLETED.value)
            .one()
        )

    @staticmethod
    def status_totals(db: Session, status: str):
        return (
            db.query(func.coalesce(func.sum(Payment.amount), 0), func.count(Payment.id))
            .filter(Payment.status == status)
            .one()
        )

    @staticmethod
    def monthly_revenue(db: Session, since: datetime):
        month = extract("month", Payment.created_at)
        return (
            db.query(
                month,
                func.coalesce(func.sum(Payment.amount), 0),
                func.coalesce(func.sum(Payment.platform_commission), 0),
                func.count(Payment.id),
            )
            .filter(Payment.status == PaymentStatus.COMPLETED.value, Payment.created_at >= since)
            .group_by(month)
            .order_by(month)
            .all()
        )

    @staticmethod
    def revenue_by_method(db: Session):
        return (
            db.query(Payment.payment_method, func.coalesce(func.sum(Payment.amount), 0), func.count(Payment.id))
            .filter(Payment.status == PaymentStatus.COMPLETED.value)
            .group_by(Payment.payment_method)
            .all()
        )

    @staticmethod
    def recent_refunds(db: Session, limit: int = 10) -> list[Payment]:
        return (
            db.query(Payment)
            .options(joinedload(Payment.patient), joinedload(Payment.doctor))
            .filter(Payment.status == PaymentStatus.REFUNDED.value)
            .order_by(Payment.refunded_at.desc())
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------
    # Audit trail
    # ------------------------------------------------------------------

    @staticmethod
    def list_audit_logs(
        db: Session,
        page: int,
        limit: int,
        module: Optional[str] = None,
        action: Optional[str] = None,
        severity: Optional[str] = None,
        actor_id: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> tuple[list[AuditLog], int]:
        query = db.query(AuditLog)
        if module:
            query = query.filter(AuditLog.module == module)
        if action:
            query = query.filter(AuditLog.action.ilike(f"%{action}%"))
        if severity:
            query = query.filter(AuditLog.severity == severity)
        if actor_id is not None:
            query = query.filter(AuditLog.actor_id == actor_id)
        if start_date:
            query = query.filter(AuditLog.created_at >= start_date)
        if end_date:
            query = query.filter(AuditLog.created_at <= end_date)

        total = query.count()
        logs = (
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return logs, total

    @staticmethod
    def count_audit_logs(db: Session, since: Optional[datetime] = None, severity: Optional[str] = None) -> int:
        query = db.query(func.count(AuditLog.id))
        if since:
            query = query.filter(AuditLog.created_at >= since)
        if severity:
            query = query.filter(AuditLog.severity == severity)
        return query.scalar() or 0

    @staticmethod
    def audit_counts_by(db: Session, column) -> list[tuple[str, int]]:
        return db.query(column, func.count(AuditLog.id)).group_by(column).all()
