import threading
from decimal import Decimal
from types import SimpleNamespace

from clinicpay.audit import AuditRecorder
from clinicpay.models_audit import AuditLog
from clinicpay.security_utils import REDACTED


def test_record_then_flush_persists_entry(db, audit):
    actor = SimpleNamespace(id=7, full_name="Meera Admin", role="admin")

    assert audit.record(
        action="Payment refunded",
        module="payments",
        severity="warning",
        description="Refunded 500",
        actor=actor,
        target_id=42,
        target_model="Payment",
        previous_data={"status": "completed"},
        new_data={"status": "refunded", "refund_amount": Decimal("500.00")},
    )
    assert audit.flush() == 1

    entry = db.query(AuditLog).one()
    assert entry.actor_id == 7
    assert entry.actor_name == "Meera Admin"
    assert entry.actor_role == "admin"
    assert entry.target_id == "42"
    assert entry.new_data == {"status": "refunded", "refund_amount": "500.00"}


def test_sensitive_snapshot_fields_are_redacted(db, audit):
    audit.record(
        action="Payment signature verification failed",
        module="payments",
        new_data={"razorpay_signature": "abc", "razorpay_payment_id": "pay_1", "razorpay_order_id": "order_1"},
    )
    audit.flush()

    entry = db.query(AuditLog).one()
    assert entry.new_data["razorpay_signature"] == REDACTED
    assert entry.new_data["razorpay_payment_id"] == REDACTED
    assert entry.new_data["razorpay_order_id"] == "order_1"


def test_unknown_module_and_severity_fall_back(db, audit):
    audit.record(action="Something", module="billing", severity="fatal")
    audit.flush()

    entry = db.query(AuditLog).one()
    assert entry.module == "system"
    assert entry.severity == "info"


def test_full_queue_drops_without_raising(session_factory):
    recorder = AuditRecorder(session_factory=session_factory, maxsize=1)

    assert recorder.record(action="first")
    assert not recorder.record(action="second")
    assert recorder.dropped == 1


def test_drop_count_is_exact_under_concurrent_records(session_factory):
    recorder = AuditRecorder(session_factory=session_factory, maxsize=1)
    recorder.record(action="fills the queue")
    threads, per_thread = 8, 200
    barrier = threading.Barrier(threads)

    def flood():
        barrier.wait()
        for _ in range(per_thread):
            recorder.record(action="overflow")

    workers = [threading.Thread(target=flood) for _ in range(threads)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert recorder.dropped == threads * per_thread


def test_write_failure_is_contained(db):
    class BrokenSession:
        def add(self, _):
            raise RuntimeError("disk full")

        def rollback(self):
            pass

        def close(self):
            pass

    recorder = AuditRecorder(session_factory=BrokenSession, maxsize=10)
    recorder.record(action="lost")

    assert recorder.flush() == 1
    assert recorder.dropped == 1


def test_background_worker_writes_entries(db, session_factory):
    recorder = AuditRecorder(session_factory=session_factory, maxsize=10)
    recorder.start()
    try:
        recorder.record(action="Webhook signature rejected", module="payments", severity="warning")
    finally:
        recorder.stop(timeout=5)

    assert db.query(AuditLog).filter(AuditLog.action == "Webhook signature rejected").count() == 1
