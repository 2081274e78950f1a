"""
Audit Trail Recorder

Append-only record of security-relevant actions. Writes are decoupled from
the request: record() only enqueues onto a bounded in-process queue and a
background worker thread persists entries with its own session.

Delivery is best-effort. A full queue or a failed write is logged and the
entry dropped, and entries still queued when the process crashes are lost.
Auditing never fails or delays the operation being audited.
"""

import logging
import queue
import threading
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from .config import AUDIT_QUEUE_SIZE
from .database import SessionLocal
from .models_audit import AUDIT_MODULES, AUDIT_SEVERITIES, AuditLog
from .security_utils import sanitize_log_data

logger = logging.getLogger(__name__)

_STOP = object()


def _jsonable(value: Any) -> Any:
    """Convert snapshot values into JSON column friendly types"""
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _snapshot(data: Optional[dict]) -> Optional[dict]:
    if data is None:
        return None
    return _jsonable(sanitize_log_data(data))


class AuditRecorder:
    """Fire-and-forget sink for AuditLog entries"""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        maxsize: int = AUDIT_QUEUE_SIZE,
    ):
        self.session_factory = session_factory
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._worker: Optional[threading.Thread] = None
        self.dropped = 0
        self._dropped_lock = threading.Lock()

    def _count_drop(self) -> None:
        with self._dropped_lock:
            self.dropped += 1

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._worker and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, name="audit-recorder", daemon=True)
        self._worker.start()
        logger.info("📝 Audit recorder started")

    def stop(self, timeout: float = 5.0) -> None:
        if not self._worker:
            return
        try:
            self._queue.put(_STOP, timeout=timeout)
        except queue.Full:
            logger.warning("⚠️ Audit queue full at shutdown; pending entries may be lost")
        self._worker.join(timeout=timeout)
        self._worker = None
        logger.info("📝 Audit recorder stopped")

    def flush(self) -> int:
        """Write everything currently queued on the calling thread"""
        written = 0
        while True:
            try:
                entry = self._queue.get_nowait()
            except queue.Empty:
                return written
            if entry is not _STOP:
                self._write(entry)
                written += 1
            self._queue.task_done()

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record(
        self,
        action: str,
        module: str = "system",
        severity: str = "info",
        description: str = "",
        actor: Any = None,
        target_id: Any = None,
        target_model: Optional[str] = None,
        previous_data: Optional[dict] = None,
        new_data: Optional[dict] = None,
        request: Optional[Request] = None,
    ) -> bool:
        """
        Queue an audit entry. Returns False when the entry was dropped.

        The actor's id, name and role are copied now so the entry stays
        accurate even if the actor is later renamed or deleted.
        """
        try:
            entry = {
                "actor_id": getattr(actor, "id", None),
                "actor_name": getattr(actor, "full_name", None) or "",
                "actor_role": getattr(actor, "role", None) or "",
                "action": action,
                "module": module if module in AUDIT_MODULES else "system",
                "severity": severity if severity in AUDIT_SEVERITIES else "info",
                "description": description,
                "target_id": str(target_id) if target_id is not None else None,
                "target_model": target_model,
                "previous_data": _snapshot(previous_data),
                "new_data": _snapshot(new_data),
                "ip_address": "",
                "user_agent": "",
                "method": None,
                "endpoint": None,
            }
            if request is not None:
                entry["ip_address"] = request.client.host if request.client else ""
                entry["user_agent"] = request.headers.get("user-agent", "")[:500]
                entry["method"] = request.method
                entry["endpoint"] = str(request.url.path)[:500]
        except Exception as e:
            logger.error(f"❌ Failed to build audit entry for {action}: {e}")
            self._count_drop()
            return False

        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            self._count_drop()
            logger.warning(f"⚠️ Audit queue full, dropping entry: {action} ({module})")
            return False
        return True

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            entry = self._queue.get()
            try:
                if entry is _STOP:
                    return
                self._write(entry)
            finally:
                self._queue.task_done()

    def _write(self, entry: dict) -> None:
        db = self.session_factory()
        try:
            db.add(AuditLog(**entry))
            db.commit()
        except Exception as e:
            db.rollback()
            self._count_drop()
            logger.error(f"❌ Audit log write failed for {entry.get('action')}: {e}")
        finally:
            db.close()


# Singleton instance
audit_recorder = AuditRecorder()


def get_audit_recorder() -> AuditRecorder:
    """Dependency injection for the AuditRecorder"""
    return audit_recorder
