"""
Audit trail for access decisions.

REQUIREMENTS:
- The access_audit_logs table is append-only (no UPDATE/DELETE)
- Every DENY and every feature-scoped ALLOW writes exactly one record
- Public-route allows write nothing
- PII in the context payload is redacted before persistence
- A failed database write falls back to the "audit.fallback" logger and
  never breaks the request

Provides:
- AuditRecord: the record built by the route guard
- AuditSink implementations: database, logging, background queue
- record_admin_action / record_compliance_check helpers for admin and
  compliance endpoints
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from queue import Empty, Full, Queue
from threading import Lock
from typing import Any, Callable, FrozenSet, Optional

from sqlalchemy import Column, DateTime, Index, String, Text
from sqlalchemy.orm import Session

from pew_access.db_base import Base
from pew_access.models.base import JSONType, generate_uuid, utcnow

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("audit.fallback")
access_logger = logging.getLogger("audit.access")


class AuditEventType(str, Enum):
    ACCESS_DECISION = "access_decision"
    COMPLIANCE_CHECK = "compliance_check"
    ADMIN_ACTION = "admin_action"
    SECURITY_EVENT = "security_event"


class AuditResult(str, Enum):
    ALLOWED = "ALLOWED"
    DENIED = "DENIED"


class PIIRedactor:
    """
    Redacts PII fields from audit context before persistence.

    Redacted fields are replaced with "[REDACTED]" so the payload keeps
    its shape.
    """

    REDACTED_FIELDS: FrozenSet[str] = frozenset({
        "email",
        "phone",
        "phone_number",
        "password",
        "token",
        "access_token",
        "refresh_token",
        "session_id",
        "api_key",
        "secret",
        "date_of_birth",
        "national_id",
        "passport_number",
        "card_number",
        "iban",
        "bank_account",
        "wallet_address",
        "seed_phrase",
    })

    REDACTION_MARKER = "[REDACTED]"

    @classmethod
    def redact(cls, data: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(data, dict):
            return data
        return cls._redact_dict(data)

    @classmethod
    def _redact_dict(cls, d: dict[str, Any]) -> dict[str, Any]:
        result = {}
        for key, value in d.items():
            lower_key = str(key).lower()
            if lower_key in cls.REDACTED_FIELDS:
                result[key] = cls._redact_value(lower_key, value)
            elif isinstance(value, dict):
                result[key] = cls._redact_dict(value)
            elif isinstance(value, list):
                result[key] = cls._redact_list(value)
            else:
                result[key] = value
        return result

    @classmethod
    def _redact_value(cls, key: str, value: Any) -> str:
        # Keep the email domain and the last 4 phone digits for support triage
        if key == "email" and isinstance(value, str) and "@" in value:
            return f"***@{value.split('@', 1)[1]}"
        if key in ("phone", "phone_number") and value:
            str_val = str(value)
            if len(str_val) >= 4:
                return f"***{str_val[-4:]}"
        return cls.REDACTION_MARKER

    @classmethod
    def _redact_list(cls, lst: list[Any]) -> list[Any]:
        result = []
        for item in lst:
            if isinstance(item, dict):
                result.append(cls._redact_dict(item))
            elif isinstance(item, list):
                result.append(cls._redact_list(item))
            else:
                result.append(item)
        return result


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class AccessAuditLog(Base):
    """
    Audit log row.

    CRITICAL: append-only. Rows are inserted, never updated or deleted.
    """

    __tablename__ = "access_audit_logs"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    type = Column(String(50), nullable=False)
    user_id = Column(String(255), nullable=True)
    feature = Column(String(255), nullable=True)
    result = Column(String(20), nullable=False)
    reason = Column(String(100), nullable=True)
    context = Column(JSONType, nullable=False, default=dict)
    policies = Column(JSONType, nullable=False, default=list)
    ip = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    country = Column(String(2), nullable=True)
    region = Column(String(32), nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_access_audit_logs_user_timestamp", "user_id", "timestamp"),
        Index("ix_access_audit_logs_feature_result", "feature", "result"),
        Index("ix_access_audit_logs_type", "type"),
    )


@dataclass
class AuditRecord:
    """
    One audit entry, built at decision time.

    The timestamp is fixed when the record is built, so a record written
    later from the background queue still carries the decision time.
    """
    result: AuditResult
    type: AuditEventType = AuditEventType.ACCESS_DECISION
    user_id: Optional[str] = None
    feature: Optional[str] = None
    reason: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)
    policies: list[str] = field(default_factory=list)
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=generate_uuid)

    def to_dict(self) -> dict[str, Any]:
        """Column values with PII redacted from the context."""
        return {
            "id": self.id,
            "type": self.type.value,
            "user_id": self.user_id,
            "feature": self.feature,
            "result": self.result.value,
            "reason": self.reason,
            "context": _json_safe(PIIRedactor.redact(self.context)),
            "policies": list(self.policies),
            "ip": self.ip,
            "user_agent": self.user_agent,
            "country": self.country,
            "region": self.region,
            "timestamp": self.timestamp,
        }


def _write_fallback_log(record: AuditRecord, error_reason: str) -> None:
    entry = record.to_dict()
    entry["timestamp"] = record.timestamp.isoformat()
    entry["fallback_reason"] = error_reason
    fallback_logger.error(
        "Audit log fallback",
        extra={"audit_entry": json.dumps(entry, default=str)},
    )


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------

class AuditSink:
    """Accepts audit records. write() must never raise."""

    def write(self, record: AuditRecord) -> None:
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    """Structured-log sink for deployments without an audit table."""

    def write(self, record: AuditRecord) -> None:
        entry = record.to_dict()
        entry["timestamp"] = record.timestamp.isoformat()
        access_logger.info(
            record.type.value,
            extra={"audit_data": entry},
        )


class DatabaseAuditSink(AuditSink):
    """Inserts into access_audit_logs. Falls back to audit.fallback on failure."""

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def write(self, record: AuditRecord) -> None:
        session = None
        try:
            session = self._session_factory()
            session.add(AccessAuditLog(**record.to_dict()))
            session.commit()
            logger.debug(
                "Audit record written",
                extra={"audit_id": record.id, "result": record.result.value},
            )
        except Exception as e:
            if session is not None:
                try:
                    session.rollback()
                except Exception:
                    logger.debug("Rollback after audit failure also failed", exc_info=True)
            _write_fallback_log(record, str(e))
        finally:
            if session is not None:
                session.close()


class AsyncAuditWriter(AuditSink):
    """
    Non-blocking audit writer.

    Records go onto a bounded queue drained by a daemon thread into the
    wrapped sink. When the queue is full the record is written inline.
    """

    def __init__(self, sink: AuditSink, max_queue_size: int = 10000):
        self._sink = sink
        self._queue: Queue = Queue(maxsize=max_queue_size)
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._lock = Lock()

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            self._thread = threading.Thread(
                target=self._process_queue, name="audit-writer", daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        """Stop the thread after draining what is already queued."""
        with self._lock:
            self._running = False
            if self._thread:
                self._thread.join(timeout=5.0)
                self._thread = None

    def write(self, record: AuditRecord) -> None:
        if not self._running:
            self._sink.write(record)
            return
        try:
            self._queue.put_nowait(record)
        except Full:
            logger.warning("Audit queue full, writing synchronously", extra={"audit_id": record.id})
            self._sink.write(record)

    def flush(self, timeout: float = 5.0) -> None:
        """Block until every queued record has been handed to the sink."""
        with self._queue.all_tasks_done:
            if self._queue.unfinished_tasks:
                self._queue.all_tasks_done.wait(timeout)

    def _process_queue(self) -> None:
        while self._running or not self._queue.empty():
            try:
                record = self._queue.get(timeout=0.5)
            except Empty:
                continue
            try:
                self._sink.write(record)
            except Exception as e:
                _write_fallback_log(record, str(e))
            finally:
                self._queue.task_done()


def build_audit_sink(settings=None, session_factory: Optional[Callable[[], Session]] = None) -> AuditSink:
    """
    Default sink for the app: database when a session factory is available,
    structured logging otherwise, wrapped in AsyncAuditWriter if enabled.
    """
    from pew_access.config.settings import AccessControlSettings

    settings = settings or AccessControlSettings.from_env()
    sink: AuditSink
    if session_factory is not None:
        sink = DatabaseAuditSink(session_factory)
    else:
        sink = LoggingAuditSink()
    if settings.audit_async:
        writer = AsyncAuditWriter(sink, max_queue_size=settings.audit_queue_size)
        writer.start()
        return writer
    return sink


# ---------------------------------------------------------------------------
# Helpers for non-guard audit events
# ---------------------------------------------------------------------------

def record_admin_action(
    sink: AuditSink,
    admin_id: str,
    action: str,
    target: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AuditRecord:
    record = AuditRecord(
        type=AuditEventType.ADMIN_ACTION,
        result=AuditResult.ALLOWED,
        user_id=admin_id,
        feature=target,
        reason=action,
        context=dict(details or {}),
        ip=ip,
        user_agent=user_agent,
    )
    sink.write(record)
    return record


def record_compliance_check(
    sink: AuditSink,
    user_id: Optional[str],
    feature: str,
    allowed: bool,
    restrictions: list[str],
    country: Optional[str] = None,
    region: Optional[str] = None,
    ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AuditRecord:
    record = AuditRecord(
        type=AuditEventType.COMPLIANCE_CHECK,
        result=AuditResult.ALLOWED if allowed else AuditResult.DENIED,
        user_id=user_id,
        feature=feature,
        reason=None if allowed else "compliance_restricted",
        context={"restrictions": list(restrictions)},
        ip=ip,
        user_agent=user_agent,
        country=country,
        region=region,
    )
    sink.write(record)
    return record
