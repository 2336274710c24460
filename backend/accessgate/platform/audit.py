"""
Audit logging for the authorization engine.

REQUIREMENTS:
- Audit rows are append-only (no UPDATE/DELETE)
- Every grant, revocation and lifecycle event writes an audit row
- Denied decisions write a row when AUDIT_DENIALS is on
- PII fields in metadata are redacted before persistence
- Failed audit writes on the decision path fall back to a secondary logger

Write modes:
- record_audit_event(): adds the row to the caller's session without
  committing, so a mutation and its audit row commit or roll back together.
- write_audit_log_sync(): commits the given session immediately.
- write_audit_log_isolated(): commits through a separate session on the
  caller's bind; used for denials and decision failures, which must leave
  the caller's pending work untouched.
"""

import csv
import io
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, FrozenSet, Optional

from fastapi import Request
from sqlalchemy import Column, String, DateTime, Text, Index, JSON, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from accessgate.db_base import Base

# Use JSON with PostgreSQL variant for JSONB - allows SQLite in tests
JSONType = JSON().with_variant(JSONB(), "postgresql")

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("audit.fallback")


class AuditAction(str, Enum):
    """Enumeration of all auditable actions."""

    # Role & permission store
    ROLE_CREATED = "rbac.role_created"
    ROLE_PERMISSIONS_UPDATED = "rbac.role_permissions_updated"
    ROLE_DELETED = "rbac.role_deleted"
    ROLE_ASSIGNED = "rbac.role_assigned"
    ROLE_REVOKED = "rbac.role_revoked"
    DEFAULT_ROLES_PROVISIONED = "rbac.default_roles_provisioned"
    CATALOG_SEEDED = "rbac.catalog_seeded"

    # Delegation
    DELEGATION_CREATED = "delegation.created"
    DELEGATION_REVOKED = "delegation.revoked"
    DELEGATION_EXPIRED = "delegation.expired"

    # Entitlements
    FEATURE_GRANTED = "entitlement.feature_granted"
    FEATURE_REVOKED = "entitlement.feature_revoked"
    PLAN_FEATURES_GRANTED = "entitlement.plan_features_granted"
    PLAN_FEATURES_WITHDRAWN = "entitlement.plan_features_withdrawn"

    # License lifecycle
    LIFECYCLE_EVENT_APPLIED = "lifecycle.event_applied"
    LIFECYCLE_EVENT_STALE = "lifecycle.event_stale"
    LIFECYCLE_EVENT_REJECTED = "lifecycle.event_rejected"

    # Decisions
    ACCESS_DENIED = "access.denied"
    ACCESS_CHECK_FAILED = "access.check_failed"


class AuditOutcome(str, Enum):
    """Outcome of the audited action."""
    SUCCESS = "success"
    FAILURE = "failure"
    DENIED = "denied"


class PIIRedactor:
    """
    Redacts PII fields from audit metadata before persistence.

    Redacted fields are replaced with "[REDACTED]" to keep the structure
    while removing the sensitive value.
    """

    REDACTED_FIELDS: FrozenSet[str] = frozenset({
        "email",
        "phone",
        "phone_number",
        "token",
        "access_token",
        "refresh_token",
        "authorization",
        "api_key",
        "password",
        "secret",
        "credential",
        "credentials",
        "ssn",
        "tax_id",
        "card_number",
        "bank_account",
        "routing_number",
        "street_address",
    })

    REDACTION_MARKER = "[REDACTED]"

    @classmethod
    def redact(cls, data: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
        """Recursively redact PII from a dictionary."""
        if not isinstance(data, dict):
            return data
        return cls._redact_dict(data)

    @classmethod
    def _redact_dict(cls, d: dict[str, Any]) -> dict[str, Any]:
        result = {}
        for key, value in d.items():
            lower_key = key.lower()
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
        # Keep the domain of email addresses
        if key == "email" and isinstance(value, str) and "@" in value:
            return f"***@{value.split('@', 1)[1]}"
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


class AuditLog(Base):
    """
    Audit log database model.

    This table is append-only. No UPDATE or DELETE operations are issued
    by the engine.
    """
    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(255), nullable=False, index=True)  # "*" for global events
    user_id = Column(String(255), nullable=True, index=True)  # NULL for system events
    action = Column(String(100), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    resource_type = Column(String(100), nullable=True, index=True)
    resource_id = Column(String(255), nullable=True, index=True)
    before_state = Column(JSONType, nullable=True)
    after_state = Column(JSONType, nullable=True)
    event_metadata = Column(JSONType, nullable=False, default=dict)
    correlation_id = Column(String(36), nullable=False, index=True)
    source = Column(String(50), nullable=False, default="api")  # api, worker, system, webhook
    outcome = Column(String(20), nullable=False, default="success")  # success, failure, denied
    error_code = Column(String(50), nullable=True)

    __table_args__ = (
        Index("ix_audit_logs_tenant_timestamp", "tenant_id", "timestamp"),
        Index("ix_audit_logs_tenant_action", "tenant_id", "action"),
        Index("ix_audit_logs_tenant_user", "tenant_id", "user_id"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "action": self.action,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "before_state": self.before_state,
            "after_state": self.after_state,
            "metadata": self.event_metadata,
            "source": self.source,
            "outcome": self.outcome,
            "error_code": self.error_code,
            "correlation_id": self.correlation_id,
        }


@dataclass
class AuditEvent:
    """
    Audit event data structure.

    PII in metadata and state snapshots is redacted before persistence.
    """
    tenant_id: str
    action: AuditAction
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[dict[str, Any]] = None
    after_state: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = "api"
    outcome: AuditOutcome = AuditOutcome.SUCCESS
    error_code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for database insertion with PII redaction."""
        return {
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "action": self.action.value if isinstance(self.action, AuditAction) else self.action,
            "timestamp": self.timestamp,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "before_state": PIIRedactor.redact(self.before_state),
            "after_state": PIIRedactor.redact(self.after_state),
            "event_metadata": PIIRedactor.redact(self.metadata),
            "correlation_id": self.correlation_id or str(uuid.uuid4()),
            "source": self.source,
            "outcome": self.outcome.value if isinstance(self.outcome, AuditOutcome) else self.outcome,
            "error_code": self.error_code,
        }


def get_correlation_id(request: Request) -> Optional[str]:
    """Get correlation ID from request state or headers."""
    if hasattr(request.state, "correlation_id"):
        return request.state.correlation_id
    return request.headers.get("X-Correlation-ID")


def record_audit_event(db: Session, event: AuditEvent) -> AuditLog:
    """
    Add an audit row to the current transaction without committing.

    The caller commits (or rolls back) the row together with the mutation
    it describes.
    """
    audit_log = AuditLog(id=str(uuid.uuid4()), **event.to_dict())
    db.add(audit_log)
    logger.debug(
        "audit.recorded",
        extra={
            "audit_id": audit_log.id,
            "tenant_id": event.tenant_id,
            "action": audit_log.action,
        },
    )
    return audit_log


def write_audit_log_sync(
    db: Session,
    event: AuditEvent,
) -> Optional[AuditLog]:
    """
    Write an audit event and commit it immediately.

    On failure, writes to the fallback logger and returns None; it never
    raises into the decision path.
    """
    audit_id = str(uuid.uuid4())
    try:
        audit_log = AuditLog(id=audit_id, **event.to_dict())
        db.add(audit_log)
        db.commit()

        logger.info(
            "audit.recorded",
            extra={
                "audit_id": audit_id,
                "tenant_id": event.tenant_id,
                "user_id": event.user_id,
                "action": audit_log.action,
                "outcome": audit_log.outcome,
                "source": event.source,
            },
        )
        return audit_log

    except Exception as e:
        try:
            db.rollback()
        except Exception as rollback_error:
            logger.warning(
                "audit.rollback_failed",
                extra={"audit_id": audit_id, "error": str(rollback_error)},
            )
        _write_fallback_log(event, audit_id, str(e))
        return None


def write_audit_log_isolated(
    db: Session,
    event: AuditEvent,
) -> Optional[AuditLog]:
    """
    Write an audit event through its own session on db's bind.

    db itself is never flushed, committed or rolled back. When db is bound
    to a Connection with an open transaction, the row is written inside a
    SAVEPOINT on that connection instead of a new transaction.
    """
    try:
        bind = db.get_bind()
    except SQLAlchemyError as e:
        _write_fallback_log(event, str(uuid.uuid4()), str(e))
        return None

    with Session(
        bind=bind,
        autoflush=False,
        expire_on_commit=False,
        join_transaction_mode="create_savepoint",
    ) as audit_db:
        return write_audit_log_sync(audit_db, event)


def _write_fallback_log(event: AuditEvent, audit_id: str, error_reason: str) -> None:
    """Write audit event to fallback logger when the primary DB write fails."""
    fallback_entry = {
        "event_id": audit_id,
        "tenant_id": event.tenant_id,
        "user_id": event.user_id,
        "action": event.action.value if isinstance(event.action, AuditAction) else event.action,
        "timestamp": event.timestamp.isoformat(),
        "correlation_id": event.correlation_id,
        "source": event.source,
        "outcome": event.outcome.value if isinstance(event.outcome, AuditOutcome) else event.outcome,
        "resource_type": event.resource_type,
        "resource_id": event.resource_id,
        "metadata": PIIRedactor.redact(event.metadata),
        "error_code": event.error_code,
        "fallback_reason": error_reason,
    }
    fallback_logger.error(
        "Audit log fallback",
        extra={"audit_entry": json.dumps(fallback_entry, default=str)},
    )


# =============================================================================
# Audit export
# =============================================================================


class AuditExportFormat(str, Enum):
    CSV = "csv"
    JSON = "json"


@dataclass
class AuditQuery:
    """Filters for an audit export. tenant_id is mandatory."""
    tenant_id: str
    user_id: Optional[str] = None
    actions: Optional[list[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


class AuditExportService:
    """
    Read-only query interface over the audit log.

    Usage:
        service = AuditExportService(db)
        rows = service.query_audit_logs(AuditQuery(tenant_id="t1", user_id="u1"))
        body = service.format_csv(rows)
    """

    MAX_PAGE_SIZE = 1000

    def __init__(self, db: Session):
        self.db = db

    def _filtered(self, query, params: AuditQuery):
        query = query.filter(AuditLog.tenant_id == params.tenant_id)
        if params.start_date:
            query = query.filter(AuditLog.timestamp >= params.start_date)
        if params.end_date:
            query = query.filter(AuditLog.timestamp <= params.end_date)
        if params.actions:
            query = query.filter(AuditLog.action.in_(params.actions))
        if params.user_id:
            query = query.filter(AuditLog.user_id == params.user_id)
        return query

    def query_audit_logs(self, params: AuditQuery) -> list[AuditLog]:
        limit = max(1, min(params.limit, self.MAX_PAGE_SIZE))
        query = self._filtered(self.db.query(AuditLog), params)
        query = query.order_by(AuditLog.timestamp.desc(), AuditLog.id)
        return query.offset(max(0, params.offset)).limit(limit).all()

    def count_audit_logs(self, params: AuditQuery) -> int:
        query = self._filtered(self.db.query(func.count(AuditLog.id)), params)
        return query.scalar() or 0

    def format_csv(self, logs: list[AuditLog]) -> str:
        output = io.StringIO()
        writer = csv.writer(output)

        headers = [
            "id", "timestamp", "tenant_id", "user_id", "action",
            "resource_type", "resource_id", "source", "outcome",
            "error_code", "correlation_id", "before_state", "after_state", "metadata",
        ]
        writer.writerow(headers)

        for log in logs:
            writer.writerow([
                log.id,
                log.timestamp.isoformat() if log.timestamp else "",
                log.tenant_id,
                log.user_id or "",
                log.action,
                log.resource_type or "",
                log.resource_id or "",
                log.source,
                log.outcome,
                log.error_code or "",
                log.correlation_id,
                json.dumps(log.before_state) if log.before_state is not None else "",
                json.dumps(log.after_state) if log.after_state is not None else "",
                json.dumps(log.event_metadata or {}),
            ])

        return output.getvalue()

    def format_json(self, logs: list[AuditLog]) -> str:
        records = [log.to_dict() for log in logs]
        return json.dumps({"audit_logs": records, "count": len(records)}, indent=2)
