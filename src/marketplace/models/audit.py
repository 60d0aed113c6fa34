"""Audit and security models.

AuditEvent is the immutable record of a domain mutation. Each event is
chained to its predecessor: event_hash covers the canonical JSON of the
event plus the previous event's hash, so editing or removing any record
breaks every hash after it.

SecurityEvent is a derived anomaly signal over the audit stream. A
CRITICAL risk level triggers suspension of the subject actor.
"""

from __future__ import annotations

import enum
import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

GENESIS_HASH = "sha256:" + "0" * 64


class Severity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Category(str, enum.Enum):
    AUTH = "auth"
    FINANCIAL = "financial"
    ADMIN = "admin"
    SECURITY = "security"
    USER = "user"
    SYSTEM = "system"


class RiskLevel(str, enum.Enum):
    """Risk tier of a security event. CRITICAL triggers containment."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class SecurityEventType(str, enum.Enum):
    LOGIN_ATTEMPT = "login_attempt"
    FAILED_LOGIN = "failed_login"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    DATA_BREACH = "data_breach"
    UNAUTHORIZED_ACCESS = "unauthorized_access"


def canonical_hash(payload: dict[str, Any]) -> str:
    """SHA-256 over sorted-key JSON, prefixed with the algorithm name."""
    canonical = json.dumps(
        payload, sort_keys=True, ensure_ascii=False, default=str,
    ).encode("utf-8")
    return f"sha256:{hashlib.sha256(canonical).hexdigest()}"


@dataclass(frozen=True)
class AuditEvent:
    """A single immutable audit record.

    actor_id is None for system actions. before/after are already
    redacted when the event is built.
    """
    event_id: str
    action: str
    actor_id: Optional[str]
    resource_type: str
    resource_id: Optional[str]
    severity: Severity
    category: Category
    success: bool
    timestamp_utc: datetime
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    previous_hash: str = GENESIS_HASH
    event_hash: str = ""

    def hash_payload(self) -> dict[str, Any]:
        """The fields covered by event_hash."""
        return {
            "event_id": self.event_id,
            "action": self.action,
            "actor_id": self.actor_id,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "severity": self.severity.value,
            "category": self.category.value,
            "success": self.success,
            "timestamp_utc": self.timestamp_utc.isoformat(),
            "before": self.before,
            "after": self.after,
            "metadata": self.metadata,
            "error_message": self.error_message,
            "previous_hash": self.previous_hash,
        }

    def compute_hash(self) -> str:
        return canonical_hash(self.hash_payload())

    def to_dict(self) -> dict[str, Any]:
        data = self.hash_payload()
        data["event_hash"] = self.event_hash
        return data

    @staticmethod
    def from_dict(data: dict[str, Any]) -> AuditEvent:
        ts = datetime.fromisoformat(data["timestamp_utc"])
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        return AuditEvent(
            event_id=data["event_id"],
            action=data["action"],
            actor_id=data.get("actor_id"),
            resource_type=data["resource_type"],
            resource_id=data.get("resource_id"),
            severity=Severity(data["severity"]),
            category=Category(data["category"]),
            success=data["success"],
            timestamp_utc=ts,
            before=data.get("before"),
            after=data.get("after"),
            metadata=data.get("metadata") or {},
            error_message=data.get("error_message"),
            previous_hash=data["previous_hash"],
            event_hash=data["event_hash"],
        )


@dataclass
class SecurityEvent:
    """An anomaly raised by the detector.

    ``fingerprint`` identifies the rule + subject so the same anomaly is
    not raised twice inside its detection window.
    """
    security_event_id: str
    type: SecurityEventType
    subject_actor_id: Optional[str]
    risk_level: RiskLevel
    details: dict[str, Any] = field(default_factory=dict)
    fingerprint: str = ""
    source_event_id: Optional[str] = None
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_utc: Optional[datetime] = None
    actions: list[str] = field(default_factory=list)
    timestamp_utc: Optional[datetime] = None


@dataclass(frozen=True)
class AuditReport:
    """Summary of audit activity over a date range."""
    report_id: str
    period: str
    generated_utc: datetime
    total_events: int
    events_by_category: dict[str, int]
    events_by_severity: dict[str, int]
    top_actors: list[tuple[str, int]]
    security_events: int
    trends: dict[str, Any]
    recommendations: list[str]
