"""Audit event recorder — turns committed mutations into audit records.

The recorder subscribes to the domain event bus and writes exactly one
AuditEvent per domain event. The audit id is derived from the domain
event id, so a redelivered event lands on the record already written.

Severity and category come from static action tables, with keyword
fallbacks for actions the tables do not name:

    severity: critical ← login_failed, unauthorized_access, data_breach,
                         privilege_escalation, admin_* actions
              high     ← transaction_created, escrow_released, ...
              medium   ← contract_created, profile_updated, ...
              low      ← anything else
    category: auth / financial / admin / security / user / system

Field values named in the redaction list (passwords, tokens, CVs, ...)
are replaced with ``[REDACTED]`` at any depth before storage.

Administrators can search the log and generate period reports; both
reads are themselves audited.
"""

from __future__ import annotations

import enum
import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Optional

from marketplace.actors.authorization import AuthorizationGuard
from marketplace.defaults import Clock, IdFactory, new_id, utc_now
from marketplace.events.bus import DomainEvent
from marketplace.models.audit import AuditEvent, AuditReport, Category, Severity
from marketplace.persistence.audit_log import AuditLog

REDACTED = "[REDACTED]"

ACTION_SEVERITY: dict[str, Severity] = {
    "login_failed": Severity.CRITICAL,
    "unauthorized_access": Severity.CRITICAL,
    "data_breach": Severity.CRITICAL,
    "privilege_escalation": Severity.CRITICAL,
    "transaction_created": Severity.HIGH,
    "contract_completed": Severity.HIGH,
    "user_banned": Severity.HIGH,
    "escrow_released": Severity.HIGH,
    "escrow_refunded": Severity.HIGH,
    "escrow_disputed": Severity.HIGH,
    "dispute_resolved": Severity.HIGH,
    "actor_suspended": Severity.HIGH,
    "profile_updated": Severity.MEDIUM,
    "contract_created": Severity.MEDIUM,
    "contract_updated": Severity.MEDIUM,
    "message_sent": Severity.MEDIUM,
    "proposal_submitted": Severity.MEDIUM,
    "escrow_funded": Severity.MEDIUM,
    "escrow_cancelled": Severity.MEDIUM,
    "audit_report_generated": Severity.MEDIUM,
    "audit_logs_searched": Severity.LOW,
    "actor_registered": Severity.LOW,
}

ACTION_CATEGORY: dict[str, Category] = {
    "contract_created": Category.FINANCIAL,
    "contract_updated": Category.FINANCIAL,
    "transaction_created": Category.FINANCIAL,
    "escrow_funded": Category.FINANCIAL,
    "escrow_released": Category.FINANCIAL,
    "escrow_refunded": Category.FINANCIAL,
    "escrow_disputed": Category.FINANCIAL,
    "escrow_cancelled": Category.FINANCIAL,
    "dispute_resolved": Category.FINANCIAL,
    "proposal_submitted": Category.USER,
    "actor_registered": Category.USER,
    "profile_updated": Category.USER,
    "actor_suspended": Category.SECURITY,
    "audit_logs_searched": Category.ADMIN,
    "audit_report_generated": Category.ADMIN,
}

# Keyword fallbacks, checked in order.
_CATEGORY_KEYWORDS: tuple[tuple[tuple[str, ...], Category], ...] = (
    (("login", "auth"), Category.AUTH),
    (("transaction", "escrow", "payment"), Category.FINANCIAL),
    (("admin",), Category.ADMIN),
    (("security", "breach", "suspicious"), Category.SECURITY),
    (("user", "profile"), Category.USER),
)

MAX_SEARCH_LIMIT = 1000
TOP_ACTORS = 10


def severity_for(action: str) -> Severity:
    if action in ACTION_SEVERITY:
        return ACTION_SEVERITY[action]
    if action.startswith("admin_"):
        return Severity.CRITICAL
    return Severity.LOW


def category_for(action: str) -> Category:
    if action in ACTION_CATEGORY:
        return ACTION_CATEGORY[action]
    for keywords, category in _CATEGORY_KEYWORDS:
        if any(k in action for k in keywords):
            return category
    return Category.SYSTEM


def jsonable(value: Any) -> Any:
    """Convert snapshots to plain JSON types so hashes survive a reload."""
    if isinstance(value, dict):
        return {str(k): jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [jsonable(v) for v in value]
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def redact(value: Any, fields: frozenset[str]) -> Any:
    """Replace values of sensitive keys with REDACTED, recursively."""
    if isinstance(value, dict):
        return {
            k: (REDACTED if str(k).lower() in fields and v not in (None, "")
                else redact(v, fields))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [redact(v, fields) for v in value]
    return value


@dataclass(frozen=True)
class AuditSearchFilters:
    """Optional criteria for an administrator log search."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    actor_id: Optional[str] = None
    category: Optional[Category] = None
    severity: Optional[Severity] = None
    action: Optional[str] = None

    def describe(self) -> dict[str, Any]:
        return {k: v for k, v in jsonable(self.__dict__).items() if v is not None}


class AuditRecorder:
    """Writes audit records and serves administrator queries over them.

    Usage:
        recorder = AuditRecorder(audit_log, guard, redacted_fields)
        bus.subscribe("audit", recorder.handle)
        events = recorder.search_audit_logs("admin-1", AuditSearchFilters(action="contract_updated"))
    """

    def __init__(
        self,
        log: AuditLog,
        guard: AuthorizationGuard,
        redacted_fields: Iterable[str] = (),
        clock: Optional[Clock] = None,
        id_factory: Optional[IdFactory] = None,
    ) -> None:
        self._log = log
        self._guard = guard
        self._redacted = frozenset(f.lower() for f in redacted_fields)
        self._clock = clock or utc_now
        self._new_id = id_factory or new_id

    @property
    def log(self) -> AuditLog:
        return self._log

    # ------------------------------------------------------------------
    # Writing
    # ------------------------------------------------------------------

    def handle(self, event: DomainEvent) -> AuditEvent:
        """Bus subscriber: one audit record per domain event."""
        return self.record(
            event.kind.value,
            actor_id=event.actor_id,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            before=event.before,
            after=event.after,
            metadata=event.payload,
            event_id=f"audit-{event.event_id}",
            now=event.occurred_utc,
        )

    def record(
        self,
        action: str,
        *,
        actor_id: Optional[str] = None,
        resource_type: str = "system",
        resource_id: Optional[str] = None,
        before: Optional[dict[str, Any]] = None,
        after: Optional[dict[str, Any]] = None,
        metadata: Optional[dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        severity: Optional[Severity] = None,
        category: Optional[Category] = None,
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> AuditEvent:
        """Redact and append a single audit record."""
        event = AuditEvent(
            event_id=event_id or self._new_id("audit"),
            action=action,
            actor_id=actor_id,
            resource_type=resource_type,
            resource_id=resource_id,
            severity=severity or severity_for(action),
            category=category or category_for(action),
            success=success,
            timestamp_utc=now or self._clock(),
            before=self._clean(before),
            after=self._clean(after),
            metadata=self._clean(metadata) or {},
            error_message=error_message,
        )
        return self._log.append(event)

    def log_admin_action(
        self,
        admin_id: str,
        action: str,
        target_actor_id: Optional[str] = None,
        target_resource: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> AuditEvent:
        """Record an administrative action as ``admin_<action>``, critical."""
        self._guard.require_admin(admin_id)
        if not action or not action.strip():
            raise ValueError("Admin action name must not be blank")
        return self.record(
            f"admin_{action.strip()}",
            actor_id=admin_id,
            resource_type="admin_action",
            resource_id=target_resource or target_actor_id,
            metadata={
                "target_actor_id": target_actor_id,
                "target_resource": target_resource,
                "details": details or {},
            },
            severity=Severity.CRITICAL,
            category=Category.ADMIN,
            now=now,
        )

    # ------------------------------------------------------------------
    # Administrator reads
    # ------------------------------------------------------------------

    def search_audit_logs(
        self,
        admin_id: str,
        filters: Optional[AuditSearchFilters] = None,
        limit: int = 100,
        offset: int = 0,
        now: Optional[datetime] = None,
    ) -> list[AuditEvent]:
        """Filtered page of audit records, newest first."""
        self._guard.require_admin(admin_id)
        if not (1 <= limit <= MAX_SEARCH_LIMIT):
            raise ValueError(f"limit must be between 1 and {MAX_SEARCH_LIMIT}")
        if offset < 0:
            raise ValueError("offset must be non-negative")
        filters = filters or AuditSearchFilters()

        matches = self._log.query(
            action=filters.action,
            actor_id=filters.actor_id,
            category=filters.category,
            severity=filters.severity,
            since=filters.start,
            until=filters.end,
        )
        matches.reverse()
        page = matches[offset:offset + limit]

        self.record(
            "audit_logs_searched",
            actor_id=admin_id,
            resource_type="audit_log",
            metadata={
                "filters": filters.describe(),
                "result_count": len(page),
                "limit": limit,
                "offset": offset,
            },
            now=now,
        )
        return page

    def generate_audit_report(
        self,
        admin_id: str,
        start: datetime,
        end: datetime,
        categories: Optional[Iterable[Category]] = None,
        severity: Optional[Severity] = None,
        now: Optional[datetime] = None,
    ) -> AuditReport:
        """Summarise audit activity in [start, end]."""
        self._guard.require_admin(admin_id)
        if end < start:
            raise ValueError("Report end must not precede start")
        now = now or self._clock()

        events = self._log.query(
            categories=categories, severity=severity, since=start, until=end,
        )
        report = summarise(events, start, end, self._new_id("report"), now)

        self.record(
            "audit_report_generated",
            actor_id=admin_id,
            resource_type="audit_report",
            resource_id=report.report_id,
            metadata={
                "period": report.period,
                "total_events": report.total_events,
                "categories": [c.value for c in categories] if categories else None,
                "severity": severity.value if severity else None,
            },
            now=now,
        )
        return report

    def _clean(self, data: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
        if data is None:
            return None
        return redact(jsonable(data), self._redacted)


def summarise(
    events: list[AuditEvent],
    start: datetime,
    end: datetime,
    report_id: str,
    generated_utc: datetime,
) -> AuditReport:
    """Build an AuditReport over events already filtered to the period."""
    by_category = Counter(e.category.value for e in events)
    by_severity = Counter(e.severity.value for e in events)
    by_actor = Counter(e.actor_id for e in events if e.actor_id)
    return AuditReport(
        report_id=report_id,
        period=f"{start.date().isoformat()} to {end.date().isoformat()}",
        generated_utc=generated_utc,
        total_events=len(events),
        events_by_category=dict(by_category),
        events_by_severity=dict(by_severity),
        top_actors=sorted(by_actor.items(), key=lambda kv: (-kv[1], kv[0]))[:TOP_ACTORS],
        security_events=by_category.get(Category.SECURITY.value, 0),
        trends=_trends(events, start, end),
        recommendations=_recommendations(events),
    )


def _trends(events: list[AuditEvent], start: datetime, end: datetime) -> dict[str, Any]:
    days = max(1, math.ceil((end - start) / timedelta(days=1)))
    daily = Counter(e.timestamp_utc.date().isoformat() for e in events)
    peak = max(daily.items(), key=lambda kv: (kv[1], kv[0])) if daily else None
    return {
        "daily_events": dict(sorted(daily.items())),
        "average_events_per_day": len(events) / days,
        "peak_day": peak,
        "growth_rate": _growth_rate(daily),
    }


def _growth_rate(daily: Counter) -> float:
    """Percent change of the mean daily count, second half vs first half."""
    days = sorted(daily)
    if len(days) < 2:
        return 0.0
    half = len(days) // 2
    first = sum(daily[d] for d in days[:half]) / half
    second = sum(daily[d] for d in days[half:]) / (len(days) - half)
    return (second - first) / first * 100


def _recommendations(events: list[AuditEvent]) -> list[str]:
    if not events:
        return []
    total = len(events)
    security = sum(1 for e in events if e.category == Category.SECURITY)
    failed_logins = sum(1 for e in events if "login_failed" in e.action)
    admin = sum(1 for e in events if e.category == Category.ADMIN)
    failures = sum(1 for e in events if not e.success)

    recommendations = []
    if security > total * 0.1:
        recommendations.append(
            "High volume of security events detected. Review security policies."
        )
    if failed_logins > total * 0.05:
        recommendations.append(
            "Repeated failed logins. Consider rate limiting or temporary lockout."
        )
    if admin > total * 0.2:
        recommendations.append(
            "High administrative activity. Review whether these actions can be automated."
        )
    if failures / total > 0.1:
        recommendations.append(
            "High operation failure rate. Review system stability."
        )
    return recommendations
