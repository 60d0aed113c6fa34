"""Security anomaly detector — window rules over the audit stream.

Subscribed to the domain event bus after the audit recorder, so by the
time a rule counts matching audit records the triggering event is
already among them.

Rules (thresholds and risk levels from marketplace_params.json):
    rapid_contract_updates    ≥ N contract_updated for one contract in
                              a trailing window      → suspicious_activity
    large_transaction         created amount > limit → suspicious_activity
    rapid_client_transactions > N transactions by one client in a
                              trailing window        → suspicious_activity
    role_change               an actor's role field changed
                                                     → suspicious_activity

A rule that keeps firing for the same subject inside its window raises
one security event, not one per triggering event. Redelivered domain
events are ignored. A CRITICAL security event suspends its subject; the
directory makes that idempotent.

Security events are written to the audit log as ``security_<type>``
records and rebuilt from it on construction, so deduplication survives a
restart over a file-backed log. Only the most recent domain event ids are
remembered for redelivery checks; older redeliveries fall back to the
fingerprint check.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import structlog

from marketplace.actors.authorization import AuthorizationGuard
from marketplace.actors.directory import ActorDirectory
from marketplace.audit.recorder import AuditRecorder
from marketplace.defaults import Clock, IdFactory, new_id, utc_now
from marketplace.errors import NotFound
from marketplace.events.bus import DomainEvent, DomainEventKind
from marketplace.models.audit import (
    Category,
    RiskLevel,
    SecurityEvent,
    SecurityEventType,
    Severity,
)
from marketplace.persistence.audit_log import AuditLog
from marketplace.policy.resolver import DetectorPolicy

logger = structlog.get_logger(__name__)

# Domain event ids remembered for redelivery checks.
PROCESSED_CAPACITY = 10_000

_RESOLVED_ACTION = "admin_security_event_resolved"


class SecurityAnomalyDetector:
    """Evaluates detector rules and owns the resulting security events.

    Usage:
        detector = SecurityAnomalyDetector(audit_log, directory, guard, recorder, policy)
        bus.subscribe("security", detector.handle)
    """

    def __init__(
        self,
        log: AuditLog,
        directory: ActorDirectory,
        guard: AuthorizationGuard,
        recorder: AuditRecorder,
        policy: DetectorPolicy,
        clock: Optional[Clock] = None,
        id_factory: Optional[IdFactory] = None,
        processed_capacity: int = PROCESSED_CAPACITY,
    ) -> None:
        if processed_capacity < 1:
            raise ValueError("processed_capacity must be at least 1")
        self._log = log
        self._directory = directory
        self._guard = guard
        self._recorder = recorder
        self._policy = policy
        self._clock = clock or utc_now
        self._new_id = id_factory or new_id
        self._events: list[SecurityEvent] = []
        self._processed: OrderedDict[str, None] = OrderedDict()
        self._capacity = processed_capacity
        self._lock = threading.RLock()
        self._restore()

    # ------------------------------------------------------------------
    # Bus subscriber
    # ------------------------------------------------------------------

    def handle(self, event: DomainEvent) -> list[SecurityEvent]:
        """Evaluate every rule relevant to ``event``. Returns new security events."""
        with self._lock:
            if event.event_id in self._processed:
                return []
        raised: list[SecurityEvent] = []
        if event.kind == DomainEventKind.CONTRACT_UPDATED:
            raised += self._check_rapid_contract_updates(event)
        elif event.kind == DomainEventKind.TRANSACTION_CREATED:
            raised += self._check_large_transaction(event)
            raised += self._check_rapid_client_transactions(event)
        elif event.kind == DomainEventKind.PROFILE_UPDATED:
            raised += self._check_role_change(event)
        with self._lock:
            self._remember(event.event_id)
        return raised

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def _check_rapid_contract_updates(self, event: DomainEvent) -> list[SecurityEvent]:
        rule = self._policy.rapid_contract_updates
        contract_id = event.resource_id
        updates = self._log.query(
            action=DomainEventKind.CONTRACT_UPDATED.value,
            resource_id=contract_id,
            since=event.occurred_utc - rule.window,
            until=event.occurred_utc,
        )
        if len(updates) < rule.threshold:
            return []
        snapshot = event.after or event.before or {}
        subject = event.actor_id or snapshot.get("client_id")
        return self._maybe_raise(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            subject,
            rule.risk,
            {
                "rule": "rapid_contract_updates",
                "contract_id": contract_id,
                "updates_in_window": len(updates),
                "window_minutes": int(rule.window.total_seconds() // 60),
            },
            fingerprint=f"rapid_contract_updates:{contract_id}",
            window=rule.window,
            source=event,
        )

    def _check_large_transaction(self, event: DomainEvent) -> list[SecurityEvent]:
        amount = _amount(event.payload.get("amount"))
        if amount is None or amount <= self._policy.large_transaction_amount:
            return []
        return self._maybe_raise(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            event.payload.get("client_id"),
            self._policy.large_transaction_risk,
            {
                "rule": "large_transaction",
                "transaction_id": event.resource_id,
                "contract_id": event.payload.get("contract_id"),
                "amount": str(amount),
                "limit": str(self._policy.large_transaction_amount),
            },
            fingerprint=f"large_transaction:{event.resource_id}",
            window=None,
            source=event,
        )

    def _check_rapid_client_transactions(self, event: DomainEvent) -> list[SecurityEvent]:
        rule = self._policy.rapid_client_transactions
        client_id = event.payload.get("client_id")
        if not client_id:
            return []
        created = self._log.query(
            action=DomainEventKind.TRANSACTION_CREATED.value,
            since=event.occurred_utc - rule.window,
            until=event.occurred_utc,
            predicate=lambda e: e.metadata.get("client_id") == client_id,
        )
        if len(created) < rule.threshold:
            return []
        return self._maybe_raise(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            client_id,
            rule.risk,
            {
                "rule": "rapid_client_transactions",
                "transactions_in_window": len(created),
                "window_hours": int(rule.window.total_seconds() // 3600),
            },
            fingerprint=f"rapid_client_transactions:{client_id}",
            window=rule.window,
            source=event,
        )

    def _check_role_change(self, event: DomainEvent) -> list[SecurityEvent]:
        before = event.before or {}
        after = event.after or {}
        if before.get("role") == after.get("role"):
            return []
        return self._maybe_raise(
            SecurityEventType.SUSPICIOUS_ACTIVITY,
            event.resource_id,
            self._policy.role_change_risk,
            {
                "rule": "role_change",
                "old_role": before.get("role"),
                "new_role": after.get("role"),
                "changed_by": event.actor_id,
            },
            fingerprint=f"role_change:{event.event_id}",
            window=None,
            source=event,
        )

    def _maybe_raise(
        self,
        type: SecurityEventType,
        subject_actor_id: Optional[str],
        risk_level: RiskLevel,
        details: dict[str, Any],
        fingerprint: str,
        window: Optional[timedelta],
        source: DomainEvent,
    ) -> list[SecurityEvent]:
        raised = self.raise_security_event(
            type, subject_actor_id, risk_level, details,
            fingerprint=fingerprint,
            window=window,
            source_event_id=source.event_id,
            now=source.occurred_utc,
        )
        return [raised] if raised is not None else []

    # ------------------------------------------------------------------
    # Security events
    # ------------------------------------------------------------------

    def raise_security_event(
        self,
        type: SecurityEventType,
        subject_actor_id: Optional[str],
        risk_level: RiskLevel,
        details: Optional[dict[str, Any]] = None,
        fingerprint: str = "",
        window: Optional[timedelta] = None,
        source_event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[SecurityEvent]:
        """Record a security event unless an identical one is still live.

        With a fingerprint and no window, the fingerprint is unique for
        all time. Returns None when deduplicated.
        """
        now = now or self._clock()
        with self._lock:
            if fingerprint and self._is_duplicate(fingerprint, window, now):
                return None
            security_event = SecurityEvent(
                security_event_id=self._new_id("sec"),
                type=type,
                subject_actor_id=subject_actor_id,
                risk_level=risk_level,
                details=dict(details or {}),
                fingerprint=fingerprint,
                source_event_id=source_event_id,
                timestamp_utc=now,
            )
            self._events.append(security_event)

        logger.warning(
            "security_event_raised",
            security_event_id=security_event.security_event_id,
            type=type.value,
            subject_actor_id=subject_actor_id,
            risk_level=risk_level.value,
            rule=security_event.details.get("rule"),
        )
        self._recorder.record(
            f"security_{type.value}",
            actor_id=subject_actor_id,
            resource_type="security_event",
            resource_id=security_event.security_event_id,
            metadata={
                "risk_level": risk_level.value,
                "type": type.value,
                "fingerprint": fingerprint,
                "details": security_event.details,
                "source_event_id": source_event_id,
            },
            severity=Severity(risk_level.value),
            category=Category.SECURITY,
            event_id=f"audit-{security_event.security_event_id}",
            now=now,
        )
        if risk_level == RiskLevel.CRITICAL and subject_actor_id:
            self._contain(security_event, now)
        return security_event

    def list_security_events(
        self,
        admin_id: str,
        unresolved_only: bool = False,
        risk_level: Optional[RiskLevel] = None,
    ) -> list[SecurityEvent]:
        self._guard.require_admin(admin_id)
        with self._lock:
            events = list(self._events)
        if unresolved_only:
            events = [e for e in events if not e.resolved]
        if risk_level is not None:
            events = [e for e in events if e.risk_level == risk_level]
        return events

    def resolve_security_event(
        self,
        admin_id: str,
        security_event_id: str,
        actions: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> SecurityEvent:
        """Mark a security event handled. Resolving twice is a no-op."""
        self._guard.require_admin(admin_id)
        now = now or self._clock()
        with self._lock:
            match = next(
                (e for e in self._events if e.security_event_id == security_event_id),
                None,
            )
            if match is None:
                raise NotFound(f"Security event not found: {security_event_id}")
            if match.resolved:
                return match
            match.resolved = True
            match.resolved_by = admin_id
            match.resolved_utc = now
            match.actions.extend(actions or [])
        self._recorder.log_admin_action(
            admin_id,
            "security_event_resolved",
            target_actor_id=match.subject_actor_id,
            target_resource=security_event_id,
            details={"actions": list(actions or [])},
            now=now,
        )
        return match

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _remember(self, event_id: str) -> None:
        self._processed[event_id] = None
        self._processed.move_to_end(event_id)
        while len(self._processed) > self._capacity:
            self._processed.popitem(last=False)

    def _restore(self) -> None:
        """Rebuild security events from their audit records."""
        records = self._log.query(
            category=Category.SECURITY,
            predicate=lambda e: (
                e.resource_type == "security_event" and e.action.startswith("security_")
            ),
        )
        for record in records:
            meta = record.metadata
            try:
                type = SecurityEventType(meta.get("type") or record.action[len("security_"):])
                risk_level = RiskLevel(meta["risk_level"])
            except (KeyError, ValueError):
                logger.warning("security_record_unreadable", audit_event_id=record.event_id)
                continue
            self._events.append(SecurityEvent(
                security_event_id=record.resource_id,
                type=type,
                subject_actor_id=record.actor_id,
                risk_level=risk_level,
                details=dict(meta.get("details") or {}),
                fingerprint=meta.get("fingerprint") or "",
                source_event_id=meta.get("source_event_id"),
                timestamp_utc=record.timestamp_utc,
            ))
            if meta.get("source_event_id"):
                self._remember(meta["source_event_id"])

        by_id = {e.security_event_id: e for e in self._events}
        for record in self._log.query(action=_RESOLVED_ACTION):
            match = by_id.get(record.resource_id)
            if match is None or match.resolved:
                continue
            match.resolved = True
            match.resolved_by = record.actor_id
            match.resolved_utc = record.timestamp_utc
            match.actions.extend((record.metadata.get("details") or {}).get("actions") or [])
        if self._events:
            logger.info("security_events_restored", count=len(self._events))

    def _is_duplicate(
        self,
        fingerprint: str,
        window: Optional[timedelta],
        now: datetime,
    ) -> bool:
        for existing in self._events:
            if existing.fingerprint != fingerprint:
                continue
            if window is None or existing.timestamp_utc >= now - window:
                return True
        return False

    def _contain(self, security_event: SecurityEvent, now: datetime) -> None:
        subject = security_event.subject_actor_id
        reason = f"Automatic suspension due to security event: {security_event.type.value}"
        try:
            suspended = self._directory.suspend(subject, reason, now=now)
        except NotFound:
            logger.warning(
                "suspension_target_unknown",
                security_event_id=security_event.security_event_id,
                subject_actor_id=subject,
            )
            return
        if suspended:
            with self._lock:
                security_event.actions.append("actor_suspended")
            logger.warning(
                "critical_security_event",
                security_event_id=security_event.security_event_id,
                subject_actor_id=subject,
                admins=[a.actor_id for a in self._directory.admins()],
            )


def _amount(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
