"""Domain event bus — fan-out of committed mutations to independent subscribers.

Core services publish one DomainEvent per committed mutation. The audit
recorder and the security detector subscribe independently. Delivery is
at-least-once from the subscriber's point of view (a failed delivery is
retried) and never affects the publisher: after ``max_attempts`` failed
attempts the event is dropped for that subscriber and a structured error
is logged. The business transaction has already committed by then.

Dispatch is in-process and synchronous by default (deterministic for
tests); pass an executor to make deliveries fire-and-forget.
"""

from __future__ import annotations

import enum
import uuid
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class DomainEventKind(str, enum.Enum):
    """Every mutation the core can publish."""
    CONTRACT_CREATED = "contract_created"
    CONTRACT_UPDATED = "contract_updated"
    PROPOSAL_SUBMITTED = "proposal_submitted"
    TRANSACTION_CREATED = "transaction_created"
    ESCROW_FUNDED = "escrow_funded"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REFUNDED = "escrow_refunded"
    ESCROW_DISPUTED = "escrow_disputed"
    ESCROW_CANCELLED = "escrow_cancelled"
    DISPUTE_RESOLVED = "dispute_resolved"
    ACTOR_REGISTERED = "actor_registered"
    PROFILE_UPDATED = "profile_updated"
    ACTOR_SUSPENDED = "actor_suspended"


@dataclass(frozen=True)
class DomainEvent:
    """A committed mutation, as seen by subscribers.

    ``before`` / ``after`` are raw snapshots; redaction is the
    recorder's job.
    """
    event_id: str
    kind: DomainEventKind
    resource_type: str
    resource_id: str
    actor_id: Optional[str] = None
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_utc: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @staticmethod
    def create(
        kind: DomainEventKind,
        resource_type: str,
        resource_id: str,
        *,
        actor_id: Optional[str] = None,
        before: Optional[dict[str, Any]] = None,
        after: Optional[dict[str, Any]] = None,
        payload: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> DomainEvent:
        return DomainEvent(
            event_id=f"evt-{uuid.uuid4().hex}",
            kind=kind,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            before=before,
            after=after,
            payload=payload or {},
            occurred_utc=now or datetime.now(timezone.utc),
        )


Subscriber = Callable[[DomainEvent], None]


class EventBus:
    """In-process publish/subscribe dispatcher.

    Subscribers are called in subscription order. Subscribers must be
    idempotent: the same event may be delivered more than once.
    """

    def __init__(self, max_attempts: int = 3, executor: Optional[Executor] = None) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._subscribers: list[tuple[str, Subscriber]] = []
        self._max_attempts = max_attempts
        self._executor = executor
        self.dropped: list[tuple[str, str]] = []

    def subscribe(self, name: str, handler: Subscriber) -> None:
        self._subscribers.append((name, handler))

    def publish(self, event: DomainEvent) -> None:
        """Deliver to every subscriber. Never raises."""
        for name, handler in self._subscribers:
            if self._executor is not None:
                self._executor.submit(self._deliver, name, handler, event)
            else:
                self._deliver(name, handler, event)

    def publish_all(self, events: list[DomainEvent]) -> None:
        for event in events:
            self.publish(event)

    def _deliver(self, name: str, handler: Subscriber, event: DomainEvent) -> None:
        for attempt in range(1, self._max_attempts + 1):
            try:
                handler(event)
                return
            except Exception as exc:  # subscriber failures never reach the publisher
                logger.warning(
                    "event_delivery_failed",
                    subscriber=name,
                    event_id=event.event_id,
                    kind=event.kind.value,
                    attempt=attempt,
                    error=str(exc),
                )
        self.dropped.append((name, event.event_id))
        logger.error(
            "event_delivery_dropped",
            subscriber=name,
            event_id=event.event_id,
            kind=event.kind.value,
            attempts=self._max_attempts,
        )
