"""Actor directory — registry of clients, specialists and administrators.

The directory is the source of truth for who may do what:
- Role (client / specialist / admin) drives permission checks.
- Status (active / suspended) gates new contracts and proposals.
- Financial counters (escrow balance, earnings, completed jobs) are
  maintained by the ledger inside its own units of work.

Every profile change publishes PROFILE_UPDATED with before/after
snapshots so the security detector can spot role changes.
Suspension is idempotent: suspending a suspended actor changes nothing
and publishes nothing.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

import structlog

from marketplace.defaults import Clock, utc_now
from marketplace.errors import ConcurrentModification, NotFound
from marketplace.events.bus import DomainEvent, DomainEventKind, EventBus
from marketplace.models.actor import Actor, ActorRole, ActorStatus
from marketplace.persistence.repository import Repository

logger = structlog.get_logger(__name__)


class ActorDirectory:
    """Registry of marketplace actors backed by the document repository."""

    def __init__(
        self,
        repository: Repository,
        bus: EventBus,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repo = repository
        self._bus = bus
        self._clock = clock or utc_now

    def register(
        self,
        actor_id: str,
        role: ActorRole,
        alias: str = "",
        email: str = "",
        skills: Optional[list[str]] = None,
        now: Optional[datetime] = None,
    ) -> Actor:
        """Register a new actor.

        Raises ValueError if actor_id is blank or already registered.
        """
        canonical_id = actor_id.strip()
        if not canonical_id:
            raise ValueError("Cannot register actor with blank ID")
        now = now or self._clock()
        uow = self._repo.begin()
        if uow.actor(canonical_id) is not None:
            raise ValueError(f"Actor already registered: {canonical_id}")
        actor = Actor(
            actor_id=canonical_id,
            role=role,
            alias=alias,
            email=email,
            skills=list(skills or []),
            registered_utc=now,
        )
        uow.add(actor)
        uow.commit()
        self._bus.publish(DomainEvent.create(
            DomainEventKind.ACTOR_REGISTERED, "actor", canonical_id,
            actor_id=canonical_id, after=actor.snapshot(), now=now,
        ))
        return actor

    def get(self, actor_id: str) -> Optional[Actor]:
        """Look up an actor."""
        return self._repo.get_actor(actor_id)

    def require(self, actor_id: str) -> Actor:
        actor = self._repo.get_actor(actor_id)
        if actor is None:
            raise NotFound(f"Actor not found: {actor_id}")
        return actor

    def admins(self) -> list[Actor]:
        return self._repo.actors_with_role(ActorRole.ADMIN)

    def update_profile(
        self,
        actor_id: str,
        *,
        role: Optional[ActorRole] = None,
        alias: Optional[str] = None,
        email: Optional[str] = None,
        skills: Optional[list[str]] = None,
        changed_by: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Actor:
        """Apply profile changes. No-op (no event) when nothing differs."""
        now = now or self._clock()
        uow = self._repo.begin()
        actor = uow.actor(actor_id)
        if actor is None:
            raise NotFound(f"Actor not found: {actor_id}")
        before = actor.snapshot()
        if role is not None:
            actor.role = role
        if alias is not None:
            actor.alias = alias
        if email is not None:
            actor.email = email
        if skills is not None:
            actor.skills = list(skills)
        after = actor.snapshot()
        if after == before:
            return actor

        uow.save(actor)
        uow.commit()
        changes = sorted(k for k in after if after[k] != before[k])
        self._bus.publish(DomainEvent.create(
            DomainEventKind.PROFILE_UPDATED, "actor", actor_id,
            actor_id=changed_by or actor_id,
            before=before, after=after,
            payload={"changes": changes},
            now=now,
        ))
        return actor

    def suspend(
        self,
        actor_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> bool:
        """Suspend an actor. Returns False if already suspended."""
        now = now or self._clock()
        uow = self._repo.begin()
        actor = uow.actor(actor_id)
        if actor is None:
            raise NotFound(f"Actor not found: {actor_id}")
        if actor.status == ActorStatus.SUSPENDED:
            return False
        before = actor.snapshot()
        actor.status = ActorStatus.SUSPENDED
        actor.suspension_reason = reason
        actor.suspended_utc = now
        uow.save(actor)
        try:
            uow.commit()
        except ConcurrentModification:
            # Lost a race; only the winner reports the suspension.
            current = self._repo.get_actor(actor_id)
            if current is not None and current.is_suspended:
                return False
            raise
        logger.warning("actor_suspended", actor_id=actor_id, reason=reason)
        self._bus.publish(DomainEvent.create(
            DomainEventKind.ACTOR_SUSPENDED, "actor", actor_id,
            before=before, after=actor.snapshot(),
            payload={"reason": reason}, now=now,
        ))
        return True
