"""Actor models — clients, specialists and administrators."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional


class ActorRole(str, enum.Enum):
    """What an actor may do on the platform."""
    CLIENT = "client"
    SPECIALIST = "specialist"
    ADMIN = "admin"


class ActorStatus(str, enum.Enum):
    """Operational status of an actor account."""
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"


@dataclass
class Actor:
    """A registered platform account.

    Financial counters are updated in the same unit of work as the
    escrow movement that causes them:
    - escrow_balance: client funds currently in custody
    - earnings_total: cumulative specialist payouts
    - jobs_completed: number of payouts received
    """
    actor_id: str
    role: ActorRole
    alias: str = ""
    email: str = ""
    status: ActorStatus = ActorStatus.ACTIVE
    skills: list[str] = field(default_factory=list)
    escrow_balance: Decimal = Decimal("0")
    earnings_total: Decimal = Decimal("0")
    jobs_completed: int = 0
    suspension_reason: Optional[str] = None
    suspended_utc: Optional[datetime] = None
    registered_utc: Optional[datetime] = None
    version: int = 0

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def is_suspended(self) -> bool:
        return self.status == ActorStatus.SUSPENDED

    def snapshot(self) -> dict[str, Any]:
        return {
            "actor_id": self.actor_id,
            "role": self.role.value,
            "alias": self.alias,
            "email": self.email,
            "status": self.status.value,
            "skills": list(self.skills),
        }
