"""Contract and proposal models.

A client posts a contract, specialists bid on it with proposals, the
client accepts exactly one proposal and the contract moves into the
escrow-backed delivery lifecycle.

Contract lifecycle:
    OPEN → AWAITING_DEPOSIT → FUNDS_HELD → DELIVERED → COMPLETED
    FUNDS_HELD | DELIVERED → DISPUTED
    OPEN | AWAITING_DEPOSIT → CANCELLED
Proposal lifecycle: PENDING → ACCEPTED / REJECTED
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


class ContractState(str, enum.Enum):
    """Lifecycle state of a contract."""
    OPEN = "open"
    AWAITING_DEPOSIT = "awaiting_deposit"
    FUNDS_HELD = "funds_held"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


class ProposalState(str, enum.Enum):
    """Lifecycle state of a proposal."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class DisputeOutcome(str, enum.Enum):
    """Which party an adjudicated dispute is resolved in favour of."""
    CLIENT = "client"
    SPECIALIST = "specialist"


@dataclass(frozen=True)
class ContractDetails:
    """Client-supplied description of the work. Opaque to the core."""
    title: str
    description: str = ""
    suggested_budget: Decimal = Decimal("0")
    deadline_utc: Optional[datetime] = None


@dataclass
class Contract:
    """A unit of work posted by a client.

    Invariant: final_price and specialist_id are set if and only if a
    proposal was accepted, i.e. state is not OPEN, except for a contract
    cancelled straight from OPEN, which never had a price.
    ``version`` is bumped by the repository on every committed write and
    serves as the optimistic-lock token for units of work.
    """
    contract_id: str
    client_id: str
    title: str
    description: str = ""
    suggested_budget: Decimal = Decimal("0")
    deadline_utc: Optional[datetime] = None
    state: ContractState = ContractState.OPEN
    specialist_id: Optional[str] = None
    final_price: Optional[Decimal] = None
    escrow_id: Optional[str] = None
    proposal_ids: list[str] = field(default_factory=list)
    created_utc: Optional[datetime] = None
    assigned_utc: Optional[datetime] = None
    completed_utc: Optional[datetime] = None
    cancelled_utc: Optional[datetime] = None
    version: int = 0

    def snapshot(self) -> dict:
        """Fields tracked in audit before/after snapshots."""
        return {
            "contract_id": self.contract_id,
            "client_id": self.client_id,
            "specialist_id": self.specialist_id,
            "state": self.state.value,
            "final_price": str(self.final_price) if self.final_price is not None else None,
            "deadline_utc": self.deadline_utc.isoformat() if self.deadline_utc else None,
        }


@dataclass
class Proposal:
    """A specialist's bid against an open contract."""
    proposal_id: str
    contract_id: str
    specialist_id: str
    price: Decimal
    message: str = ""
    state: ProposalState = ProposalState.PENDING
    submitted_utc: Optional[datetime] = None
    version: int = 0
