"""Escrow models — custody of contract funds between deposit and payout.

All monetary values use Decimal. No floats in finance.

State machine:
    PENDING_DEPOSIT → FUNDS_HELD        (client deposit confirmed)
    PENDING_DEPOSIT → CANCELLED         (contract cancelled before funding)
    FUNDS_HELD → RELEASED_TO_SPECIALIST (work approved)
    FUNDS_HELD → REFUNDED_TO_CLIENT     (refund)
    FUNDS_HELD → DISPUTED               (delivery contested)
    DISPUTED → RELEASED_TO_SPECIALIST   (dispute resolved for specialist)
    DISPUTED → REFUNDED_TO_CLIENT       (dispute resolved for client)

Invariant: commission + payout == amount, to the cent.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Optional

from marketplace.errors import InvalidTransition


class EscrowState(str, enum.Enum):
    """Lifecycle state of an escrow transaction."""
    PENDING_DEPOSIT = "pending_deposit"
    FUNDS_HELD = "funds_held"
    RELEASED_TO_SPECIALIST = "released_to_specialist"
    REFUNDED_TO_CLIENT = "refunded_to_client"
    DISPUTED = "disputed"
    CANCELLED = "cancelled"


ESCROW_TRANSITIONS: Dict[EscrowState, frozenset] = {
    EscrowState.PENDING_DEPOSIT: frozenset({
        EscrowState.FUNDS_HELD,
        EscrowState.CANCELLED,
    }),
    EscrowState.FUNDS_HELD: frozenset({
        EscrowState.RELEASED_TO_SPECIALIST,
        EscrowState.REFUNDED_TO_CLIENT,
        EscrowState.DISPUTED,
    }),
    EscrowState.DISPUTED: frozenset({
        EscrowState.RELEASED_TO_SPECIALIST,
        EscrowState.REFUNDED_TO_CLIENT,
    }),
    EscrowState.RELEASED_TO_SPECIALIST: frozenset(),
    EscrowState.REFUNDED_TO_CLIENT: frozenset(),
    EscrowState.CANCELLED: frozenset(),
}

# Transactions in these states still hold (or expect) client money.
ACTIVE_ESCROW_STATES = frozenset({
    EscrowState.PENDING_DEPOSIT,
    EscrowState.FUNDS_HELD,
    EscrowState.DISPUTED,
})


@dataclass(frozen=True)
class CommissionBreakdown:
    """Split of an escrowed amount between platform and specialist.

    Invariant: commission + payout == amount
    """
    amount: Decimal
    rate: Decimal
    commission: Decimal
    payout: Decimal


@dataclass
class EscrowTransaction:
    """Funds in platform custody for one contract.

    Mutable — state transitions happen during the contract lifecycle.
    All transitions are validated against the ESCROW_TRANSITIONS map.
    """
    transaction_id: str
    contract_id: str
    client_id: str
    specialist_id: str
    amount: Decimal
    commission: Decimal
    payout: Decimal
    state: EscrowState = EscrowState.PENDING_DEPOSIT
    reference: Optional[str] = None
    payment_reference: Optional[str] = None
    created_utc: Optional[datetime] = None
    deposited_utc: Optional[datetime] = None
    released_utc: Optional[datetime] = None
    refunded_utc: Optional[datetime] = None
    disputed_utc: Optional[datetime] = None
    cancelled_utc: Optional[datetime] = None
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_ESCROW_STATES

    def transition_to(self, new_state: EscrowState) -> None:
        """Transition to a new state, validating the transition is legal."""
        allowed = ESCROW_TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none"
            raise InvalidTransition(
                f"Invalid escrow transition: {self.state.value} → {new_state.value}. "
                f"Allowed: {allowed_str}"
            )
        self.state = new_state

    def snapshot(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "contract_id": self.contract_id,
            "client_id": self.client_id,
            "specialist_id": self.specialist_id,
            "amount": str(self.amount),
            "commission": str(self.commission),
            "payout": str(self.payout),
            "state": self.state.value,
            "payment_reference": self.payment_reference,
        }
