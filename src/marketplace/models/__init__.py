"""Core data models for the marketplace."""

from marketplace.models.actor import Actor, ActorRole, ActorStatus
from marketplace.models.audit import (
    AuditEvent,
    AuditReport,
    Category,
    RiskLevel,
    SecurityEvent,
    SecurityEventType,
    Severity,
)
from marketplace.models.contract import (
    Contract,
    ContractDetails,
    ContractState,
    DisputeOutcome,
    Proposal,
    ProposalState,
)
from marketplace.models.escrow import (
    CommissionBreakdown,
    EscrowState,
    EscrowTransaction,
)

__all__ = [
    "Actor",
    "ActorRole",
    "ActorStatus",
    "AuditEvent",
    "AuditReport",
    "Category",
    "CommissionBreakdown",
    "Contract",
    "ContractDetails",
    "ContractState",
    "DisputeOutcome",
    "EscrowState",
    "EscrowTransaction",
    "Proposal",
    "ProposalState",
    "RiskLevel",
    "SecurityEvent",
    "SecurityEventType",
    "Severity",
]
