"""Compensation subsystem — commission computation and the escrow ledger."""

from marketplace.compensation.commission import compute_commission
from marketplace.compensation.ledger import EscrowLedger

__all__ = ["EscrowLedger", "compute_commission"]
