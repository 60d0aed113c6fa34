"""Contract market — contract lifecycle rules and proposal arbitration.

Clients post contracts, specialists bid, and the client accepts exactly
one proposal, which moves the contract into the escrow-backed delivery
lifecycle.
"""

from marketplace.market.arbitrator import ProposalArbitrator
from marketplace.market.contract_state_machine import ContractStateMachine

__all__ = ["ContractStateMachine", "ProposalArbitrator"]
