"""Contract state machine — enforces valid lifecycle transitions.

Contract lifecycle:
    OPEN → AWAITING_DEPOSIT → FUNDS_HELD → DELIVERED → COMPLETED
    FUNDS_HELD | DELIVERED → DISPUTED
    OPEN | AWAITING_DEPOSIT → CANCELLED

Resolution edges, reachable only through resolve_transition:
    DISPUTED → COMPLETED | CANCELLED

State semantics:
- OPEN: posted, accepting proposals.
- AWAITING_DEPOSIT: a proposal was accepted, escrow created, no funds yet.
- FUNDS_HELD: client deposit confirmed, work in progress.
- DELIVERED: specialist reports the work done.
- COMPLETED: terminal — funds released to the specialist.
- DISPUTED: delivery contested, escrow frozen until adjudication.
- CANCELLED: terminal — withdrawn, timed out, or refunded by dispute.

Fail-closed: invalid transitions raise InvalidTransition and leave the
contract untouched. There are no implicit transitions.
"""

from __future__ import annotations

from marketplace.errors import InvalidTransition
from marketplace.models.contract import Contract, ContractState


# Valid transitions: {from_state: {allowed_to_states}}
_TRANSITIONS: dict[ContractState, set[ContractState]] = {
    ContractState.OPEN: {
        ContractState.AWAITING_DEPOSIT,
        ContractState.CANCELLED,
    },
    ContractState.AWAITING_DEPOSIT: {
        ContractState.FUNDS_HELD,
        ContractState.CANCELLED,
    },
    ContractState.FUNDS_HELD: {
        ContractState.DELIVERED,
        ContractState.DISPUTED,
    },
    ContractState.DELIVERED: {
        ContractState.COMPLETED,
        ContractState.DISPUTED,
    },
    # Left only by adjudication, see _RESOLUTIONS
    ContractState.DISPUTED: set(),
    # Terminal states — no outgoing transitions
    ContractState.COMPLETED: set(),
    ContractState.CANCELLED: set(),
}

# Edges taken only when an administrator settles a dispute.
_RESOLUTIONS: dict[ContractState, set[ContractState]] = {
    ContractState.DISPUTED: {
        ContractState.COMPLETED,
        ContractState.CANCELLED,
    },
}


class ContractStateMachine:
    """Validates and applies contract state transitions.

    Pure computation. Persistence and event publication are the
    orchestrator's job.
    """

    @staticmethod
    def validate_transition(
        contract: Contract,
        target: ContractState,
    ) -> list[str]:
        """Check if a transition is valid. Returns errors (empty = OK)."""
        return _check(contract, target, _TRANSITIONS, "contract transition")

    @staticmethod
    def apply_transition(
        contract: Contract,
        target: ContractState,
    ) -> None:
        """Validate and apply a state transition.

        Raises InvalidTransition if the edge is not legal.
        """
        errors = ContractStateMachine.validate_transition(contract, target)
        if errors:
            raise InvalidTransition(errors[0])
        contract.state = target

    @staticmethod
    def resolve_transition(
        contract: Contract,
        target: ContractState,
    ) -> None:
        """Apply a dispute-resolution edge (DISPUTED → COMPLETED | CANCELLED)."""
        errors = _check(contract, target, _RESOLUTIONS, "dispute resolution")
        if errors:
            raise InvalidTransition(errors[0])
        contract.state = target

    @staticmethod
    def is_terminal(state: ContractState) -> bool:
        return state in (ContractState.COMPLETED, ContractState.CANCELLED)

    @staticmethod
    def valid_transitions(state: ContractState) -> set[ContractState]:
        """Return the set of valid target states from the given state."""
        return set(_TRANSITIONS.get(state, set()))


def _check(
    contract: Contract,
    target: ContractState,
    table: dict[ContractState, set[ContractState]],
    label: str,
) -> list[str]:
    current = contract.state
    allowed = table.get(current, set())
    if target not in allowed:
        allowed_str = ", ".join(s.value for s in sorted(allowed, key=lambda x: x.value))
        return [
            f"Invalid {label}: {current.value} → {target.value}. "
            f"Allowed from {current.value}: [{allowed_str}]"
        ]
    return []
