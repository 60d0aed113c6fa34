"""Dispute resolver — administrator adjudication of contested deliveries.

A disputed contract has its escrow frozen. An administrator resolves it
in favour of one party:

    outcome=client      → escrow refunded,  contract CANCELLED
    outcome=specialist  → escrow released,  contract COMPLETED,
                          specialist earnings += payout

The contract and ledger writes are one unit of work. Resolution is final:
repeating the same outcome is a no-op success, asking for the opposite
outcome afterwards raises AlreadyResolved. Money never moves twice.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

import structlog

from marketplace.actors.authorization import AuthorizationGuard
from marketplace.compensation.ledger import EscrowLedger
from marketplace.defaults import Clock, utc_now
from marketplace.errors import AlreadyResolved, ConcurrentModification, InvalidTransition, NotFound
from marketplace.events.bus import DomainEvent, DomainEventKind, EventBus
from marketplace.market.contract_state_machine import ContractStateMachine
from marketplace.models.contract import Contract, ContractState, DisputeOutcome
from marketplace.models.escrow import EscrowState
from marketplace.persistence.repository import Repository, UnitOfWork
from marketplace.workflow.notifier import LoggingNotifier, Notifier

logger = structlog.get_logger(__name__)

_COMMIT_ATTEMPTS = 3

# What a resolved dispute leaves behind: (contract state, escrow state)
_RESOLVED_STATES: dict[DisputeOutcome, tuple[ContractState, EscrowState]] = {
    DisputeOutcome.CLIENT: (ContractState.CANCELLED, EscrowState.REFUNDED_TO_CLIENT),
    DisputeOutcome.SPECIALIST: (ContractState.COMPLETED, EscrowState.RELEASED_TO_SPECIALIST),
}


class DisputeResolver:
    """Admin-only resolution of disputed contracts.

    Usage:
        resolver = DisputeResolver(repo, bus, ledger, guard)
        contract = resolver.resolve_dispute("admin-1", "c-1", DisputeOutcome.SPECIALIST)
    """

    def __init__(
        self,
        repository: Repository,
        bus: EventBus,
        ledger: EscrowLedger,
        guard: AuthorizationGuard,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._repo = repository
        self._bus = bus
        self._ledger = ledger
        self._guard = guard
        self._notifier = notifier or LoggingNotifier()
        self._clock = clock or utc_now

    def resolve_dispute(
        self,
        admin_id: str,
        contract_id: str,
        outcome: Union[DisputeOutcome, str],
        notes: str = "",
        now: Optional[datetime] = None,
    ) -> Contract:
        """Settle a disputed contract in favour of ``outcome``.

        Raises:
            PermissionDenied: caller is not an active administrator.
            InvalidTransition: contract was never disputed.
            AlreadyResolved: dispute already settled the other way.
        """
        self._guard.require_admin(admin_id)
        try:
            outcome = DisputeOutcome(outcome)
        except ValueError:
            raise ValueError(f"Unknown dispute outcome: {outcome}") from None
        now = now or self._clock()

        attempt = 1
        while True:
            unit = self._repo.begin()
            contract = unit.contract(contract_id)
            if contract.state != ContractState.DISPUTED:
                self._check_already_resolved(unit, contract, outcome)
                return contract

            before = contract.snapshot()
            self._stage_resolution(unit, contract, outcome, admin_id, now)
            unit.save(contract)
            unit.events.append(DomainEvent.create(
                DomainEventKind.DISPUTE_RESOLVED, "contract", contract_id,
                actor_id=admin_id,
                before=before,
                after=contract.snapshot(),
                payload={
                    "outcome": outcome.value,
                    "escrow_id": contract.escrow_id,
                    "notes": notes,
                },
                now=now,
            ))
            try:
                unit.commit()
            except ConcurrentModification:
                if attempt >= _COMMIT_ATTEMPTS:
                    raise
                attempt += 1
                continue
            break

        self._bus.publish_all(unit.events)
        for party in (contract.client_id, contract.specialist_id):
            if party is None:
                continue
            try:
                self._notifier.notify(
                    party, "dispute_resolved",
                    {"contract_id": contract_id, "outcome": outcome.value},
                )
            except Exception as exc:  # notification is best-effort
                logger.warning("notification_failed", recipient_id=party, error=str(exc))
        return contract

    def dispute_details(self, admin_id: str, contract_id: str) -> dict[str, Any]:
        """Everything an administrator needs to adjudicate a contract."""
        self._guard.require_admin(admin_id)
        contract = self._repo.get_contract(contract_id)
        if contract is None:
            raise NotFound(f"Contract not found: {contract_id}")
        escrow = self._ledger.transaction_for_contract(contract_id)
        return {
            "contract": contract,
            "proposals": self._repo.proposals_for_contract(contract_id),
            "escrow": escrow,
            "client": self._repo.get_actor(contract.client_id),
            "specialist": (
                self._repo.get_actor(contract.specialist_id)
                if contract.specialist_id else None
            ),
        }

    def open_disputes(self) -> list[Contract]:
        return self._repo.contracts_in_state(ContractState.DISPUTED)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _stage_resolution(
        self,
        unit: UnitOfWork,
        contract: Contract,
        outcome: DisputeOutcome,
        admin_id: str,
        now: datetime,
    ) -> None:
        escrow_id = contract.escrow_id
        if escrow_id is None:
            raise InvalidTransition(f"Disputed contract {contract.contract_id} has no escrow")
        target_state, _ = _RESOLVED_STATES[outcome]
        ContractStateMachine.resolve_transition(contract, target_state)
        if outcome == DisputeOutcome.SPECIALIST:
            self._ledger.release(escrow_id, uow=unit, now=now, actor_id=admin_id)
            contract.completed_utc = now
        else:
            self._ledger.refund(escrow_id, uow=unit, now=now, actor_id=admin_id)
            contract.cancelled_utc = now

    @staticmethod
    def _check_already_resolved(
        unit: UnitOfWork,
        contract: Contract,
        outcome: DisputeOutcome,
    ) -> None:
        """Accept a repeat of the recorded outcome, reject anything else."""
        prior = None
        if contract.escrow_id is not None:
            escrow = unit.escrow(contract.escrow_id)
            if escrow.disputed_utc is not None:
                for candidate, states in _RESOLVED_STATES.items():
                    if (contract.state, escrow.state) == states:
                        prior = candidate
        if prior is None:
            raise InvalidTransition(
                f"Contract {contract.contract_id} is {contract.state.value}, not disputed"
            )
        if prior != outcome:
            raise AlreadyResolved(
                f"Dispute on {contract.contract_id} was already resolved "
                f"in favour of the {prior.value}"
            )
