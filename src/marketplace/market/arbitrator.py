"""Proposal arbitrator — specialists bid, the client picks exactly one.

Submission is the only independently callable operation. Accepting a
proposal and rejecting every other pending proposal is staged into the
orchestrator's unit of work by ``stage_acceptance`` so both land in one
commit together with the contract moving out of OPEN. There is no window
in which two proposals on one contract are both accepted.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from marketplace.actors.authorization import AuthorizationGuard
from marketplace.defaults import Clock, IdFactory, new_id, to_money, utc_now
from marketplace.errors import (
    ConcurrentModification,
    DuplicateProposal,
    InvalidTransition,
    PermissionDenied,
)
from marketplace.events.bus import DomainEvent, DomainEventKind, EventBus
from marketplace.models.contract import Contract, ContractState, Proposal, ProposalState
from marketplace.persistence.repository import Repository, UnitOfWork

# Concurrent submissions collide on the contract's proposal list.
_SUBMIT_ATTEMPTS = 3


class ProposalArbitrator:
    """Owns proposals.

    Usage:
        arbitrator = ProposalArbitrator(repo, bus, guard)
        proposal = arbitrator.submit_proposal("c-1", "s-1", Decimal("180"))
    """

    def __init__(
        self,
        repository: Repository,
        bus: EventBus,
        guard: AuthorizationGuard,
        clock: Optional[Clock] = None,
        id_factory: Optional[IdFactory] = None,
    ) -> None:
        self._repo = repository
        self._bus = bus
        self._guard = guard
        self._clock = clock or utc_now
        self._new_id = id_factory or new_id

    def submit_proposal(
        self,
        contract_id: str,
        specialist_id: str,
        price: Decimal,
        message: str = "",
        now: Optional[datetime] = None,
    ) -> Proposal:
        """Create a pending proposal on an open contract.

        Raises DuplicateProposal if the specialist already has a pending
        or accepted proposal on this contract, InvalidTransition if the
        contract is no longer open.
        """
        price = to_money(price)
        if price <= Decimal("0"):
            raise ValueError("Proposal price must be positive")
        self._guard.require_not_suspended(specialist_id)
        now = now or self._clock()

        attempt = 1
        while True:
            unit = self._repo.begin()
            proposal = self._stage_submission(unit, contract_id, specialist_id, price, message, now)
            try:
                unit.commit()
            except ConcurrentModification:
                if attempt >= _SUBMIT_ATTEMPTS:
                    raise
                attempt += 1
                continue
            self._bus.publish_all(unit.events)
            return proposal

    def _stage_submission(
        self,
        unit: UnitOfWork,
        contract_id: str,
        specialist_id: str,
        price: Decimal,
        message: str,
        now: datetime,
    ) -> Proposal:
        contract = unit.contract(contract_id)
        if contract.state != ContractState.OPEN:
            raise InvalidTransition(
                f"Contract {contract_id} is {contract.state.value}, not accepting proposals"
            )
        if specialist_id == contract.client_id:
            raise PermissionDenied("A client cannot bid on their own contract")
        for existing in unit.proposals_for_contract(contract_id):
            if existing.specialist_id == specialist_id and existing.state != ProposalState.REJECTED:
                raise DuplicateProposal(
                    f"Specialist {specialist_id} already has proposal "
                    f"{existing.proposal_id} on contract {contract_id}"
                )

        proposal = Proposal(
            proposal_id=self._new_id("prop"),
            contract_id=contract_id,
            specialist_id=specialist_id,
            price=price,
            message=message,
            submitted_utc=now,
        )
        unit.add(proposal)
        contract.proposal_ids.append(proposal.proposal_id)
        unit.save(contract)
        unit.events.append(DomainEvent.create(
            DomainEventKind.PROPOSAL_SUBMITTED, "proposal", proposal.proposal_id,
            actor_id=specialist_id,
            after=_proposal_snapshot(proposal),
            payload={"contract_id": contract_id, "price": str(price)},
            now=now,
        ))
        return proposal

    @staticmethod
    def stage_acceptance(
        unit: UnitOfWork,
        contract: Contract,
        proposal_id: str,
    ) -> tuple[Proposal, list[Proposal]]:
        """Accept one proposal and reject every other pending one.

        Only stages writes into ``unit``; the caller commits. Returns
        (accepted, rejected).
        """
        winner = unit.proposal(proposal_id)
        if winner.contract_id != contract.contract_id:
            raise InvalidTransition(
                f"Proposal {proposal_id} does not belong to contract {contract.contract_id}"
            )
        if winner.state != ProposalState.PENDING:
            raise InvalidTransition(
                f"Proposal {proposal_id} is {winner.state.value}, not pending"
            )

        winner.state = ProposalState.ACCEPTED
        unit.save(winner)
        rejected = []
        for other in unit.proposals_for_contract(contract.contract_id):
            if other.proposal_id == proposal_id or other.state != ProposalState.PENDING:
                continue
            other.state = ProposalState.REJECTED
            unit.save(other)
            rejected.append(other)
        return winner, rejected

    def proposals_for(self, contract_id: str) -> list[Proposal]:
        return self._repo.proposals_for_contract(contract_id)


def _proposal_snapshot(proposal: Proposal) -> dict:
    return {
        "proposal_id": proposal.proposal_id,
        "contract_id": proposal.contract_id,
        "specialist_id": proposal.specialist_id,
        "price": str(proposal.price),
        "state": proposal.state.value,
    }
