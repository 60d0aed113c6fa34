"""Contract orchestrator — drives a contract from posting to payout.

The orchestrator is the coordination layer between the market (contracts
and proposals) and the escrow ledger. It owns contract state and calls
the arbitrator and ledger inside its own unit of work, so the contract
and the money always move in a single commit:

    accept_proposal  → proposals accepted/rejected, contract assigned,
                       escrow transaction created
    confirm_deposit  → contract FUNDS_HELD, escrow FUNDS_HELD
    approve_work     → contract COMPLETED, escrow released
    cancel_contract  → contract CANCELLED, pending escrow cancelled
    dispute_contract → contract DISPUTED, escrow frozen

Every successful operation publishes exactly one contract-level domain
event. Ledger sub-operations publish their own ledger events. Calling an
operation whose target state was already reached is a no-op success and
publishes nothing, so a caller that timed out can simply retry.

Accepting is the exception: a second acceptance of a contract that
already left OPEN fails with AlreadyAssigned, including when it loses
the commit race to a concurrent acceptance.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

import structlog

from marketplace.actors.authorization import AuthorizationGuard
from marketplace.compensation.ledger import EscrowLedger
from marketplace.defaults import Clock, IdFactory, new_id, to_money, utc_now
from marketplace.errors import (
    AlreadyAssigned,
    ConcurrentModification,
    InvalidTransition,
    NotFound,
)
from marketplace.events.bus import DomainEvent, DomainEventKind, EventBus
from marketplace.market.arbitrator import ProposalArbitrator
from marketplace.market.contract_state_machine import ContractStateMachine
from marketplace.models.actor import ActorRole
from marketplace.models.contract import Contract, ContractDetails, ContractState, ProposalState
from marketplace.models.escrow import EscrowState
from marketplace.persistence.repository import Repository, UnitOfWork
from marketplace.workflow.notifier import LoggingNotifier, Notifier

logger = structlog.get_logger(__name__)

# A unit that loses a commit race is re-read and re-applied this many times.
_COMMIT_ATTEMPTS = 3

# operation(unit, contract) -> changed
_Step = Callable[[UnitOfWork, Contract], bool]


class ContractOrchestrator:
    """Coordinates the contract lifecycle across market and ledger.

    Usage:
        orch = ContractOrchestrator(repo, bus, ledger, arbitrator, guard)
        contract = orch.create_contract("client-1", ContractDetails(title="Logo"))
        proposal = arbitrator.submit_proposal(contract.contract_id, "spec-1", Decimal("180"))
        orch.accept_proposal(contract.contract_id, proposal.proposal_id)
        orch.confirm_deposit(contract.contract_id, "pay_123")
        orch.deliver_work(contract.contract_id)
        orch.approve_work(contract.contract_id)
    """

    def __init__(
        self,
        repository: Repository,
        bus: EventBus,
        ledger: EscrowLedger,
        arbitrator: ProposalArbitrator,
        guard: AuthorizationGuard,
        notifier: Optional[Notifier] = None,
        deposit_timeout: timedelta = timedelta(hours=24),
        clock: Optional[Clock] = None,
        id_factory: Optional[IdFactory] = None,
    ) -> None:
        self._repo = repository
        self._bus = bus
        self._ledger = ledger
        self._arbitrator = arbitrator
        self._guard = guard
        self._notifier = notifier or LoggingNotifier()
        self._deposit_timeout = deposit_timeout
        self._clock = clock or utc_now
        self._new_id = id_factory or new_id

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_contract(
        self,
        client_id: str,
        details: ContractDetails,
        now: Optional[datetime] = None,
    ) -> Contract:
        """Post a new contract in OPEN with no proposals."""
        if not details.title or not details.title.strip():
            raise ValueError("Contract title must not be blank")
        budget = to_money(details.suggested_budget)
        if budget < Decimal("0"):
            raise ValueError("Suggested budget must be non-negative")
        self._guard.require_not_suspended(client_id)
        now = now or self._clock()

        contract = Contract(
            contract_id=self._new_id("contract"),
            client_id=client_id,
            title=details.title.strip(),
            description=details.description,
            suggested_budget=budget,
            deadline_utc=details.deadline_utc,
            created_utc=now,
        )
        unit = self._repo.begin()
        unit.add(contract)
        unit.commit()
        self._bus.publish(DomainEvent.create(
            DomainEventKind.CONTRACT_CREATED, "contract", contract.contract_id,
            actor_id=client_id,
            after=contract.snapshot(),
            payload={"title": contract.title, "suggested_budget": str(budget)},
            now=now,
        ))
        return contract

    def accept_proposal(
        self,
        contract_id: str,
        proposal_id: str,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Contract:
        """Assign the contract to one proposal and open escrow for its price."""
        now = now or self._clock()
        rejected_specialists: list[str] = []

        def step(unit: UnitOfWork, contract: Contract) -> bool:
            self._guard.require_client_or_admin(contract, actor_id)
            if contract.state != ContractState.OPEN:
                raise AlreadyAssigned(
                    f"Contract {contract_id} is {contract.state.value}, already assigned or closed"
                )
            winner, rejected = ProposalArbitrator.stage_acceptance(unit, contract, proposal_id)
            rejected_specialists[:] = [p.specialist_id for p in rejected]
            ContractStateMachine.apply_transition(contract, ContractState.AWAITING_DEPOSIT)
            contract.specialist_id = winner.specialist_id
            contract.final_price = winner.price
            contract.assigned_utc = now
            self._ledger.create_transaction(contract_id, winner.price, uow=unit, now=now)
            return True

        try:
            contract, _ = self._execute("accept_proposal", contract_id, step, actor_id, now)
        except ConcurrentModification:
            raise AlreadyAssigned(
                f"Contract {contract_id} was assigned by a concurrent acceptance"
            ) from None
        except InvalidTransition:
            # The proposal may have been rejected by a winning acceptance
            # between our read of the contract and of the proposal.
            current = self._repo.get_contract(contract_id)
            if current is not None and current.state != ContractState.OPEN:
                raise AlreadyAssigned(
                    f"Contract {contract_id} was assigned by a concurrent acceptance"
                ) from None
            raise

        payload = {"contract_id": contract_id, "final_price": str(contract.final_price)}
        self._notify(contract.specialist_id, "proposal_accepted", payload)
        for specialist_id in rejected_specialists:
            self._notify(specialist_id, "proposal_rejected", {"contract_id": contract_id})
        self._notify(contract.client_id, "deposit_required", payload)
        return contract

    def confirm_deposit(
        self,
        contract_id: str,
        reference: str,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Contract:
        """AWAITING_DEPOSIT → FUNDS_HELD; escrow funded in the same unit."""
        if not reference or not reference.strip():
            raise ValueError("Payment reference must not be blank")
        now = now or self._clock()

        def step(unit: UnitOfWork, contract: Contract) -> bool:
            self._guard.require_client_or_admin(contract, actor_id)
            if contract.state == ContractState.FUNDS_HELD:
                return False
            ContractStateMachine.apply_transition(contract, ContractState.FUNDS_HELD)
            self._ledger.confirm_deposit(self._escrow_id(contract), reference, uow=unit, now=now)
            return True

        contract, changed = self._execute("confirm_deposit", contract_id, step, actor_id, now)
        if changed:
            self._notify(contract.specialist_id, "funds_held", {"contract_id": contract_id})
        return contract

    def deliver_work(
        self,
        contract_id: str,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Contract:
        """FUNDS_HELD → DELIVERED. Specialist-initiated."""
        now = now or self._clock()

        def step(unit: UnitOfWork, contract: Contract) -> bool:
            self._guard.require_specialist(contract, actor_id)
            if contract.state == ContractState.DELIVERED:
                return False
            ContractStateMachine.apply_transition(contract, ContractState.DELIVERED)
            return True

        contract, changed = self._execute("deliver_work", contract_id, step, actor_id, now)
        if changed:
            self._notify(contract.client_id, "work_delivered", {"contract_id": contract_id})
        return contract

    def approve_work(
        self,
        contract_id: str,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Contract:
        """DELIVERED → COMPLETED; escrow released to the specialist."""
        now = now or self._clock()

        def step(unit: UnitOfWork, contract: Contract) -> bool:
            self._guard.require_client_or_admin(contract, actor_id)
            if contract.state == ContractState.COMPLETED:
                return False
            ContractStateMachine.apply_transition(contract, ContractState.COMPLETED)
            contract.completed_utc = now
            self._ledger.release(self._escrow_id(contract), uow=unit, now=now, actor_id=actor_id)
            return True

        contract, changed = self._execute("approve_work", contract_id, step, actor_id, now)
        if changed:
            self._notify(contract.specialist_id, "payment_released", {"contract_id": contract_id})
        return contract

    def cancel_contract(
        self,
        contract_id: str,
        actor_id: Optional[str] = None,
        reason: str = "cancelled_by_client",
        now: Optional[datetime] = None,
    ) -> Contract:
        """OPEN | AWAITING_DEPOSIT → CANCELLED.

        Pending proposals are rejected; an unfunded escrow is cancelled.
        """
        now = now or self._clock()
        contract, changed = self._execute(
            "cancel_contract", contract_id, self._cancel_step(actor_id, now), actor_id, now,
            extra={"reason": reason},
        )
        if changed:
            self._notify_parties(contract, "contract_cancelled", {"reason": reason})
        return contract

    def dispute_contract(
        self,
        contract_id: str,
        actor_id: Optional[str] = None,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> Contract:
        """FUNDS_HELD | DELIVERED → DISPUTED; escrow frozen until resolved."""
        now = now or self._clock()

        def step(unit: UnitOfWork, contract: Contract) -> bool:
            self._guard.require_party(contract, actor_id)
            if contract.state == ContractState.DISPUTED:
                return False
            ContractStateMachine.apply_transition(contract, ContractState.DISPUTED)
            self._ledger.mark_disputed(self._escrow_id(contract), uow=unit, now=now, actor_id=actor_id)
            return True

        contract, changed = self._execute(
            "dispute_contract", contract_id, step, actor_id, now, extra={"reason": reason},
        )
        if changed:
            self._notify_parties(contract, "contract_disputed", {"reason": reason})
            for admin in self._admin_ids():
                self._notify(admin, "dispute_opened", {"contract_id": contract_id})
        return contract

    def expire_stale_deposits(self, now: Optional[datetime] = None) -> list[str]:
        """Cancel contracts whose deposit did not arrive in time.

        Returns the ids of the contracts cancelled by this sweep.
        """
        now = now or self._clock()
        cutoff = now - self._deposit_timeout
        expired: list[str] = []
        for contract in self._repo.contracts_in_state(ContractState.AWAITING_DEPOSIT):
            if contract.assigned_utc is None or contract.assigned_utc > cutoff:
                continue
            try:
                cancelled, changed = self._execute(
                    "expire_deposit", contract.contract_id, self._cancel_step(None, now), None, now,
                    extra={"reason": "deposit_timeout"},
                )
            except (InvalidTransition, ConcurrentModification) as exc:
                # Deposit confirmed or contract cancelled while sweeping.
                logger.info(
                    "deposit_expiry_skipped",
                    contract_id=contract.contract_id,
                    error=str(exc),
                )
                continue
            if changed:
                expired.append(cancelled.contract_id)
                self._notify_parties(cancelled, "contract_cancelled", {"reason": "deposit_timeout"})
        if expired:
            logger.info("stale_deposits_expired", count=len(expired), contract_ids=expired)
        return expired

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_contract(self, contract_id: str) -> Contract:
        contract = self._repo.get_contract(contract_id)
        if contract is None:
            raise NotFound(f"Contract not found: {contract_id}")
        return contract

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _cancel_step(self, actor_id: Optional[str], now: datetime) -> _Step:
        def step(unit: UnitOfWork, contract: Contract) -> bool:
            self._guard.require_client_or_admin(contract, actor_id)
            if contract.state == ContractState.CANCELLED:
                return False
            previous = contract.state
            ContractStateMachine.apply_transition(contract, ContractState.CANCELLED)
            contract.cancelled_utc = now
            if previous == ContractState.OPEN:
                for proposal in unit.proposals_for_contract(contract.contract_id):
                    if proposal.state == ProposalState.PENDING:
                        proposal.state = ProposalState.REJECTED
                        unit.save(proposal)
            elif contract.escrow_id is not None:
                txn = unit.escrow(contract.escrow_id)
                if txn.state == EscrowState.PENDING_DEPOSIT:
                    self._ledger.cancel(txn.transaction_id, uow=unit, now=now, actor_id=actor_id)
            return True

        return step

    def _execute(
        self,
        operation: str,
        contract_id: str,
        step: _Step,
        actor_id: Optional[str],
        now: datetime,
        extra: Optional[dict[str, Any]] = None,
    ) -> tuple[Contract, bool]:
        """Run ``step`` in a fresh unit, commit, then publish.

        On a lost commit race the unit is discarded and the step re-run
        against fresh state, up to _COMMIT_ATTEMPTS times.
        """
        attempt = 1
        while True:
            unit = self._repo.begin()
            contract = unit.contract(contract_id)
            before = contract.snapshot()
            from_state = contract.state
            if not step(unit, contract):
                return contract, False
            unit.save(contract)
            payload = {
                "operation": operation,
                "from_state": from_state.value,
                "to_state": contract.state.value,
            }
            payload.update(extra or {})
            unit.events.append(DomainEvent.create(
                DomainEventKind.CONTRACT_UPDATED, "contract", contract_id,
                actor_id=actor_id,
                before=before,
                after=contract.snapshot(),
                payload=payload,
                now=now,
            ))
            try:
                unit.commit()
            except ConcurrentModification:
                if attempt >= _COMMIT_ATTEMPTS:
                    raise
                attempt += 1
                continue
            self._bus.publish_all(unit.events)
            return contract, True

    @staticmethod
    def _escrow_id(contract: Contract) -> str:
        if contract.escrow_id is None:
            raise InvalidTransition(f"Contract {contract.contract_id} has no escrow transaction")
        return contract.escrow_id

    def _admin_ids(self) -> list[str]:
        return [a.actor_id for a in self._repo.actors_with_role(ActorRole.ADMIN)]

    def _notify_parties(self, contract: Contract, kind: str, extra: dict[str, Any]) -> None:
        payload = {"contract_id": contract.contract_id, **extra}
        self._notify(contract.client_id, kind, payload)
        if contract.specialist_id is not None:
            self._notify(contract.specialist_id, kind, payload)

    def _notify(self, recipient_id: Optional[str], kind: str, payload: dict[str, Any]) -> None:
        if recipient_id is None:
            return
        try:
            self._notifier.notify(recipient_id, kind, payload)
        except Exception as exc:  # notification is best-effort
            logger.warning(
                "notification_failed",
                recipient_id=recipient_id,
                kind=kind,
                error=str(exc),
            )
