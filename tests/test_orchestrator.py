"""Tests for the contract orchestrator — proves the lifecycle is atomic,
exclusive on acceptance and idempotent on retry."""

import threading
import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from marketplace.errors import AlreadyAssigned, InvalidTransition
from marketplace.events.bus import DomainEvent, DomainEventKind
from marketplace.models.actor import ActorRole
from marketplace.models.contract import ContractState, ProposalState
from marketplace.models.escrow import EscrowState
from marketplace.policy.resolver import PolicyResolver
from marketplace.service import MarketplaceService
from marketplace.workflow.notifier import RecordingNotifier


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


class _Clock:
    def __init__(self) -> None:
        self.now = _now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now += timedelta(**kwargs)


class _BrokenNotifier:
    def notify(self, recipient_id: str, kind: str, payload: dict) -> None:
        raise RuntimeError("push gateway down")


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def service(clock: _Clock, notifier: RecordingNotifier) -> MarketplaceService:
    svc = MarketplaceService(
        PolicyResolver.from_config_dir(CONFIG_DIR), notifier=notifier, clock=clock,
    )
    svc.register_actor("client-1", ActorRole.CLIENT, alias="Client")
    svc.register_actor("spec-1", ActorRole.SPECIALIST, alias="Spec One")
    svc.register_actor("spec-2", ActorRole.SPECIALIST, alias="Spec Two")
    svc.register_actor("admin-1", ActorRole.ADMIN, alias="Admin")
    return svc


def _contract(service: MarketplaceService, title: str = "Logo design") -> str:
    result = service.create_contract("client-1", title, suggested_budget=Decimal("200"))
    assert result.success, result.errors
    return result.data["contract_id"]


def _propose(service: MarketplaceService, contract_id: str, specialist: str, price: str) -> str:
    result = service.submit_proposal(contract_id, specialist, Decimal(price))
    assert result.success, result.errors
    return result.data["proposal_id"]


def _assigned(service: MarketplaceService) -> str:
    contract_id = _contract(service)
    proposal_id = _propose(service, contract_id, "spec-1", "180")
    assert service.accept_proposal(contract_id, proposal_id, actor_id="client-1").success
    return contract_id


def _funded(service: MarketplaceService) -> str:
    contract_id = _assigned(service)
    assert service.confirm_deposit(contract_id, "pay_123", actor_id="client-1").success
    return contract_id


class TestCreateContract:
    def test_new_contract_is_open(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        contract = service.orchestrator.get_contract(contract_id)
        assert contract.state == ContractState.OPEN
        assert contract.final_price is None
        assert contract.proposal_ids == []
        assert contract.created_utc == _now()

    def test_blank_title_rejected(self, service: MarketplaceService) -> None:
        result = service.create_contract("client-1", "   ")
        assert not result.success
        assert result.code == "invalid_input"

    def test_negative_budget_rejected(self, service: MarketplaceService) -> None:
        result = service.create_contract("client-1", "Logo", suggested_budget=Decimal("-1"))
        assert not result.success
        assert result.code == "invalid_input"

    def test_suspended_client_cannot_post(self, service: MarketplaceService) -> None:
        service.directory.suspend("client-1", "fraud review")
        result = service.create_contract("client-1", "Logo")
        assert not result.success
        assert result.code == "permission_denied"

    def test_creation_is_audited(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        records = service.audit_log.query(action="contract_created", resource_id=contract_id)
        assert len(records) == 1
        assert records[0].actor_id == "client-1"


class TestAcceptProposal:
    def test_accept_creates_escrow(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        proposal_id = _propose(service, contract_id, "spec-1", "180")
        result = service.accept_proposal(contract_id, proposal_id, actor_id="client-1")
        assert result.success
        assert result.data["final_price"] == Decimal("180.00")

        contract = service.orchestrator.get_contract(contract_id)
        assert contract.state == ContractState.AWAITING_DEPOSIT
        assert contract.specialist_id == "spec-1"
        assert contract.assigned_utc == _now()

        txn = service.ledger.get_transaction(result.data["escrow_id"])
        assert txn.state == EscrowState.PENDING_DEPOSIT
        assert txn.amount == Decimal("180.00")
        assert txn.commission == Decimal("27.00")
        assert txn.payout == Decimal("153.00")

    def test_other_proposals_rejected_in_same_commit(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        p1 = _propose(service, contract_id, "spec-1", "180")
        p2 = _propose(service, contract_id, "spec-2", "150")
        service.accept_proposal(contract_id, p1, actor_id="client-1")
        assert service.repository.get_proposal(p1).state == ProposalState.ACCEPTED
        assert service.repository.get_proposal(p2).state == ProposalState.REJECTED

    def test_second_accept_is_already_assigned(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        p1 = _propose(service, contract_id, "spec-1", "180")
        p2 = _propose(service, contract_id, "spec-2", "150")
        assert service.accept_proposal(contract_id, p1, actor_id="client-1").success

        result = service.accept_proposal(contract_id, p2, actor_id="client-1")
        assert not result.success
        assert result.code == "already_assigned"
        with pytest.raises(AlreadyAssigned):
            service.orchestrator.accept_proposal(contract_id, p2)

        contract = service.orchestrator.get_contract(contract_id)
        assert contract.specialist_id == "spec-1"
        assert contract.final_price == Decimal("180.00")
        assert len(service.repository.escrows_for_contract(contract_id)) == 1

    def test_repeating_the_winning_accept_is_already_assigned(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        p1 = _propose(service, contract_id, "spec-1", "180")
        service.accept_proposal(contract_id, p1, actor_id="client-1")
        result = service.accept_proposal(contract_id, p1, actor_id="client-1")
        assert result.code == "already_assigned"

    def test_concurrent_accepts_one_winner(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        proposals = [
            _propose(service, contract_id, "spec-1", "180"),
            _propose(service, contract_id, "spec-2", "150"),
        ]
        barrier = threading.Barrier(len(proposals))
        outcomes: list[Any] = []
        lock = threading.Lock()

        def accept(proposal_id: str) -> None:
            barrier.wait()
            try:
                contract = service.orchestrator.accept_proposal(contract_id, proposal_id)
                outcome: Any = contract.specialist_id
            except AlreadyAssigned as exc:
                outcome = exc
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=accept, args=(p,)) for p in proposals]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [o for o in outcomes if isinstance(o, str)]
        losers = [o for o in outcomes if isinstance(o, AlreadyAssigned)]
        assert len(winners) == 1
        assert len(losers) == 1
        states = sorted(service.repository.get_proposal(p).state.value for p in proposals)
        assert states == ["accepted", "rejected"]
        assert len(service.repository.escrows_for_contract(contract_id)) == 1
        assert service.orchestrator.get_contract(contract_id).specialist_id == winners[0]

    def test_proposal_from_other_contract_rejected(self, service: MarketplaceService) -> None:
        first = _contract(service, "First")
        second = _contract(service, "Second")
        foreign = _propose(service, second, "spec-1", "90")
        with pytest.raises(InvalidTransition):
            service.orchestrator.accept_proposal(first, foreign)
        assert service.orchestrator.get_contract(first).state == ContractState.OPEN

    def test_only_client_may_accept(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        p1 = _propose(service, contract_id, "spec-1", "180")
        result = service.accept_proposal(contract_id, p1, actor_id="spec-2")
        assert result.code == "permission_denied"
        assert service.orchestrator.get_contract(contract_id).state == ContractState.OPEN

    def test_admin_may_accept(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        p1 = _propose(service, contract_id, "spec-1", "180")
        assert service.accept_proposal(contract_id, p1, actor_id="admin-1").success


class TestFullLifecycle:
    def test_post_to_payout(self, service: MarketplaceService) -> None:
        contract_id = _funded(service)
        assert service.orchestrator.get_contract(contract_id).state == ContractState.FUNDS_HELD
        assert service.repository.get_actor("client-1").escrow_balance == Decimal("180.00")

        assert service.deliver_work(contract_id, actor_id="spec-1").success
        assert service.orchestrator.get_contract(contract_id).state == ContractState.DELIVERED

        result = service.approve_work(contract_id, actor_id="client-1")
        assert result.success
        contract = result.data["contract"]
        assert contract.state == ContractState.COMPLETED
        assert contract.completed_utc == _now()

        txn = service.ledger.transaction_for_contract(contract_id)
        assert txn.state == EscrowState.RELEASED_TO_SPECIALIST
        specialist = service.repository.get_actor("spec-1")
        assert specialist.earnings_total == Decimal("153.00")
        assert specialist.jobs_completed == 1
        assert service.repository.get_actor("client-1").escrow_balance == Decimal("0.00")

        log = service.audit_log
        assert len(log.query(action="contract_updated", resource_id=contract_id)) == 4
        assert len(log.query(action="contract_created", resource_id=contract_id)) == 1

    def test_one_contract_event_per_operation(self, service: MarketplaceService) -> None:
        contract_id = _funded(service)
        seen: list[DomainEvent] = []
        service.bus.subscribe("collector", seen.append)
        service.deliver_work(contract_id, actor_id="spec-1")
        assert [e.kind for e in seen] == [DomainEventKind.CONTRACT_UPDATED]
        assert seen[0].payload["from_state"] == "funds_held"
        assert seen[0].payload["to_state"] == "delivered"
        assert seen[0].payload["operation"] == "deliver_work"

    def test_approve_before_deposit_fails(self, service: MarketplaceService) -> None:
        contract_id = _assigned(service)
        result = service.approve_work(contract_id, actor_id="client-1")
        assert result.code == "invalid_transition"
        assert service.orchestrator.get_contract(contract_id).state == ContractState.AWAITING_DEPOSIT
        assert service.repository.get_actor("spec-1").earnings_total == Decimal("0")

    def test_deliver_on_open_contract_fails(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        result = service.deliver_work(contract_id)
        assert result.code == "invalid_transition"

    def test_blank_deposit_reference_rejected(self, service: MarketplaceService) -> None:
        contract_id = _assigned(service)
        result = service.confirm_deposit(contract_id, " ")
        assert result.code == "invalid_input"

    def test_unknown_contract(self, service: MarketplaceService) -> None:
        assert service.deliver_work("contract-missing").code == "not_found"


class TestIdempotentRetries:
    def test_confirm_deposit_twice(self, service: MarketplaceService) -> None:
        contract_id = _funded(service)
        before = len(service.audit_log.query(action="contract_updated", resource_id=contract_id))
        result = service.confirm_deposit(contract_id, "pay_123", actor_id="client-1")
        assert result.success
        after = len(service.audit_log.query(action="contract_updated", resource_id=contract_id))
        assert after == before
        assert service.repository.get_actor("client-1").escrow_balance == Decimal("180.00")

    def test_approve_twice_pays_once(self, service: MarketplaceService) -> None:
        contract_id = _funded(service)
        service.deliver_work(contract_id, actor_id="spec-1")
        service.approve_work(contract_id, actor_id="client-1")
        assert service.approve_work(contract_id, actor_id="client-1").success
        specialist = service.repository.get_actor("spec-1")
        assert specialist.earnings_total == Decimal("153.00")
        assert specialist.jobs_completed == 1
        assert len(service.audit_log.query(action="escrow_released")) == 1


class TestCancel:
    def test_cancel_open_rejects_pending_proposals(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        p1 = _propose(service, contract_id, "spec-1", "180")
        result = service.cancel_contract(contract_id, actor_id="client-1")
        assert result.success
        contract = service.orchestrator.get_contract(contract_id)
        assert contract.state == ContractState.CANCELLED
        assert contract.cancelled_utc == _now()
        assert service.repository.get_proposal(p1).state == ProposalState.REJECTED
        assert contract.final_price is None
        assert contract.specialist_id is None

    def test_cancel_awaiting_deposit_cancels_escrow(self, service: MarketplaceService) -> None:
        contract_id = _assigned(service)
        assert service.cancel_contract(contract_id, actor_id="client-1").success
        txn = service.ledger.transaction_for_contract(contract_id)
        assert txn.state == EscrowState.CANCELLED
        contract = service.orchestrator.get_contract(contract_id)
        assert contract.final_price == Decimal("180.00")
        assert contract.specialist_id == "spec-1"

    def test_funded_contract_cannot_be_cancelled(self, service: MarketplaceService) -> None:
        contract_id = _funded(service)
        result = service.cancel_contract(contract_id, actor_id="client-1")
        assert result.code == "invalid_transition"
        assert service.orchestrator.get_contract(contract_id).state == ContractState.FUNDS_HELD

    def test_specialist_cannot_cancel(self, service: MarketplaceService) -> None:
        contract_id = _assigned(service)
        assert service.cancel_contract(contract_id, actor_id="spec-1").code == "permission_denied"

    def test_cancel_twice_is_noop(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        service.cancel_contract(contract_id, actor_id="client-1")
        assert service.cancel_contract(contract_id, actor_id="client-1").success
        assert len(service.audit_log.query(action="contract_updated", resource_id=contract_id)) == 1

    def test_cancelled_contract_is_terminal(self, service: MarketplaceService) -> None:
        contract_id = _contract(service)
        service.cancel_contract(contract_id, actor_id="client-1")
        result = service.submit_proposal(contract_id, "spec-1", Decimal("100"))
        assert result.code == "invalid_transition"


class TestDepositExpiry:
    def test_stale_deposit_cancelled(
        self, service: MarketplaceService, clock: _Clock, notifier: RecordingNotifier,
    ) -> None:
        contract_id = _assigned(service)
        clock.advance(hours=25)
        result = service.expire_stale_deposits()
        assert result.success
        assert result.data["expired"] == [contract_id]
        assert service.orchestrator.get_contract(contract_id).state == ContractState.CANCELLED
        assert service.ledger.transaction_for_contract(contract_id).state == EscrowState.CANCELLED
        assert "contract_cancelled" in notifier.kinds_for("client-1")

    def test_recent_assignment_kept(self, service: MarketplaceService, clock: _Clock) -> None:
        contract_id = _assigned(service)
        clock.advance(hours=1)
        assert service.expire_stale_deposits().data["expired"] == []
        assert service.orchestrator.get_contract(contract_id).state == ContractState.AWAITING_DEPOSIT

    def test_funded_contract_not_expired(self, service: MarketplaceService, clock: _Clock) -> None:
        contract_id = _funded(service)
        clock.advance(days=3)
        assert service.expire_stale_deposits().data["expired"] == []
        assert service.orchestrator.get_contract(contract_id).state == ContractState.FUNDS_HELD


class TestPartiesAndDisputes:
    def test_only_assigned_specialist_delivers(self, service: MarketplaceService) -> None:
        contract_id = _funded(service)
        assert service.deliver_work(contract_id, actor_id="spec-2").code == "permission_denied"
        assert service.orchestrator.get_contract(contract_id).state == ContractState.FUNDS_HELD

    def test_outsider_cannot_dispute(self, service: MarketplaceService) -> None:
        contract_id = _funded(service)
        assert service.dispute_contract(contract_id, actor_id="spec-2").code == "permission_denied"

    def test_dispute_freezes_escrow(self, service: MarketplaceService) -> None:
        contract_id = _funded(service)
        result = service.dispute_contract(contract_id, actor_id="client-1", reason="late")
        assert result.success
        assert result.data["contract"].state == ContractState.DISPUTED
        txn = service.ledger.transaction_for_contract(contract_id)
        assert txn.state == EscrowState.DISPUTED
        assert service.approve_work(contract_id, actor_id="client-1").code == "invalid_transition"

    def test_client_cannot_cancel_disputed_contract(self, service: MarketplaceService) -> None:
        contract_id = _funded(service)
        service.dispute_contract(contract_id, actor_id="spec-1")
        result = service.cancel_contract(contract_id, actor_id="client-1")
        assert result.code == "invalid_transition"
        assert service.orchestrator.get_contract(contract_id).state == ContractState.DISPUTED
        assert service.ledger.transaction_for_contract(contract_id).state == EscrowState.DISPUTED

        resolved = service.resolve_dispute("admin-1", contract_id, "client")
        assert resolved.success
        assert service.orchestrator.get_contract(contract_id).state == ContractState.CANCELLED
        txn = service.ledger.transaction_for_contract(contract_id)
        assert txn.state == EscrowState.REFUNDED_TO_CLIENT

    def test_approval_cannot_bypass_adjudication(self, service: MarketplaceService) -> None:
        contract_id = _funded(service)
        service.deliver_work(contract_id, actor_id="spec-1")
        service.dispute_contract(contract_id, actor_id="client-1")
        for actor in ("client-1", "admin-1"):
            assert service.approve_work(contract_id, actor_id=actor).code == "invalid_transition"
        assert service.ledger.transaction_for_contract(contract_id).state == EscrowState.DISPUTED
        assert service.directory.get("spec-1").earnings_total == Decimal("0")

    def test_dispute_after_delivery(self, service: MarketplaceService) -> None:
        contract_id = _funded(service)
        service.deliver_work(contract_id, actor_id="spec-1")
        assert service.dispute_contract(contract_id, actor_id="spec-1").success

    def test_dispute_before_funding_fails(self, service: MarketplaceService) -> None:
        contract_id = _assigned(service)
        assert service.dispute_contract(contract_id, actor_id="client-1").code == "invalid_transition"


class TestNotifications:
    def test_accept_notifies_everyone(
        self, service: MarketplaceService, notifier: RecordingNotifier,
    ) -> None:
        contract_id = _contract(service)
        p1 = _propose(service, contract_id, "spec-1", "180")
        _propose(service, contract_id, "spec-2", "150")
        service.accept_proposal(contract_id, p1, actor_id="client-1")
        assert "proposal_accepted" in notifier.kinds_for("spec-1")
        assert "proposal_rejected" in notifier.kinds_for("spec-2")
        assert "deposit_required" in notifier.kinds_for("client-1")

    def test_dispute_notifies_admins(
        self, service: MarketplaceService, notifier: RecordingNotifier,
    ) -> None:
        contract_id = _funded(service)
        service.dispute_contract(contract_id, actor_id="client-1")
        assert "dispute_opened" in notifier.kinds_for("admin-1")
        assert "contract_disputed" in notifier.kinds_for("spec-1")

    def test_failing_notifier_does_not_fail_operation(self, clock: _Clock) -> None:
        svc = MarketplaceService(
            PolicyResolver.from_config_dir(CONFIG_DIR), notifier=_BrokenNotifier(), clock=clock,
        )
        svc.register_actor("client-1", ActorRole.CLIENT)
        svc.register_actor("spec-1", ActorRole.SPECIALIST)
        contract_id = _assigned(svc)
        assert svc.orchestrator.get_contract(contract_id).state == ContractState.AWAITING_DEPOSIT
