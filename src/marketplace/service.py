"""Marketplace service — unified facade over the contract, escrow, dispute
and audit subsystems.

Wires every component from a single PolicyResolver and exposes the
client/specialist/admin operations as ServiceResult-returning methods.
Core components raise typed errors; this is the one place they are turned
into result objects with a stable error code.

Bus subscription order is fixed: the audit recorder first, then the
security detector, so detector window queries see the audit record of the
event being evaluated.
"""

from __future__ import annotations

from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Iterable, Optional

import structlog

from marketplace.actors.authorization import AuthorizationGuard
from marketplace.actors.directory import ActorDirectory
from marketplace.audit.detector import SecurityAnomalyDetector
from marketplace.audit.recorder import AuditRecorder, AuditSearchFilters
from marketplace.compensation.commission import compute_commission
from marketplace.compensation.ledger import EscrowLedger
from marketplace.defaults import Clock, IdFactory, utc_now
from marketplace.errors import MarketplaceError, PermissionDenied
from marketplace.events.bus import EventBus
from marketplace.legal.disputes import DisputeResolver
from marketplace.logging import bind_context, clear_context
from marketplace.market.arbitrator import ProposalArbitrator
from marketplace.models.actor import ActorRole
from marketplace.models.audit import Category, RiskLevel, SecurityEventType, Severity
from marketplace.models.contract import ContractDetails, DisputeOutcome
from marketplace.persistence.audit_log import AuditLog
from marketplace.persistence.repository import InMemoryRepository, Repository
from marketplace.policy.resolver import PolicyResolver
from marketplace.workflow.notifier import Notifier
from marketplace.workflow.orchestrator import ContractOrchestrator

logger = structlog.get_logger(__name__)

# Repeated unauthorized attempts at one admin operation collapse into one
# security event per window.
_UNAUTHORIZED_WINDOW = timedelta(hours=1)


@dataclass
class ServiceResult:
    """Result of a service operation."""
    success: bool
    errors: list[str] = field(default_factory=list)
    code: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict)


class MarketplaceService:
    """Marketplace facade.

    Usage:
        resolver = PolicyResolver.from_config_dir(config_dir)
        service = MarketplaceService(resolver)

        service.register_actor("client-1", ActorRole.CLIENT)
        service.register_actor("spec-1", ActorRole.SPECIALIST)
        result = service.create_contract("client-1", "Logo design")
        contract_id = result.data["contract_id"]
        result = service.submit_proposal(contract_id, "spec-1", Decimal("180"))
        service.accept_proposal(contract_id, result.data["proposal_id"], actor_id="client-1")
    """

    def __init__(
        self,
        resolver: PolicyResolver,
        repository: Optional[Repository] = None,
        audit_log: Optional[AuditLog] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
        id_factory: Optional[IdFactory] = None,
        executor: Optional[Executor] = None,
    ) -> None:
        self._resolver = resolver
        self._clock = clock or utc_now
        self._repo = repository if repository is not None else InMemoryRepository()
        self._audit_log = audit_log if audit_log is not None else AuditLog()
        self._bus = EventBus(
            max_attempts=resolver.audit_delivery_attempts(),
            executor=executor,
        )

        self._directory = ActorDirectory(self._repo, self._bus, clock=clock)
        self._guard = AuthorizationGuard(self._directory)
        self._ledger = EscrowLedger(
            self._repo, self._bus,
            commission_rate=resolver.commission_rate(),
            clock=clock, id_factory=id_factory,
        )
        self._arbitrator = ProposalArbitrator(
            self._repo, self._bus, self._guard, clock=clock, id_factory=id_factory,
        )
        self._orchestrator = ContractOrchestrator(
            self._repo, self._bus, self._ledger, self._arbitrator, self._guard,
            notifier=notifier,
            deposit_timeout=resolver.deposit_timeout(),
            clock=clock, id_factory=id_factory,
        )
        self._disputes = DisputeResolver(
            self._repo, self._bus, self._ledger, self._guard,
            notifier=notifier, clock=clock,
        )
        self._recorder = AuditRecorder(
            self._audit_log, self._guard,
            redacted_fields=resolver.redacted_fields(),
            clock=clock, id_factory=id_factory,
        )
        self._detector = SecurityAnomalyDetector(
            self._audit_log, self._directory, self._guard, self._recorder,
            resolver.detector_policy(),
            clock=clock, id_factory=id_factory,
        )

        self._bus.subscribe("audit_recorder", self._recorder.handle)
        self._bus.subscribe("security_detector", self._detector.handle)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def repository(self) -> Repository:
        return self._repo

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    @property
    def bus(self) -> EventBus:
        return self._bus

    @property
    def directory(self) -> ActorDirectory:
        return self._directory

    @property
    def orchestrator(self) -> ContractOrchestrator:
        return self._orchestrator

    @property
    def arbitrator(self) -> ProposalArbitrator:
        return self._arbitrator

    @property
    def ledger(self) -> EscrowLedger:
        return self._ledger

    @property
    def disputes(self) -> DisputeResolver:
        return self._disputes

    @property
    def recorder(self) -> AuditRecorder:
        return self._recorder

    @property
    def detector(self) -> SecurityAnomalyDetector:
        return self._detector

    # ------------------------------------------------------------------
    # Actors
    # ------------------------------------------------------------------

    def register_actor(
        self,
        actor_id: str,
        role: ActorRole,
        alias: str = "",
        email: str = "",
        skills: Optional[list[str]] = None,
    ) -> ServiceResult:
        def run() -> dict[str, Any]:
            actor = self._directory.register(actor_id, ActorRole(role), alias, email, skills)
            return {"actor_id": actor.actor_id, "actor": actor}
        return self._call("register_actor", run)

    def update_profile(
        self,
        actor_id: str,
        changed_by: Optional[str] = None,
        **changes: Any,
    ) -> ServiceResult:
        """Change role, alias, email or skills of an actor."""
        def run() -> dict[str, Any]:
            if "role" in changes and changes["role"] is not None:
                changes["role"] = ActorRole(changes["role"])
            actor = self._directory.update_profile(actor_id, changed_by=changed_by, **changes)
            return {"actor_id": actor.actor_id, "actor": actor}
        return self._call("update_profile", run)

    # ------------------------------------------------------------------
    # Contract lifecycle
    # ------------------------------------------------------------------

    def create_contract(
        self,
        client_id: str,
        title: str,
        description: str = "",
        suggested_budget: Decimal = Decimal("0"),
        deadline_utc: Optional[datetime] = None,
    ) -> ServiceResult:
        def run() -> dict[str, Any]:
            details = ContractDetails(
                title=title,
                description=description,
                suggested_budget=suggested_budget,
                deadline_utc=deadline_utc,
            )
            contract = self._orchestrator.create_contract(client_id, details)
            return {"contract_id": contract.contract_id, "contract": contract}
        return self._call("create_contract", run)

    def submit_proposal(
        self,
        contract_id: str,
        specialist_id: str,
        price: Decimal,
        message: str = "",
    ) -> ServiceResult:
        def run() -> dict[str, Any]:
            proposal = self._arbitrator.submit_proposal(contract_id, specialist_id, price, message)
            return {"proposal_id": proposal.proposal_id, "proposal": proposal}
        return self._call("submit_proposal", run)

    def accept_proposal(
        self,
        contract_id: str,
        proposal_id: str,
        actor_id: Optional[str] = None,
    ) -> ServiceResult:
        def run() -> dict[str, Any]:
            contract = self._orchestrator.accept_proposal(contract_id, proposal_id, actor_id=actor_id)
            return {
                "contract": contract,
                "escrow_id": contract.escrow_id,
                "final_price": contract.final_price,
            }
        return self._call("accept_proposal", run)

    def confirm_deposit(
        self,
        contract_id: str,
        reference: str,
        actor_id: Optional[str] = None,
    ) -> ServiceResult:
        return self._contract_call(
            "confirm_deposit",
            lambda: self._orchestrator.confirm_deposit(contract_id, reference, actor_id=actor_id),
        )

    def deliver_work(self, contract_id: str, actor_id: Optional[str] = None) -> ServiceResult:
        return self._contract_call(
            "deliver_work",
            lambda: self._orchestrator.deliver_work(contract_id, actor_id=actor_id),
        )

    def approve_work(self, contract_id: str, actor_id: Optional[str] = None) -> ServiceResult:
        return self._contract_call(
            "approve_work",
            lambda: self._orchestrator.approve_work(contract_id, actor_id=actor_id),
        )

    def cancel_contract(
        self,
        contract_id: str,
        actor_id: Optional[str] = None,
        reason: str = "cancelled_by_client",
    ) -> ServiceResult:
        return self._contract_call(
            "cancel_contract",
            lambda: self._orchestrator.cancel_contract(contract_id, actor_id=actor_id, reason=reason),
        )

    def dispute_contract(
        self,
        contract_id: str,
        actor_id: Optional[str] = None,
        reason: str = "",
    ) -> ServiceResult:
        return self._contract_call(
            "dispute_contract",
            lambda: self._orchestrator.dispute_contract(contract_id, actor_id=actor_id, reason=reason),
        )

    def expire_stale_deposits(self, now: Optional[datetime] = None) -> ServiceResult:
        def run() -> dict[str, Any]:
            return {"expired": self._orchestrator.expire_stale_deposits(now)}
        return self._call("expire_stale_deposits", run)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def resolve_dispute(
        self,
        admin_id: str,
        contract_id: str,
        outcome: DisputeOutcome,
        notes: str = "",
    ) -> ServiceResult:
        def run() -> dict[str, Any]:
            contract = self._disputes.resolve_dispute(admin_id, contract_id, outcome, notes)
            return {"contract_id": contract.contract_id, "contract": contract}
        return self._call("resolve_dispute", run, caller=admin_id)

    def dispute_details(self, admin_id: str, contract_id: str) -> ServiceResult:
        return self._call(
            "dispute_details",
            lambda: self._disputes.dispute_details(admin_id, contract_id),
            caller=admin_id,
        )

    def search_audit_logs(
        self,
        admin_id: str,
        filters: Optional[AuditSearchFilters] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> ServiceResult:
        def run() -> dict[str, Any]:
            events = self._recorder.search_audit_logs(admin_id, filters, limit, offset)
            return {"events": events, "count": len(events)}
        return self._call("search_audit_logs", run, caller=admin_id)

    def generate_audit_report(
        self,
        admin_id: str,
        start: datetime,
        end: datetime,
        categories: Optional[Iterable[Category]] = None,
        severity: Optional[Severity] = None,
    ) -> ServiceResult:
        def run() -> dict[str, Any]:
            report = self._recorder.generate_audit_report(
                admin_id, start, end, categories=categories, severity=severity,
            )
            return {"report": report}
        return self._call("generate_audit_report", run, caller=admin_id)

    def log_admin_action(
        self,
        admin_id: str,
        action: str,
        target_actor_id: Optional[str] = None,
        target_resource: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> ServiceResult:
        def run() -> dict[str, Any]:
            event = self._recorder.log_admin_action(
                admin_id, action, target_actor_id, target_resource, details,
            )
            return {"event_id": event.event_id, "event": event}
        return self._call("log_admin_action", run, caller=admin_id)

    def list_security_events(
        self,
        admin_id: str,
        unresolved_only: bool = False,
    ) -> ServiceResult:
        def run() -> dict[str, Any]:
            return {"events": self._detector.list_security_events(admin_id, unresolved_only)}
        return self._call("list_security_events", run, caller=admin_id)

    def resolve_security_event(
        self,
        admin_id: str,
        security_event_id: str,
        actions: Optional[list[str]] = None,
    ) -> ServiceResult:
        def run() -> dict[str, Any]:
            event = self._detector.resolve_security_event(admin_id, security_event_id, actions)
            return {"security_event": event}
        return self._call("resolve_security_event", run, caller=admin_id)

    def financial_metrics(self, admin_id: str, start: datetime, end: datetime) -> ServiceResult:
        def run() -> dict[str, Any]:
            self._guard.require_admin(admin_id)
            return self._ledger.financial_metrics(start, end)
        return self._call("financial_metrics", run, caller=admin_id)

    def quote(self, amount: Decimal) -> ServiceResult:
        """Commission breakdown for an amount at the configured rate."""
        def run() -> dict[str, Any]:
            breakdown = compute_commission(amount, self._resolver.commission_rate())
            return {
                "amount": breakdown.amount,
                "rate": breakdown.rate,
                "commission": breakdown.commission,
                "payout": breakdown.payout,
            }
        return self._call("quote", run)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _contract_call(self, operation: str, fn: Callable[[], Any]) -> ServiceResult:
        def run() -> dict[str, Any]:
            contract = fn()
            return {"contract_id": contract.contract_id, "contract": contract}
        return self._call(operation, run)

    def _call(
        self,
        operation: str,
        fn: Callable[[], dict[str, Any]],
        caller: Optional[str] = None,
    ) -> ServiceResult:
        """Run ``fn`` and convert core errors into a failed result.

        ``caller`` marks admin-only operations: a permission failure there
        is reported to the security detector.
        """
        bind_context(operation=operation)
        try:
            data = fn()
        except PermissionDenied as exc:
            if caller is not None:
                self._report_unauthorized(operation, caller)
            return ServiceResult(success=False, errors=[str(exc)], code=exc.code)
        except MarketplaceError as exc:
            logger.info("operation_rejected", code=exc.code, error=str(exc))
            return ServiceResult(success=False, errors=[str(exc)], code=exc.code)
        except (ValueError, InvalidOperation) as exc:
            return ServiceResult(success=False, errors=[str(exc)], code="invalid_input")
        finally:
            clear_context(["operation"])
        return ServiceResult(success=True, data=data)

    def _report_unauthorized(self, operation: str, actor_id: str) -> None:
        try:
            self._detector.raise_security_event(
                SecurityEventType.UNAUTHORIZED_ACCESS,
                actor_id,
                RiskLevel.HIGH,
                {"operation": operation},
                fingerprint=f"unauthorized_access:{actor_id}:{operation}",
                window=_UNAUTHORIZED_WINDOW,
            )
        except MarketplaceError as exc:
            logger.error(
                "security_report_failed",
                actor_id=actor_id,
                error=str(exc),
            )
