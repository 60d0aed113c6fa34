"""Tests for the security anomaly detector — window rules, deduplication
and automatic containment."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

from marketplace.actors.authorization import AuthorizationGuard
from marketplace.audit.detector import SecurityAnomalyDetector
from marketplace.events.bus import DomainEvent, DomainEventKind
from marketplace.models.actor import ActorRole, ActorStatus
from marketplace.models.audit import Category, RiskLevel, SecurityEventType, Severity
from marketplace.persistence.audit_log import AuditLog
from marketplace.policy.resolver import PolicyResolver, load_json
from marketplace.service import MarketplaceService


CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def _now() -> datetime:
    return datetime(2026, 2, 16, 12, 0, 0, tzinfo=timezone.utc)


def _service(role_change_risk: str = "high") -> MarketplaceService:
    params = load_json(CONFIG_DIR / "marketplace_params.json")
    params["detector"]["role_change"]["risk"] = role_change_risk
    svc = MarketplaceService(PolicyResolver(params), clock=_now)
    svc.register_actor("client-1", ActorRole.CLIENT)
    svc.register_actor("spec-1", ActorRole.SPECIALIST)
    svc.register_actor("admin-1", ActorRole.ADMIN)
    return svc


@pytest.fixture
def service() -> MarketplaceService:
    return _service()


def _update(contract_id: str, at: datetime) -> DomainEvent:
    return DomainEvent.create(
        DomainEventKind.CONTRACT_UPDATED, "contract", contract_id,
        actor_id="client-1",
        after={"contract_id": contract_id, "client_id": "client-1"},
        payload={"operation": "edit"},
        now=at,
    )


def _accepted_contract(service: MarketplaceService, price: str) -> str:
    contract_id = service.create_contract("client-1", "Job").data["contract_id"]
    proposal_id = service.submit_proposal(contract_id, "spec-1", Decimal(price)).data["proposal_id"]
    assert service.accept_proposal(contract_id, proposal_id, actor_id="client-1").success
    return contract_id


def _events_for(service: MarketplaceService, rule: str) -> list:
    return [
        e for e in service.detector.list_security_events("admin-1")
        if e.details.get("rule") == rule
    ]


class TestRapidContractUpdates:
    def test_sixth_update_in_an_hour_raises_once(self, service: MarketplaceService) -> None:
        for i in range(5):
            service.bus.publish(_update("c-hot", _now() + timedelta(minutes=5 * i)))
        assert _events_for(service, "rapid_contract_updates") == []

        service.bus.publish(_update("c-hot", _now() + timedelta(minutes=25)))
        raised = _events_for(service, "rapid_contract_updates")
        assert len(raised) == 1
        assert raised[0].risk_level == RiskLevel.MEDIUM
        assert raised[0].type == SecurityEventType.SUSPICIOUS_ACTIVITY
        assert raised[0].subject_actor_id == "client-1"
        assert raised[0].details["updates_in_window"] == 6

        service.bus.publish(_update("c-hot", _now() + timedelta(minutes=30)))
        assert len(_events_for(service, "rapid_contract_updates")) == 1

    def test_updates_spread_beyond_window_ignored(self, service: MarketplaceService) -> None:
        for i in range(6):
            service.bus.publish(_update("c-slow", _now() + timedelta(minutes=15 * i)))
        assert _events_for(service, "rapid_contract_updates") == []

    def test_counted_per_contract(self, service: MarketplaceService) -> None:
        for i in range(3):
            service.bus.publish(_update("c-a", _now() + timedelta(minutes=i)))
            service.bus.publish(_update("c-b", _now() + timedelta(minutes=i)))
        assert _events_for(service, "rapid_contract_updates") == []

    def test_security_event_audited(self, service: MarketplaceService) -> None:
        for i in range(6):
            service.bus.publish(_update("c-hot", _now() + timedelta(minutes=i)))
        records = service.audit_log.query(action="security_suspicious_activity")
        assert len(records) == 1
        assert records[0].category == Category.SECURITY
        assert records[0].severity == Severity.MEDIUM
        assert records[0].metadata["details"]["contract_id"] == "c-hot"


class TestLargeTransaction:
    def test_above_limit_is_high_risk(self, service: MarketplaceService) -> None:
        contract_id = _accepted_contract(service, "15000")
        raised = _events_for(service, "large_transaction")
        assert len(raised) == 1
        assert raised[0].risk_level == RiskLevel.HIGH
        assert raised[0].subject_actor_id == "client-1"
        assert raised[0].details["contract_id"] == contract_id
        assert raised[0].details["amount"] == "15000.00"
        assert service.repository.get_actor("client-1").status == ActorStatus.ACTIVE

    def test_at_limit_is_fine(self, service: MarketplaceService) -> None:
        _accepted_contract(service, "10000")
        assert _events_for(service, "large_transaction") == []

    def test_redelivery_does_not_duplicate(self, service: MarketplaceService) -> None:
        seen: list[DomainEvent] = []
        service.bus.subscribe("collector", seen.append)
        _accepted_contract(service, "15000")
        created = next(e for e in seen if e.kind == DomainEventKind.TRANSACTION_CREATED)
        service.bus.publish(created)
        assert len(_events_for(service, "large_transaction")) == 1


class TestRapidClientTransactions:
    def test_eleventh_transaction_in_a_day_raises(self, service: MarketplaceService) -> None:
        for _ in range(10):
            _accepted_contract(service, "100")
        assert _events_for(service, "rapid_client_transactions") == []

        _accepted_contract(service, "100")
        raised = _events_for(service, "rapid_client_transactions")
        assert len(raised) == 1
        assert raised[0].subject_actor_id == "client-1"
        assert raised[0].details["transactions_in_window"] == 11
        assert raised[0].risk_level == RiskLevel.MEDIUM

        _accepted_contract(service, "100")
        assert len(_events_for(service, "rapid_client_transactions")) == 1


class TestRoleChange:
    def test_role_change_is_high_risk(self, service: MarketplaceService) -> None:
        result = service.update_profile("spec-1", changed_by="admin-1", role=ActorRole.CLIENT)
        assert result.success
        raised = _events_for(service, "role_change")
        assert len(raised) == 1
        assert raised[0].risk_level == RiskLevel.HIGH
        assert raised[0].subject_actor_id == "spec-1"
        assert raised[0].details["old_role"] == "specialist"
        assert raised[0].details["new_role"] == "client"
        assert raised[0].details["changed_by"] == "admin-1"
        assert service.repository.get_actor("spec-1").status == ActorStatus.ACTIVE

    def test_other_profile_changes_ignored(self, service: MarketplaceService) -> None:
        service.update_profile("spec-1", alias="Renamed")
        assert _events_for(service, "role_change") == []

    def test_critical_role_change_suspends_once(self) -> None:
        service = _service(role_change_risk="critical")
        seen: list[DomainEvent] = []
        service.bus.subscribe("collector", seen.append)

        service.update_profile("spec-1", changed_by="spec-1", role="admin")

        actor = service.repository.get_actor("spec-1")
        assert actor.status == ActorStatus.SUSPENDED
        assert actor.suspension_reason == (
            "Automatic suspension due to security event: suspicious_activity"
        )
        raised = _events_for(service, "role_change")
        assert len(raised) == 1
        assert raised[0].risk_level == RiskLevel.CRITICAL
        assert raised[0].actions == ["actor_suspended"]

        profile_event = next(e for e in seen if e.kind == DomainEventKind.PROFILE_UPDATED)
        assert service.detector.handle(profile_event) == []
        assert len(service.audit_log.query(action="actor_suspended", resource_id="spec-1")) == 1

    def test_suspended_actor_loses_access(self) -> None:
        service = _service(role_change_risk="critical")
        contract_id = service.create_contract("client-1", "Job").data["contract_id"]
        service.update_profile("spec-1", role=ActorRole.CLIENT)
        result = service.submit_proposal(contract_id, "spec-1", Decimal("50"))
        assert result.code == "permission_denied"


class TestRaiseSecurityEvent:
    def test_critical_event_for_suspended_actor_is_idempotent(self, service: MarketplaceService) -> None:
        first = service.detector.raise_security_event(
            SecurityEventType.DATA_BREACH, "client-1", RiskLevel.CRITICAL, {"rule": "manual"},
        )
        second = service.detector.raise_security_event(
            SecurityEventType.DATA_BREACH, "client-1", RiskLevel.CRITICAL, {"rule": "manual"},
        )
        assert first.actions == ["actor_suspended"]
        assert second.actions == []
        assert len(service.audit_log.query(action="actor_suspended")) == 1

    def test_critical_event_for_unknown_actor(self, service: MarketplaceService) -> None:
        event = service.detector.raise_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, "ghost", RiskLevel.CRITICAL,
        )
        assert event is not None
        assert event.actions == []

    def test_fingerprint_without_window_is_permanent(self, service: MarketplaceService) -> None:
        first = service.detector.raise_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, "client-1", RiskLevel.LOW, fingerprint="once",
        )
        again = service.detector.raise_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, "client-1", RiskLevel.LOW, fingerprint="once",
            now=_now() + timedelta(days=30),
        )
        assert first is not None
        assert again is None

    def test_fingerprint_window_expires(self, service: MarketplaceService) -> None:
        window = timedelta(hours=1)
        service.detector.raise_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, "client-1", RiskLevel.LOW,
            fingerprint="hourly", window=window,
        )
        later = service.detector.raise_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, "client-1", RiskLevel.LOW,
            fingerprint="hourly", window=window, now=_now() + timedelta(hours=2),
        )
        assert later is not None


class TestResolveSecurityEvent:
    def test_admin_resolves(self, service: MarketplaceService) -> None:
        service.update_profile("spec-1", role=ActorRole.CLIENT)
        event_id = _events_for(service, "role_change")[0].security_event_id

        result = service.resolve_security_event("admin-1", event_id, ["confirmed with user"])
        assert result.success
        resolved = result.data["security_event"]
        assert resolved.resolved
        assert resolved.resolved_by == "admin-1"
        assert resolved.actions == ["confirmed with user"]

        again = service.resolve_security_event("admin-1", event_id, ["again"])
        assert again.success
        assert again.data["security_event"].actions == ["confirmed with user"]
        records = service.audit_log.query(action="admin_security_event_resolved")
        assert len(records) == 1
        assert records[0].severity == Severity.CRITICAL

    def test_unresolved_filter(self, service: MarketplaceService) -> None:
        service.update_profile("spec-1", role=ActorRole.CLIENT)
        event_id = _events_for(service, "role_change")[0].security_event_id
        service.resolve_security_event("admin-1", event_id)
        result = service.list_security_events("admin-1", unresolved_only=True)
        assert result.data["events"] == []

    def test_unknown_event(self, service: MarketplaceService) -> None:
        assert service.resolve_security_event("admin-1", "sec-nope").code == "not_found"

    def test_listing_requires_admin(self, service: MarketplaceService) -> None:
        assert service.list_security_events("client-1").code == "permission_denied"


class TestRestart:
    def _file_service(self, path: Path) -> MarketplaceService:
        svc = MarketplaceService(
            PolicyResolver.from_config_dir(CONFIG_DIR),
            audit_log=AuditLog(storage_path=path),
            clock=_now,
        )
        svc.register_actor("client-1", ActorRole.CLIENT)
        svc.register_actor("admin-1", ActorRole.ADMIN)
        return svc

    def test_security_events_survive_restart(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        first = self._file_service(path)
        updates = [_update("c-hot", _now() + timedelta(minutes=5 * i)) for i in range(6)]
        for update in updates:
            first.bus.publish(update)
        raised = _events_for(first, "rapid_contract_updates")
        assert len(raised) == 1

        second = self._file_service(path)
        restored = _events_for(second, "rapid_contract_updates")
        assert [e.security_event_id for e in restored] == [raised[0].security_event_id]
        assert restored[0].fingerprint == "rapid_contract_updates:c-hot"
        assert restored[0].risk_level == RiskLevel.MEDIUM
        assert restored[0].timestamp_utc == updates[-1].occurred_utc

        second.bus.publish(updates[-1])
        second.bus.publish(_update("c-hot", _now() + timedelta(minutes=30)))
        assert len(_events_for(second, "rapid_contract_updates")) == 1
        assert second.bus.dropped == []

    def test_resolution_survives_restart(self, tmp_path: Path) -> None:
        path = tmp_path / "audit.jsonl"
        first = self._file_service(path)
        event = first.detector.raise_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, "client-1", RiskLevel.LOW,
            {"rule": "manual"}, fingerprint="manual:client-1",
        )
        first.resolve_security_event("admin-1", event.security_event_id, ["reviewed"])

        second = self._file_service(path)
        restored = second.detector.list_security_events("admin-1")[0]
        assert restored.resolved
        assert restored.resolved_by == "admin-1"
        assert restored.actions == ["reviewed"]
        assert second.detector.raise_security_event(
            SecurityEventType.SUSPICIOUS_ACTIVITY, "client-1", RiskLevel.LOW,
            fingerprint="manual:client-1",
        ) is None


class TestRedeliveryMemory:
    def _detector(self, service: MarketplaceService, capacity: int) -> SecurityAnomalyDetector:
        return SecurityAnomalyDetector(
            service.audit_log, service.directory, AuthorizationGuard(service.directory),
            service.recorder, PolicyResolver.from_config_dir(CONFIG_DIR).detector_policy(),
            clock=_now, processed_capacity=capacity,
        )

    def _large(self) -> DomainEvent:
        return DomainEvent.create(
            DomainEventKind.TRANSACTION_CREATED, "escrow", "txn-big",
            payload={"amount": "15000", "client_id": "client-1", "contract_id": "c-1"},
            now=_now(),
        )

    def test_remembered_ids_are_bounded(self, service: MarketplaceService) -> None:
        detector = self._detector(service, capacity=2)
        large = self._large()
        assert len(detector.handle(large)) == 1
        for i in range(3):
            detector.handle(DomainEvent.create(
                DomainEventKind.CONTRACT_CREATED, "contract", f"c-{i}", now=_now(),
            ))
        assert len(detector._processed) == 2

        # Forgotten, so the rules run again and the fingerprint dedupes.
        assert detector.handle(large) == []

    def test_capacity_must_be_positive(self, service: MarketplaceService) -> None:
        with pytest.raises(ValueError):
            self._detector(service, capacity=0)
