"""Policy resolver — loads marketplace_params.json and exposes every
runtime decision as a typed method call.

No magic. No defaults. If a value is missing from the config, it fails loud.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

from marketplace.models.audit import RiskLevel


@dataclass(frozen=True)
class WindowRule:
    """A count-over-trailing-window detector rule.

    A rule fires when the number of matching events in the window
    reaches ``threshold`` (inclusive).
    """
    window: timedelta
    threshold: int
    risk: RiskLevel


@dataclass(frozen=True)
class DetectorPolicy:
    """Resolved thresholds for the security anomaly detector."""
    rapid_contract_updates: WindowRule
    large_transaction_amount: Decimal
    large_transaction_risk: RiskLevel
    rapid_client_transactions: WindowRule
    role_change_risk: RiskLevel


class PolicyResolver:
    """Loads and resolves all marketplace policy.

    Usage:
        resolver = PolicyResolver.from_config_dir(Path("config"))
        rate = resolver.commission_rate()
        detector = resolver.detector_policy()
    """

    def __init__(self, params: dict[str, Any]) -> None:
        self._params = params
        self._validate_version()

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PolicyResolver:
        """Load from the canonical config directory."""
        return cls(load_json(config_dir / "marketplace_params.json"))

    def _validate_version(self) -> None:
        if "version" not in self._params:
            raise ValueError("marketplace_params.json missing version")

    @property
    def version(self) -> str:
        return self._params["version"]

    # ------------------------------------------------------------------
    # Escrow
    # ------------------------------------------------------------------

    def commission_rate(self) -> Decimal:
        """Platform share of every escrowed amount."""
        rate = Decimal(str(self._params["commission"]["rate"]))
        if not (Decimal("0") <= rate <= Decimal("1")):
            raise ValueError(f"Commission rate must be in [0, 1], got {rate}")
        return rate

    def deposit_timeout(self) -> timedelta:
        """How long an accepted contract may wait for its deposit."""
        return timedelta(hours=self._params["workflow"]["deposit_timeout_hours"])

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def audit_delivery_attempts(self) -> int:
        """Bounded number of attempts for each audit/detector delivery."""
        attempts = int(self._params["audit"]["delivery_attempts"])
        if attempts < 1:
            raise ValueError("audit.delivery_attempts must be >= 1")
        return attempts

    def redacted_fields(self) -> frozenset[str]:
        """Field names whose values never reach audit storage."""
        return frozenset(f.lower() for f in self._params["audit"]["redacted_fields"])

    # ------------------------------------------------------------------
    # Security detector
    # ------------------------------------------------------------------

    def detector_policy(self) -> DetectorPolicy:
        det = self._params["detector"]
        rcu = det["rapid_contract_updates"]
        rct = det["rapid_client_transactions"]
        return DetectorPolicy(
            rapid_contract_updates=WindowRule(
                window=timedelta(minutes=rcu["window_minutes"]),
                threshold=int(rcu["threshold"]),
                risk=RiskLevel(rcu["risk"]),
            ),
            large_transaction_amount=Decimal(str(det["large_transaction"]["amount"])),
            large_transaction_risk=RiskLevel(det["large_transaction"]["risk"]),
            rapid_client_transactions=WindowRule(
                window=timedelta(hours=rct["window_hours"]),
                threshold=int(rct["max_allowed"]) + 1,
                risk=RiskLevel(rct["risk"]),
            ),
            role_change_risk=RiskLevel(det["role_change"]["risk"]),
        )


def load_json(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)
