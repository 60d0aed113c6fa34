"""Marketplace invariant checks against the policy config.

Validates marketplace_params.json before anything runs on it: money
rules, detector thresholds and audit settings must be internally
consistent.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

VALID_RISK_LEVELS = frozenset({"low", "medium", "high", "critical"})
REQUIRED_REDACTIONS = frozenset({"password", "token", "secret", "cv"})


def check_params(params: dict[str, Any]) -> list[str]:
    """Return every invariant violation (empty = OK)."""
    errors: list[str] = []

    if "version" not in params:
        errors.append("version is missing")

    # --- Commission invariants ---
    rate = _decimal(params.get("commission", {}).get("rate"))
    if rate is None:
        errors.append("commission.rate must be a decimal string")
    elif not (Decimal("0") <= rate <= Decimal("1")):
        errors.append(f"commission.rate must be in [0, 1], got {rate}")

    # --- Workflow invariants ---
    timeout = params.get("workflow", {}).get("deposit_timeout_hours")
    if not isinstance(timeout, (int, float)) or timeout <= 0:
        errors.append("workflow.deposit_timeout_hours must be > 0")

    # --- Audit invariants ---
    audit = params.get("audit", {})
    attempts = audit.get("delivery_attempts")
    if not isinstance(attempts, int) or attempts < 1:
        errors.append("audit.delivery_attempts must be an integer >= 1")
    redacted = {str(f).lower() for f in audit.get("redacted_fields", [])}
    missing = sorted(REQUIRED_REDACTIONS - redacted)
    if missing:
        errors.append(f"audit.redacted_fields must include {missing}")

    # --- Detector invariants ---
    detector = params.get("detector", {})
    rcu = detector.get("rapid_contract_updates", {})
    if rcu.get("window_minutes", 0) <= 0:
        errors.append("detector.rapid_contract_updates.window_minutes must be > 0")
    if rcu.get("threshold", 0) < 1:
        errors.append("detector.rapid_contract_updates.threshold must be >= 1")

    large = detector.get("large_transaction", {})
    amount = _decimal(large.get("amount"))
    if amount is None or amount <= Decimal("0"):
        errors.append("detector.large_transaction.amount must be a positive decimal")

    rct = detector.get("rapid_client_transactions", {})
    if rct.get("window_hours", 0) <= 0:
        errors.append("detector.rapid_client_transactions.window_hours must be > 0")
    if rct.get("max_allowed", -1) < 0:
        errors.append("detector.rapid_client_transactions.max_allowed must be >= 0")

    for rule in ("rapid_contract_updates", "large_transaction",
                 "rapid_client_transactions", "role_change"):
        risk = detector.get(rule, {}).get("risk")
        if risk not in VALID_RISK_LEVELS:
            errors.append(f"detector.{rule}.risk must be one of {sorted(VALID_RISK_LEVELS)}")

    return errors


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None
