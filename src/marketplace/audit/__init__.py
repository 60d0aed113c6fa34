"""Audit trail and security anomaly detection."""

from marketplace.audit.detector import SecurityAnomalyDetector
from marketplace.audit.recorder import AuditRecorder, AuditSearchFilters

__all__ = ["AuditRecorder", "AuditSearchFilters", "SecurityAnomalyDetector"]
