"""Contract workflow — orchestration of the contract lifecycle."""

from marketplace.workflow.notifier import LoggingNotifier, Notifier, RecordingNotifier
from marketplace.workflow.orchestrator import ContractOrchestrator

__all__ = ["ContractOrchestrator", "LoggingNotifier", "Notifier", "RecordingNotifier"]
