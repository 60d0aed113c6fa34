"""Notifier port — tells actors their contracts moved.

Delivery mechanics (push, email, in-app) live outside the core. The
orchestrator calls the notifier after a commit and never depends on the
outcome: a failing notifier is logged and ignored.
"""

from __future__ import annotations

from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    def notify(self, recipient_id: str, kind: str, payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Default notifier: writes each notification to the structured log."""

    def notify(self, recipient_id: str, kind: str, payload: dict[str, Any]) -> None:
        logger.info("notification", recipient_id=recipient_id, kind=kind, **payload)


class RecordingNotifier:
    """Keeps notifications in memory. Useful for tests and dry runs."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, Any]]] = []

    def notify(self, recipient_id: str, kind: str, payload: dict[str, Any]) -> None:
        self.sent.append((recipient_id, kind, dict(payload)))

    def kinds_for(self, recipient_id: str) -> list[str]:
        return [kind for rid, kind, _ in self.sent if rid == recipient_id]
