"""Append-only audit log — the canonical record of every marketplace mutation.

Every committed domain mutation produces an AuditEvent that is appended
here. Events are immutable once written. The log serves as:
1. The compliance trail searched and summarised by administrators.
2. The history the security detector evaluates its window rules over.
3. Tamper evidence: each record's hash covers its predecessor's hash.

The log can be persisted to a JSONL file (one JSON object per line) and
loaded back; loading re-verifies every hash and the chain linkage and
fails closed on any mismatch.
"""

from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from marketplace.errors import PersistenceFailure
from marketplace.models.audit import GENESIS_HASH, AuditEvent, Category, Severity


class AuditLog:
    """Hash-chained, append-only audit event store.

    ``append`` is idempotent on event_id: re-appending an id already in
    the log returns the stored event unchanged, which is what makes
    at-least-once delivery of the same domain event safe.
    """

    def __init__(self, storage_path: Optional[Path] = None) -> None:
        self._events: list[AuditEvent] = []
        self._by_id: dict[str, AuditEvent] = {}
        self._storage_path = storage_path
        self._lock = threading.Lock()
        self.available = True

        if storage_path and storage_path.exists():
            self._load_from_file(storage_path)

    def append(self, event: AuditEvent) -> AuditEvent:
        """Chain and append an event. Returns the stored (hashed) event."""
        if not self.available:
            raise PersistenceFailure("Audit store unavailable")
        with self._lock:
            existing = self._by_id.get(event.event_id)
            if existing is not None:
                return existing
            previous = self._events[-1].event_hash if self._events else GENESIS_HASH
            chained = replace(event, previous_hash=previous, event_hash="")
            chained = replace(chained, event_hash=chained.compute_hash())
            if self._storage_path:
                self._append_to_file(chained)
            self._events.append(chained)
            self._by_id[chained.event_id] = chained
            return chained

    def get(self, event_id: str) -> Optional[AuditEvent]:
        return self._by_id.get(event_id)

    def events(self) -> list[AuditEvent]:
        with self._lock:
            return list(self._events)

    def query(
        self,
        *,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        category: Optional[Category] = None,
        categories: Optional[Iterable[Category]] = None,
        severity: Optional[Severity] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        predicate: Optional[Callable[[AuditEvent], bool]] = None,
    ) -> list[AuditEvent]:
        """Return events matching every given filter, oldest first."""
        if not self.available:
            raise PersistenceFailure("Audit store unavailable")
        category_set = set(categories) if categories else None
        result = []
        for e in self.events():
            if action is not None and e.action != action:
                continue
            if actor_id is not None and e.actor_id != actor_id:
                continue
            if resource_id is not None and e.resource_id != resource_id:
                continue
            if category is not None and e.category != category:
                continue
            if category_set is not None and e.category not in category_set:
                continue
            if severity is not None and e.severity != severity:
                continue
            if since is not None and e.timestamp_utc < since:
                continue
            if until is not None and e.timestamp_utc > until:
                continue
            if predicate is not None and not predicate(e):
                continue
            result.append(e)
        return result

    @property
    def count(self) -> int:
        return len(self._events)

    @property
    def last_event(self) -> Optional[AuditEvent]:
        return self._events[-1] if self._events else None

    def verify_chain(self) -> list[str]:
        """Recompute every hash and link. Returns errors (empty = intact)."""
        return verify_events(self.events())

    def _append_to_file(self, event: AuditEvent) -> None:
        """Append a single event to the JSONL file."""
        with self._storage_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), sort_keys=True, ensure_ascii=False) + "\n")

    def _load_from_file(self, path: Path) -> None:
        """Load events from a JSONL file with integrity verification.

        Fail-closed: rejects tampered records, broken chain links and
        duplicate event IDs.
        """
        events = read_jsonl(path)
        errors = verify_events(events)
        if errors:
            raise ValueError(f"Audit log integrity check failed: {errors[0]}")
        for event in events:
            self._events.append(event)
            self._by_id[event.event_id] = event


def read_jsonl(path: Path) -> list[AuditEvent]:
    """Parse a JSONL audit file without verifying it."""
    events = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            events.append(AuditEvent.from_dict(json.loads(line)))
    return events


def verify_events(events: list[AuditEvent]) -> list[str]:
    errors: list[str] = []
    seen: set[str] = set()
    previous = GENESIS_HASH
    for position, event in enumerate(events, 1):
        if event.event_id in seen:
            errors.append(f"record {position}: duplicate event ID {event.event_id}")
        seen.add(event.event_id)
        if event.previous_hash != previous:
            errors.append(
                f"record {position}: chain broken at {event.event_id} "
                f"(expected previous {previous}, found {event.previous_hash})"
            )
        computed = event.compute_hash()
        if computed != event.event_hash:
            errors.append(
                f"record {position}: event {event.event_id} stored hash "
                f"{event.event_hash} != computed {computed}"
            )
        previous = event.event_hash
    return errors
