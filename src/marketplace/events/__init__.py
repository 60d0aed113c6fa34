"""Domain events and the in-process event bus."""

from marketplace.events.bus import DomainEvent, DomainEventKind, EventBus

__all__ = ["DomainEvent", "DomainEventKind", "EventBus"]
