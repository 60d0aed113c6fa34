"""Persistence layer — document repository and audit log."""

from marketplace.persistence.audit_log import AuditLog
from marketplace.persistence.repository import InMemoryRepository, Repository, UnitOfWork

__all__ = ["AuditLog", "InMemoryRepository", "Repository", "UnitOfWork"]
