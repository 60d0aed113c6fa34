"""Error taxonomy for marketplace operations.

Every error derives from ValueError so callers that already guard
business operations with ``except ValueError`` keep working. Each class
carries a stable ``code`` which the service facade copies into its
result so clients can branch without parsing messages.
"""

from __future__ import annotations


class MarketplaceError(ValueError):
    """Base class for all marketplace business errors."""
    code = "marketplace_error"


class InvalidTransition(MarketplaceError):
    """An illegal state change was attempted. State is left unchanged."""
    code = "invalid_transition"


class NotFound(MarketplaceError):
    """A referenced contract, proposal, transaction or actor is absent."""
    code = "not_found"


class PermissionDenied(MarketplaceError):
    """The caller may not perform the operation."""
    code = "permission_denied"


class AlreadyAssigned(MarketplaceError):
    """The contract already left ``open`` (another acceptance won)."""
    code = "already_assigned"


class AlreadyResolved(MarketplaceError):
    """The dispute was already resolved with a different outcome."""
    code = "already_resolved"


class DuplicateProposal(MarketplaceError):
    """The specialist already has a live proposal on the contract."""
    code = "duplicate_proposal"


class PersistenceFailure(MarketplaceError):
    """The persistence substrate is unavailable."""
    code = "persistence_failure"


class ConcurrentModification(MarketplaceError):
    """A unit of work observed a document that changed before commit.

    Internal: the orchestrator and dispute resolver translate this into
    AlreadyAssigned / AlreadyResolved for their callers.
    """
    code = "concurrent_modification"
