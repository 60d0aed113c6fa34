"""Authorization guard — the single place permission checks live.

Admin-only operations (dispute resolution, audit search and reports,
admin action logging, security event resolution) call ``require_admin``
before doing anything else. Client/specialist operations use the party
checks when the caller identifies itself.
"""

from __future__ import annotations

from typing import Optional

from marketplace.actors.directory import ActorDirectory
from marketplace.errors import PermissionDenied
from marketplace.models.actor import Actor
from marketplace.models.contract import Contract


class AuthorizationGuard:
    def __init__(self, directory: ActorDirectory) -> None:
        self._directory = directory

    def require_admin(self, actor_id: Optional[str]) -> Actor:
        """Return the admin actor or raise PermissionDenied."""
        actor = self._directory.get(actor_id) if actor_id else None
        if actor is None or not actor.is_admin:
            raise PermissionDenied(f"Actor is not an administrator: {actor_id}")
        if actor.is_suspended:
            raise PermissionDenied(f"Administrator is suspended: {actor_id}")
        return actor

    def require_not_suspended(self, actor_id: str) -> None:
        """Unknown actors pass; suspended ones do not."""
        actor = self._directory.get(actor_id)
        if actor is not None and actor.is_suspended:
            raise PermissionDenied(f"Actor is suspended: {actor_id}")

    def require_client_or_admin(self, contract: Contract, actor_id: Optional[str]) -> None:
        if actor_id is None or actor_id == contract.client_id:
            return
        if self._is_admin(actor_id):
            return
        raise PermissionDenied(
            f"Only the client of {contract.contract_id} may do this, not {actor_id}"
        )

    def require_specialist(self, contract: Contract, actor_id: Optional[str]) -> None:
        if actor_id is None or actor_id == contract.specialist_id:
            return
        raise PermissionDenied(
            f"Only the assigned specialist of {contract.contract_id} may do this, not {actor_id}"
        )

    def require_party(self, contract: Contract, actor_id: Optional[str]) -> None:
        """Client, assigned specialist or admin."""
        if actor_id is None or actor_id in (contract.client_id, contract.specialist_id):
            return
        if self._is_admin(actor_id):
            return
        raise PermissionDenied(
            f"Actor {actor_id} is not a party to {contract.contract_id}"
        )

    def _is_admin(self, actor_id: str) -> bool:
        actor = self._directory.get(actor_id)
        return actor is not None and actor.is_admin and not actor.is_suspended
