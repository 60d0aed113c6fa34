"""Actors — directory of accounts and the authorization guard."""

from marketplace.actors.authorization import AuthorizationGuard
from marketplace.actors.directory import ActorDirectory

__all__ = ["ActorDirectory", "AuthorizationGuard"]
