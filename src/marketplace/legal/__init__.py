"""Dispute adjudication."""

from marketplace.legal.disputes import DisputeResolver

__all__ = ["DisputeResolver"]
