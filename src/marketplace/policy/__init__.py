"""Policy layer — typed access to marketplace configuration."""

from marketplace.policy.invariants import check_params
from marketplace.policy.resolver import DetectorPolicy, PolicyResolver, WindowRule

__all__ = ["DetectorPolicy", "PolicyResolver", "WindowRule", "check_params"]
