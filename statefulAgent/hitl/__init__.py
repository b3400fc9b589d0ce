"""Human-in-the-loop: permission tiers and confirmations."""

from .confirmation import ConfirmationRendezvous, ConfirmationRequest
from .permissions import PermissionDecision, PermissionGate, PermissionTier, ToolPermission

__all__ = [
    "ConfirmationRendezvous",
    "ConfirmationRequest",
    "PermissionDecision",
    "PermissionGate",
    "PermissionTier",
    "ToolPermission",
]
