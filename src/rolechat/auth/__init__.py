"""
Authentication and authorization for rolechat.

Resolves role assignments into realtime capabilities and mints the
short-lived tokens the realtime transport accepts.
"""

from .models import (
    AccessTokenClaims,
    Action,
    Capability,
    ResourceInstance,
    Role,
    RoleAssignment,
    RoleClaim,
    User,
)
from .permissions import (
    ROLE_ACTIONS,
    ROLE_POLICY,
    CapabilityResolver,
    ResolvedCapability,
    channel_name,
    policy_allows,
    resolve_capability,
)
from .jwt_handler import TokenMinter, create_token, split_key_material
from .session import SessionIdentity, SessionManager

__all__ = [
    # Models
    "AccessTokenClaims",
    "Action",
    "Capability",
    "ResourceInstance",
    "Role",
    "RoleAssignment",
    "RoleClaim",
    "User",
    # Capability resolution
    "ROLE_ACTIONS",
    "ROLE_POLICY",
    "CapabilityResolver",
    "ResolvedCapability",
    "channel_name",
    "policy_allows",
    "resolve_capability",
    # Tokens
    "TokenMinter",
    "create_token",
    "split_key_material",
    # Sessions
    "SessionIdentity",
    "SessionManager",
]
