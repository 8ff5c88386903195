"""
Role-to-capability resolution for realtime channels.

This module provides:
- The fixed role -> channel actions table
- The resource-type policy table used by local role stores
- CapabilityResolver, which turns role assignments into a token capability
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Set, Tuple

from loguru import logger

from .models import (
    MOD_CHANNEL_KEY,
    Action,
    Capability,
    Role,
    RoleAssignment,
    RoleClaim,
)

CHANNEL_PREFIX = "chat"

# Map each channel-scoped role to its realtime actions
ROLE_ACTIONS: Dict[Role, Tuple[Action, ...]] = {
    Role.MODERATOR: (
        Action.SUBSCRIBE,
        Action.PUBLISH,
        Action.PRESENCE,
        Action.HISTORY,
    ),
    Role.PARTICIPANT: (
        Action.SUBSCRIBE,
        Action.PUBLISH,
        Action.PRESENCE,
    ),
    Role.VIEWER: (
        Action.SUBSCRIBE,
    ),
}

# Roles on the mod channel that put a user on the moderator track
MOD_TRACK_ROLES: Set[Role] = {Role.MODERATOR, Role.ADMIN, Role.PARTICIPANT}

# Tenant-level policy: role -> resource type -> allowed actions
ROLE_POLICY: Dict[Role, Dict[str, Set[str]]] = {
    Role.ADMIN: {
        "channel": {"read", "promote", "demote"},
    },
    Role.VIEWER: {
        "channel": {"read"},
    },
}


def _as_role(name: str):
    try:
        return Role(name)
    except ValueError:
        return None


def channel_name(channel_key: str) -> str:
    """Realtime channel name for a channel key ("general" -> "chat:general")."""
    return f"{CHANNEL_PREFIX}:{channel_key}"


def policy_allows(roles: Iterable[str], action: str, resource_type: str) -> bool:
    """
    Check the tenant-level policy for any of the given global roles.

    Args:
        roles: Global (unscoped) role names held by the user
        action: Action to check (e.g. "promote")
        resource_type: Resource type (e.g. "channel")

    Returns:
        True if any role grants the action
    """
    for name in roles:
        role = _as_role(name)
        if role is None:
            continue
        if action in ROLE_POLICY.get(role, {}).get(resource_type, set()):
            return True
    return False


@dataclass(frozen=True)
class ResolvedCapability:
    """Capability and role claim computed for one user."""
    capability: Capability
    claim: RoleClaim

    @property
    def is_mod(self) -> bool:
        return self.claim.is_mod


class CapabilityResolver:
    """
    Maps a user's role assignments to realtime channel capabilities.

    Moderators get the wildcard capability. Everyone else gets one entry
    per channel they hold a scoped role on; other channels are absent,
    which the transport treats as deny.
    """

    def __init__(self, role_actions: Dict[Role, Tuple[Action, ...]] = ROLE_ACTIONS):
        self.role_actions = role_actions

    def is_mod(self, assignments: Iterable[RoleAssignment]) -> bool:
        """
        Check whether the assignments put the user on the moderator track.

        Args:
            assignments: The user's role assignments

        Returns:
            True for a role on the mod channel or the global admin role
        """
        for assignment in assignments:
            role = _as_role(assignment.role)
            if role is None:
                continue
            if assignment.channel_key == MOD_CHANNEL_KEY and role in MOD_TRACK_ROLES:
                return True
            if role is Role.ADMIN and assignment.resource_instance is None:
                return True
        return False

    def resolve(self, assignments: Iterable[RoleAssignment]) -> ResolvedCapability:
        """
        Resolve assignments into a capability and role claim.

        Args:
            assignments: The user's role assignments

        Returns:
            ResolvedCapability
        """
        assignments = list(assignments)
        if self.is_mod(assignments):
            return ResolvedCapability(Capability.wildcard(), RoleClaim(is_mod=True))

        granted: Dict[str, Set[Action]] = {}
        for assignment in assignments:
            key = assignment.channel_key
            role = _as_role(assignment.role)
            if key is None or role not in self.role_actions:
                continue
            granted.setdefault(channel_name(key), set()).update(self.role_actions[role])

        entries: Dict[str, List[str]] = {
            name: [action.value for action in Action if action in actions]
            for name, actions in granted.items()
        }
        logger.debug(f"Resolved capability for {len(assignments)} assignments: {entries}")
        return ResolvedCapability(Capability(entries), RoleClaim(is_mod=False))


# Global resolver instance
_resolver = CapabilityResolver()


def resolve_capability(assignments: Iterable[RoleAssignment]) -> ResolvedCapability:
    """Resolve with the default role -> actions table."""
    return _resolver.resolve(assignments)
