"""
Role store interface.

The authorization service is the source of truth for (user, role,
resource) triples. Everything in rolechat talks to it through the narrow
RoleStore interface so the workflows can run against an in-memory store
in tests and development.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from ..auth.models import CHANNEL_RESOURCE, ResourceInstance, RoleAssignment, User
from ..auth.permissions import policy_allows


class AssignmentStatus(str, Enum):
    """Outcome of one assign/unassign call."""
    CREATED = "created"
    EXISTS = "exists"
    REMOVED = "removed"
    ABSENT = "absent"
    FAILED = "failed"


@dataclass
class AssignmentResult:
    """
    Result of a role assignment or unassignment.

    Attributes:
        status: Outcome status
        assignment: The assignment that was (un)assigned
        error: Upstream error message when status is FAILED
    """
    status: AssignmentStatus
    assignment: RoleAssignment
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not AssignmentStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        data = {"status": self.status.value, "ok": self.ok, **self.assignment.to_dict()}
        if self.error:
            data["error"] = self.error
        return data


def find_resource_instance(
    instances: Iterable[ResourceInstance],
    key: str,
    resource: str = CHANNEL_RESOURCE,
) -> Optional[ResourceInstance]:
    """Find a resource instance by key."""
    for instance in instances:
        if instance.key == key and instance.resource == resource:
            return instance
    return None


class RoleStore(ABC):
    """
    Narrow interface onto the authorization service.

    No operation is transactional across calls. assign and unassign are
    idempotent: repeating them reports EXISTS/ABSENT instead of failing.
    """

    tenant: str = "default"

    @abstractmethod
    async def sync_user(self, user: User) -> User:
        """Create or update a user."""

    @abstractmethod
    async def get_user(self, key: str) -> Optional[User]:
        """Get a user by key, None if unknown."""

    @abstractmethod
    async def list_users(self) -> List[User]:
        """List all users."""

    @abstractmethod
    async def get_assignments(self, user_key: str) -> List[RoleAssignment]:
        """List a user's role assignments in the store's tenant."""

    @abstractmethod
    async def assign(
        self,
        user_key: str,
        role: str,
        resource_instance: Optional[str] = None,
    ) -> AssignmentResult:
        """Assign a role, optionally scoped to "<resource>:<key>"."""

    @abstractmethod
    async def unassign(
        self,
        user_key: str,
        role: str,
        resource_instance: Optional[str] = None,
    ) -> AssignmentResult:
        """Remove a role assignment."""

    @abstractmethod
    async def list_resource_instances(self) -> List[ResourceInstance]:
        """List all resource instances."""

    @abstractmethod
    async def check(self, user_key: str, action: str, resource_type: str) -> bool:
        """Check whether a user may perform an action on a resource type."""

    async def close(self) -> None:
        """Release resources held by the store."""


class InMemoryRoleStore(RoleStore):
    """
    Role store kept in process memory.

    Used for development and as the fake authorization service in tests.
    """

    def __init__(self, tenant: str = "default", channels: Iterable[str] = ()):
        self.tenant = tenant
        self._users: Dict[str, User] = {}
        self._assignments: List[RoleAssignment] = []
        self._instances: Dict[str, ResourceInstance] = {}
        for key in channels:
            self.add_resource_instance(key)

    def add_resource_instance(self, key: str, resource: str = CHANNEL_RESOURCE) -> ResourceInstance:
        instance = ResourceInstance(
            id=uuid.uuid4().hex,
            key=key,
            resource=resource,
            tenant=self.tenant,
            created_at=datetime.now(),
        )
        self._instances[instance.identifier] = instance
        return instance

    async def sync_user(self, user: User) -> User:
        self._users[user.key] = user
        logger.debug(f"User synced: {user.key}")
        return user

    async def get_user(self, key: str) -> Optional[User]:
        return self._users.get(key)

    async def list_users(self) -> List[User]:
        return sorted(self._users.values(), key=lambda u: u.key)

    async def get_assignments(self, user_key: str) -> List[RoleAssignment]:
        return [
            a for a in self._assignments
            if a.user == user_key and a.tenant == self.tenant
        ]

    async def assign(
        self,
        user_key: str,
        role: str,
        resource_instance: Optional[str] = None,
    ) -> AssignmentResult:
        assignment = RoleAssignment(user_key, role, self.tenant, resource_instance)
        if assignment in self._assignments:
            return AssignmentResult(AssignmentStatus.EXISTS, assignment)
        self._assignments.append(assignment)
        logger.info(f"Role assigned: {role} on {resource_instance or self.tenant} -> {user_key}")
        return AssignmentResult(AssignmentStatus.CREATED, assignment)

    async def unassign(
        self,
        user_key: str,
        role: str,
        resource_instance: Optional[str] = None,
    ) -> AssignmentResult:
        assignment = RoleAssignment(user_key, role, self.tenant, resource_instance)
        if assignment not in self._assignments:
            return AssignmentResult(AssignmentStatus.ABSENT, assignment)
        self._assignments.remove(assignment)
        logger.info(f"Role unassigned: {role} on {resource_instance or self.tenant} -> {user_key}")
        return AssignmentResult(AssignmentStatus.REMOVED, assignment)

    async def list_resource_instances(self) -> List[ResourceInstance]:
        return list(self._instances.values())

    async def check(self, user_key: str, action: str, resource_type: str) -> bool:
        roles = [a.role for a in await self.get_assignments(user_key) if a.resource_instance is None]
        return policy_allows(roles, action, resource_type)
