"""
Promote/demote workflow.

A moderator is one unit of state spread over three role assignments:
moderator on the channel, participant on the reserved mod channel and the
global admin role. The authorization service offers no transaction over
them, so promote and demote run as a saga: every step is attempted in
order, each outcome is recorded, and a failed step does not stop the
remaining ones. Rollback of completed steps only happens when the
workflow is built with compensate=True.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from ..auth.models import (
    CHANNEL_RESOURCE,
    MOD_CHANNEL_KEY,
    ResourceInstance,
    Role,
    RoleAssignment,
)
from ..errors import (
    InvalidRequestError,
    NotAuthenticatedError,
    PermissionDeniedError,
    ResourceNotFoundError,
    UpstreamServiceError,
)
from .store import AssignmentResult, AssignmentStatus, RoleStore, find_resource_instance

ASSIGN = "assign"
UNASSIGN = "unassign"

PROMOTE_ACTION = "promote"


@dataclass(frozen=True)
class TransitionStep:
    """One role (un)assignment of a transition."""
    name: str
    operation: str
    role: Role
    scope: Optional[str] = None


@dataclass
class TransitionResult:
    """
    Aggregate outcome of a promote or demote.

    Attributes:
        kind: "promote" or "demote"
        user_key: Target user
        channel: Target channel key
        steps: Step name -> result, in execution order
        compensations: Step name -> result of the undo, when compensation ran
    """
    kind: str
    user_key: str
    channel: str
    steps: Dict[str, AssignmentResult] = field(default_factory=dict)
    compensations: Dict[str, AssignmentResult] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.steps.values())

    @property
    def failed_steps(self) -> List[str]:
        return [name for name, result in self.steps.items() if not result.ok]

    def to_dict(self) -> Dict[str, Any]:
        return {name: result.to_dict() for name, result in self.steps.items()}


def parse_channel_token(token: Optional[str]) -> Optional[str]:
    """Channel key from a "prefix:channelKey" token ("chat:general" -> "general")."""
    if not token:
        return None
    parts = token.split(":")
    if len(parts) < 2 or not parts[1]:
        return None
    return parts[1]


class RoleTransitionWorkflow:
    """Runs promote and demote transitions against a role store."""

    def __init__(self, store: RoleStore, compensate: bool = False):
        """
        Initialize workflow.

        Args:
            store: Role store to mutate
            compensate: Undo completed steps when a later step fails
        """
        self.store = store
        self.compensate = compensate

    async def resolve_channel(self, channel_key: str) -> Tuple[ResourceInstance, ResourceInstance]:
        """
        Resolve a channel key and the reserved mod channel.

        Returns:
            (channel_instance, mod_instance) tuple

        Raises:
            ResourceNotFoundError: If either instance does not exist
        """
        instances = await self.store.list_resource_instances()
        channel = find_resource_instance(instances, channel_key, CHANNEL_RESOURCE)
        mod_channel = find_resource_instance(instances, MOD_CHANNEL_KEY, CHANNEL_RESOURCE)
        if channel is None:
            raise ResourceNotFoundError(channel_key)
        if mod_channel is None:
            raise ResourceNotFoundError(MOD_CHANNEL_KEY)
        return channel, mod_channel

    @staticmethod
    def _validate(user_key: Optional[str], channel_token: Optional[str]) -> str:
        channel_key = parse_channel_token(channel_token)
        if not user_key or not channel_key:
            raise InvalidRequestError("User key or channel not provided")
        return channel_key

    async def promote(
        self,
        actor_key: Optional[str],
        user_key: Optional[str],
        channel_token: Optional[str],
    ) -> TransitionResult:
        """
        Promote a user to moderator of a channel.

        Args:
            actor_key: Identity of the caller
            user_key: User to promote
            channel_token: "prefix:channelKey" channel token

        Returns:
            TransitionResult with one entry per step

        Raises:
            InvalidRequestError: If user_key or channel_token is missing
            ResourceNotFoundError: If the channel or mod channel is unknown
            NotAuthenticatedError: If there is no actor
            PermissionDeniedError: If the actor may not promote
        """
        channel_key = self._validate(user_key, channel_token)
        channel, mod_channel = await self.resolve_channel(channel_key)

        if not actor_key:
            raise NotAuthenticatedError("User not found")
        if not await self.store.check(actor_key, PROMOTE_ACTION, CHANNEL_RESOURCE):
            logger.warning(f"{actor_key} denied promote on {channel.identifier}")
            raise PermissionDeniedError(actor_key, PROMOTE_ACTION, CHANNEL_RESOURCE)

        steps = [
            TransitionStep("assignToModRoleOnChannel", ASSIGN, Role.MODERATOR, channel.identifier),
            TransitionStep("assignModChannelRole", ASSIGN, Role.PARTICIPANT, mod_channel.identifier),
            TransitionStep("assignAdminRole", ASSIGN, Role.ADMIN),
        ]
        result = await self._run("promote", user_key, channel_key, steps)
        logger.info(f"{actor_key} promoted {user_key} on {channel.identifier}")
        return result

    async def demote(self, user_key: Optional[str], channel_token: Optional[str]) -> TransitionResult:
        """
        Demote a moderator of a channel.

        Args:
            user_key: User to demote
            channel_token: "prefix:channelKey" channel token

        Returns:
            TransitionResult with one entry per step

        Raises:
            InvalidRequestError: If user_key or channel_token is missing
            ResourceNotFoundError: If the channel or mod channel is unknown
        """
        channel_key = self._validate(user_key, channel_token)
        channel, mod_channel = await self.resolve_channel(channel_key)

        steps = [
            TransitionStep("unassignModChannel", UNASSIGN, Role.PARTICIPANT, mod_channel.identifier),
            TransitionStep("unassignModRoleOnChannel", UNASSIGN, Role.MODERATOR, channel.identifier),
            TransitionStep("unassignAdminRole", UNASSIGN, Role.ADMIN),
        ]
        result = await self._run("demote", user_key, channel_key, steps)
        logger.info(f"Demoted {user_key} on {channel.identifier}")
        return result

    async def _apply(self, user_key: str, step: TransitionStep, operation: str) -> AssignmentResult:
        call = self.store.assign if operation == ASSIGN else self.store.unassign
        try:
            return await call(user_key, step.role.value, step.scope)
        except UpstreamServiceError as e:
            logger.error(f"Step {step.name} failed for {user_key}: {e}")
            assignment = RoleAssignment(user_key, step.role.value, self.store.tenant, step.scope)
            return AssignmentResult(AssignmentStatus.FAILED, assignment, str(e))

    async def _run(
        self,
        kind: str,
        user_key: str,
        channel_key: str,
        steps: List[TransitionStep],
    ) -> TransitionResult:
        result = TransitionResult(kind, user_key, channel_key)
        for step in steps:
            result.steps[step.name] = await self._apply(user_key, step, step.operation)

        if result.ok:
            logger.success(f"{kind} of {user_key} on {channel_key} completed")
            return result

        logger.warning(f"{kind} of {user_key} partially failed: {result.failed_steps}")
        if self.compensate:
            await self._compensate(result, steps)
        return result

    async def _compensate(self, result: TransitionResult, steps: List[TransitionStep]) -> None:
        """Undo the steps that changed state, newest first."""
        for step in reversed(steps):
            outcome = result.steps[step.name]
            if outcome.status not in (AssignmentStatus.CREATED, AssignmentStatus.REMOVED):
                continue
            undo = UNASSIGN if step.operation == ASSIGN else ASSIGN
            result.compensations[step.name] = await self._apply(result.user_key, step, undo)
        logger.info(f"Compensated {len(result.compensations)} steps for {result.user_key}")
