"""
User directory.

Combines the role store and session handling for the sign-in flow and
for listing users together with their role assignments.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from ..auth.models import Role, User
from ..auth.session import SessionManager
from ..errors import RoleChatError
from .store import RoleStore, find_resource_instance

DEFAULT_CHANNEL = "general"


@dataclass
class UserProfile:
    """Profile handed over by the identity provider at sign-in."""
    email: str
    first_name: str = ""
    last_name: str = ""
    image: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class UserDirectory:
    """
    User sync and lookup.

    Provides:
    - Sign-in: sync the user upstream, assign default roles, issue a session
    - User listing and lookup with role assignments merged in
    """

    def __init__(
        self,
        store: RoleStore,
        sessions: SessionManager,
        seed_admins: Iterable[str] = (),
        default_channel: str = DEFAULT_CHANNEL,
    ):
        """
        Initialize directory.

        Args:
            store: Role store
            sessions: Session token manager
            seed_admins: Identities that receive the global admin role at sign-in
            default_channel: Channel new users participate in
        """
        self.store = store
        self.sessions = sessions
        self.seed_admins = {email.lower() for email in seed_admins}
        self.default_channel = default_channel

    async def sign_in(self, profile: UserProfile) -> Tuple[str, User]:
        """
        Sync a signed-in user and issue a session token.

        Args:
            profile: Verified identity provider profile

        Returns:
            (session_token, user) tuple
        """
        user = await self.store.sync_user(User(
            key=profile.email,
            email=profile.email,
            first_name=profile.first_name,
            last_name=profile.last_name,
            avatar_url=profile.image,
        ))

        await self.store.assign(user.key, Role.VIEWER.value)

        instance = find_resource_instance(
            await self.store.list_resource_instances(), self.default_channel
        )
        if instance is None:
            logger.warning(f"Default channel '{self.default_channel}' not found, skipping participant role")
        else:
            await self.store.assign(user.key, Role.PARTICIPANT.value, instance.identifier)

        if profile.email.lower() in self.seed_admins:
            await self.store.assign(user.key, Role.ADMIN.value)
            logger.info(f"Seed admin signed in: {user.key}")

        token = self.sessions.create(profile.email, profile.name, profile.image)
        logger.info(f"User signed in: {user.key}")
        return token, user

    async def user_with_roles(self, user: User) -> Dict[str, Any]:
        """
        Merge a user with its role assignments.

        Role lookup failures degrade to an empty role list.
        """
        try:
            roles = [a.to_dict() for a in await self.store.get_assignments(user.key)]
        except RoleChatError as e:
            logger.error(f"Error fetching roles for {user.key}: {e}")
            roles = []
        return {**user.to_dict(), "roles": roles}

    async def get_user(self, key: str) -> Optional[Dict[str, Any]]:
        user = await self.store.get_user(key)
        if user is None:
            return None
        return await self.user_with_roles(user)

    async def list_users(self) -> List[Dict[str, Any]]:
        return [await self.user_with_roles(user) for user in await self.store.list_users()]
