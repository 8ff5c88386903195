"""
Authorization data models.

Data classes for users, role assignments and channel resource instances,
plus the typed structures carried inside realtime access tokens.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator

CHANNEL_RESOURCE = "channel"
MOD_CHANNEL_KEY = "mod"
WILDCARD = "*"


class Role(str, Enum):
    """
    Roles known to the authorization service.

    admin and viewer are global; participant and moderator are always
    scoped to a channel resource instance.
    """
    VIEWER = "viewer"
    PARTICIPANT = "participant"
    MODERATOR = "moderator"
    ADMIN = "admin"


class Action(str, Enum):
    """Realtime channel actions, in canonical capability order."""
    SUBSCRIBE = "subscribe"
    PUBLISH = "publish"
    PRESENCE = "presence"
    HISTORY = "history"


@dataclass
class User:
    """
    User account as tracked by the authorization service.

    Attributes:
        key: Stable identity key (the user's email address)
        email: User email address
        first_name: Given name
        last_name: Family name
        avatar_url: Avatar image URL (optional)
        id: Upstream identifier, defaults to the key
        attributes: Free-form upstream attributes
    """
    key: str
    email: str
    first_name: str = ""
    last_name: str = ""
    avatar_url: Optional[str] = None
    id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.id:
            self.id = self.key

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RoleAssignment:
    """
    Binding of a user to a role within a tenant.

    Attributes:
        user: User key
        role: Role name (kept as a string, upstream may know more roles)
        tenant: Tenant key
        resource_instance: "<resource>:<key>" scope, None for global roles
    """
    user: str
    role: str
    tenant: str = "default"
    resource_instance: Optional[str] = None

    @property
    def channel_key(self) -> Optional[str]:
        """Channel key of the scope ("channel:general" -> "general")."""
        if not self.resource_instance:
            return None
        resource, _, key = self.resource_instance.partition(":")
        if resource != CHANNEL_RESOURCE or not key:
            return None
        return key

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ResourceInstance:
    """
    A named channel tracked by the authorization service.

    Attributes:
        id: Upstream identifier
        key: Human-readable key (e.g. "general")
        resource: Resource type
        tenant: Tenant key
        created_at: Creation timestamp (optional)
    """
    id: str
    key: str
    resource: str = CHANNEL_RESOURCE
    tenant: str = "default"
    created_at: Optional[datetime] = None

    @property
    def identifier(self) -> str:
        """Scoping key used in role assignments."""
        return f"{self.resource}:{self.key}"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.created_at is not None:
            data["created_at"] = self.created_at.isoformat()
        return data


class Capability(RootModel[Dict[str, List[str]]]):
    """Mapping of channel name to the ordered list of allowed actions."""
    root: Dict[str, List[str]] = {}

    @field_validator("root")
    @classmethod
    def _known_actions(cls, value: Dict[str, List[str]]) -> Dict[str, List[str]]:
        allowed = {action.value for action in Action} | {WILDCARD}
        for channel, actions in value.items():
            unknown = [a for a in actions if a not in allowed]
            if unknown:
                raise ValueError(f"Unknown actions for {channel}: {unknown}")
        return value

    @classmethod
    def wildcard(cls) -> "Capability":
        return cls({WILDCARD: [WILDCARD]})

    @property
    def is_wildcard(self) -> bool:
        return self.root.get(WILDCARD) == [WILDCARD]

    def allows(self, channel: str, action: str) -> bool:
        for name in (WILDCARD, channel):
            actions = self.root.get(name, [])
            if WILDCARD in actions or action in actions:
                return True
        return False

    def to_json(self) -> str:
        return json.dumps(self.root, separators=(",", ":"))


class RoleClaim(BaseModel):
    """Custom role claim embedded in access tokens."""
    model_config = ConfigDict(populate_by_name=True)

    is_mod: bool = Field(False, alias="isMod")

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True), separators=(",", ":"))


class AccessTokenClaims(BaseModel):
    """Decoded realtime access token."""
    key_id: str
    client_id: str
    capability: Capability
    claim: RoleClaim
    issued_at: datetime
    expires_at: datetime
