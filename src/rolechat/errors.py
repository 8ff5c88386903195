"""
Exception hierarchy for rolechat.

Every error raised on purpose by the server, the role workflow or the
token minter derives from RoleChatError so HTTP handlers can convert it
into a JSON error body.
"""

from typing import Optional


class RoleChatError(Exception):
    """Base class for all rolechat errors."""


class InvalidRequestError(RoleChatError):
    """Raised when a request is missing a required parameter."""


class NotAuthenticatedError(RoleChatError):
    """Raised when an operation needs an identity and none is present."""


class ResourceNotFoundError(RoleChatError):
    """
    Raised when a channel resource instance cannot be resolved.

    Attributes:
        key: Resource instance key that was looked up (e.g. "general")
    """

    def __init__(self, key: str, message: str = "Resource not found"):
        self.key = key
        super().__init__(message)


class PermissionDeniedError(RoleChatError):
    """
    Raised when a user attempts an action they don't have permission for.

    Attributes:
        user_key: The user who was denied
        action: The action that was denied
        resource_type: Resource type the action was checked against
    """

    def __init__(self, user_key: str, action: str, resource_type: str):
        self.user_key = user_key
        self.action = action
        self.resource_type = resource_type
        super().__init__(f"User {user_key} cannot {action} {resource_type}")


class TokenMintError(RoleChatError):
    """Raised when a realtime access token cannot be minted."""


class UpstreamServiceError(RoleChatError):
    """
    Raised when the authorization service or identity provider fails.

    Attributes:
        status: HTTP status returned upstream, if any
    """

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)
