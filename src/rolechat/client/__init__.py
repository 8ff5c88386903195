"""
Chat client SDK: HTTP API client and per-channel session.
"""

from .api_client import ChatApiClient
from .session import ChatSession, MembershipView, SelfPermissionView

__all__ = [
    "ChatApiClient",
    "ChatSession",
    "MembershipView",
    "SelfPermissionView",
]
