"""
Role storage and role transitions.

Provides the RoleStore interface with in-memory, SQLite and hosted
authorization service implementations, the user directory and the
promote/demote workflow.
"""

from ..config import Settings
from .database import SQLiteRoleStore
from .directory import UserDirectory, UserProfile
from .permit import PermitRoleStore
from .store import (
    AssignmentResult,
    AssignmentStatus,
    InMemoryRoleStore,
    RoleStore,
    find_resource_instance,
)
from .workflow import RoleTransitionWorkflow, TransitionResult, parse_channel_token


def create_role_store(settings: Settings) -> RoleStore:
    """
    Build the role store selected by settings.

    Args:
        settings: Runtime settings

    Returns:
        RoleStore implementation
    """
    if settings.role_store == "sqlite":
        return SQLiteRoleStore(settings.database_path, settings.tenant, settings.channels)
    if settings.role_store == "permit":
        if not settings.permit_api_key:
            raise ValueError("ROLECHAT_PERMIT_API_KEY is required for the permit role store")
        return PermitRoleStore(
            api_key=settings.permit_api_key,
            api_url=settings.permit_api_url,
            pdp_url=settings.permit_pdp_url,
            project=settings.permit_project,
            environment=settings.permit_environment,
            tenant=settings.tenant,
            timeout=settings.role_store_timeout,
            retries=settings.role_store_retries,
        )
    return InMemoryRoleStore(settings.tenant, settings.channels)


__all__ = [
    "AssignmentResult",
    "AssignmentStatus",
    "InMemoryRoleStore",
    "PermitRoleStore",
    "RoleStore",
    "RoleTransitionWorkflow",
    "SQLiteRoleStore",
    "TransitionResult",
    "UserDirectory",
    "UserProfile",
    "create_role_store",
    "find_resource_instance",
    "parse_channel_token",
]
