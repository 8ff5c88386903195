"""
HTTP request handlers.

Every handler resolves the caller from the ambient session, calls into
the role store or workflow once, and answers with JSON. Errors never
escape as unhandled faults: known errors become {"error": message}
bodies, anything else is logged and reported as an internal error.
"""

from dataclasses import dataclass

from aiohttp import web
from loguru import logger

from ..auth.jwt_handler import TokenMinter
from ..auth.permissions import CapabilityResolver
from ..auth.session import SessionManager
from ..config import Settings
from ..errors import RoleChatError, TokenMintError, UpstreamServiceError
from ..roles.directory import UserDirectory, UserProfile
from ..roles.store import RoleStore
from ..roles.workflow import RoleTransitionWorkflow


@dataclass
class ChatServices:
    """Components shared by all handlers."""
    settings: Settings
    store: RoleStore
    sessions: SessionManager
    directory: UserDirectory
    workflow: RoleTransitionWorkflow
    resolver: CapabilityResolver


SERVICES = web.AppKey("services", ChatServices)


def error_response(message: str, status: int = 400) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def handle_channel_token(request: web.Request) -> web.Response:
    """
    Issue a realtime access token for the caller.

    GET /api/ably
    Returns: {"token": "..."}, or "" for anonymous callers
    """
    services = request.app[SERVICES]
    identity = services.sessions.identify(request)
    if identity is None:
        logger.debug("Anonymous token request, no credential issued")
        return web.json_response("")

    try:
        assignments = await services.store.get_assignments(identity.email)
        resolved = services.resolver.resolve(assignments)
        minter = TokenMinter(services.settings.ably_secret_key)
        token = minter.mint(identity.email, resolved.claim, resolved.capability)
    except TokenMintError as e:
        logger.error(f"Token minting failed: {e}")
        return error_response("Server configuration error", status=500)
    except UpstreamServiceError as e:
        logger.error(f"Role lookup failed for {identity.email}: {e}")
        return error_response(str(e), status=502)
    except Exception as e:
        logger.opt(exception=e).error(f"Token request error for {identity.email}: {e}")
        return error_response("Internal server error", status=500)

    logger.info(f"Realtime token issued for {identity.email} (isMod={resolved.is_mod})")
    return web.json_response({"token": token})


async def handle_get_users(request: web.Request) -> web.Response:
    """
    List all users with their role assignments.

    GET /api/permit/getUsers
    Returns: {"users": [...]} or {"error": "..."}
    """
    services = request.app[SERVICES]
    try:
        users = await services.directory.list_users()
    except RoleChatError as e:
        logger.error(f"Listing users failed: {e}")
        return web.json_response({"error": str(e)})
    except Exception as e:
        logger.opt(exception=e).error(f"Listing users error: {e}")
        return error_response("Internal server error", status=500)
    return web.json_response({"users": users})


async def handle_get_user(request: web.Request) -> web.Response:
    """
    Get the calling user with their role assignments.

    GET /api/permit/getUser
    Returns: {"user": {...}} or {"error": "..."}
    """
    services = request.app[SERVICES]
    identity = services.sessions.identify(request)
    if identity is None:
        return web.json_response({"error": "User not found"})

    try:
        user = await services.directory.get_user(identity.email)
    except RoleChatError as e:
        logger.error(f"Fetching user {identity.email} failed: {e}")
        return web.json_response({"error": str(e)})
    except Exception as e:
        logger.opt(exception=e).error(f"Fetching user error: {e}")
        return error_response("Internal server error", status=500)

    if user is None:
        return web.json_response({"error": "User not found"})
    if not user.get("avatar_url"):
        user["avatar_url"] = identity.image
    return web.json_response({"user": user})


async def handle_resource_instances(request: web.Request) -> web.Response:
    """
    List resource instances.

    GET /api/permit/resourceInstances
    Returns: [{"id": ..., "key": ..., ...}]
    """
    services = request.app[SERVICES]
    try:
        instances = await services.store.list_resource_instances()
    except RoleChatError as e:
        logger.error(f"Listing resource instances failed: {e}")
        return web.json_response({"error": str(e)})
    except Exception as e:
        logger.opt(exception=e).error(f"Listing resource instances error: {e}")
        return error_response("Internal server error", status=500)
    return web.json_response([instance.to_dict() for instance in instances])


async def handle_promote(request: web.Request) -> web.Response:
    """
    Promote a user to moderator.

    GET /api/permit/promoteUser?key=<userKey>&channel=<prefix:channelKey>
    Returns: {"data": {...step results...}} or {"error": "..."} (400)
    """
    services = request.app[SERVICES]
    identity = services.sessions.identify(request)
    try:
        result = await services.workflow.promote(
            identity.email if identity else None,
            request.query.get("key"),
            request.query.get("channel"),
        )
    except RoleChatError as e:
        logger.warning(f"Promotion rejected: {e}")
        return error_response(str(e))
    except Exception as e:
        logger.opt(exception=e).error(f"Promotion error: {e}")
        return error_response("Internal server error", status=500)

    return web.json_response({"data": result.to_dict()})


async def handle_demote(request: web.Request) -> web.Response:
    """
    Demote a moderator.

    GET /api/permit/demoteUser?key=<userKey>&channel=<prefix:channelKey>
    Returns: {"data": {...step results...}} or {"error": "..."} (400)
    """
    services = request.app[SERVICES]
    try:
        result = await services.workflow.demote(
            request.query.get("key"),
            request.query.get("channel"),
        )
    except RoleChatError as e:
        logger.warning(f"Demotion rejected: {e}")
        return error_response(str(e))
    except Exception as e:
        logger.opt(exception=e).error(f"Demotion error: {e}")
        return error_response("Internal server error", status=500)

    return web.json_response({"data": result.to_dict()})


async def handle_signin(request: web.Request) -> web.Response:
    """
    Development sign-in.

    POST /api/auth/signin
    Body: {"email": "...", "first_name": "...", "last_name": "...", "image": "..."}
    Returns: {"token": "...", "user": {...}}
    """
    services = request.app[SERVICES]
    try:
        data = await request.json()
    except ValueError:
        return error_response("Invalid JSON body")
    if not isinstance(data, dict):
        return error_response("Invalid JSON body")

    email = (data.get("email") or "").strip()
    if not email:
        return error_response("Email required")

    profile = UserProfile(
        email=email,
        first_name=data.get("first_name", ""),
        last_name=data.get("last_name", ""),
        image=data.get("image"),
    )
    try:
        token, user = await services.directory.sign_in(profile)
    except RoleChatError as e:
        logger.error(f"Sign-in failed for {email}: {e}")
        return error_response(str(e), status=502)
    except Exception as e:
        logger.opt(exception=e).error(f"Sign-in error for {email}: {e}")
        return error_response("Internal server error", status=500)

    return web.json_response({"token": token, "user": user.to_dict()})


async def health_check(request: web.Request) -> web.Response:
    """Health check endpoint."""
    services = request.app[SERVICES]
    return web.json_response({
        "status": "healthy",
        "service": "rolechat",
        "role_store": services.settings.role_store,
    })
