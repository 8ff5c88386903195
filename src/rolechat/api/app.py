"""
rolechat HTTP server.

Serves the realtime token endpoint and the role management routes used
by the chat client.

Usage:
    rolechat-server --port 8080
"""

import argparse
import sys
from datetime import timedelta
from typing import Optional

from aiohttp import web
from loguru import logger

from ..auth.permissions import CapabilityResolver
from ..auth.session import SessionManager
from ..config import Settings, get_settings
from ..roles import create_role_store
from ..roles.directory import UserDirectory
from ..roles.store import RoleStore
from ..roles.workflow import RoleTransitionWorkflow
from . import handlers
from .handlers import SERVICES, ChatServices


def setup_logging(level: str = "INFO") -> None:
    """Replace the default loguru sink."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function} - {message}",
    )


def build_services(settings: Settings, store: Optional[RoleStore] = None) -> ChatServices:
    """
    Wire the server components.

    Args:
        settings: Runtime settings
        store: Role store (default: built from settings)

    Returns:
        ChatServices
    """
    store = store or create_role_store(settings)
    sessions = SessionManager(settings.session_secret, timedelta(hours=settings.session_ttl_hours))
    return ChatServices(
        settings=settings,
        store=store,
        sessions=sessions,
        directory=UserDirectory(store, sessions, settings.seed_admins),
        workflow=RoleTransitionWorkflow(store),
        resolver=CapabilityResolver(),
    )


def create_app(settings: Optional[Settings] = None, store: Optional[RoleStore] = None) -> web.Application:
    """
    Create the aiohttp application.

    Args:
        settings: Runtime settings (default: from environment)
        store: Role store override

    Returns:
        Configured application
    """
    settings = settings or get_settings()
    services = build_services(settings, store)

    app = web.Application()
    app[SERVICES] = services

    app.router.add_get("/health", handlers.health_check)
    app.router.add_get("/api/ably", handlers.handle_channel_token)
    app.router.add_get("/api/permit/getUsers", handlers.handle_get_users)
    app.router.add_get("/api/permit/getUser", handlers.handle_get_user)
    app.router.add_get("/api/permit/resourceInstances", handlers.handle_resource_instances)
    app.router.add_get("/api/permit/promoteUser", handlers.handle_promote)
    app.router.add_get("/api/permit/demoteUser", handlers.handle_demote)
    if settings.allow_dev_signin:
        logger.warning("Development sign-in route enabled")
        app.router.add_post("/api/auth/signin", handlers.handle_signin)

    async def close_store(app: web.Application):
        await app[SERVICES].store.close()

    app.on_cleanup.append(close_store)
    return app


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(description="rolechat server")
    parser.add_argument("--host", help="Bind address (default: from settings)")
    parser.add_argument("--port", type=int, help="Bind port (default: from settings)")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level)

    host = args.host or settings.host
    port = args.port or settings.port
    logger.info("Starting rolechat server")
    logger.info(f"HTTP: {host}:{port}")
    logger.info(f"Role store: {settings.role_store}")

    web.run_app(create_app(settings), host=host, port=port, print=None)


if __name__ == "__main__":
    main()
