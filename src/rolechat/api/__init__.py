"""HTTP API for rolechat."""

from .app import build_services, create_app, main, setup_logging
from .handlers import SERVICES, ChatServices

__all__ = [
    "SERVICES",
    "ChatServices",
    "build_services",
    "create_app",
    "main",
    "setup_logging",
]
