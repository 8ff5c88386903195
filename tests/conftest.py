"""
Shared fixtures for rolechat tests.
"""

import pytest

from rolechat.auth.session import SessionManager
from rolechat.config import Settings
from rolechat.roles.store import InMemoryRoleStore

KEY_ID = "appid.keyid"
SIGNING_SECRET = "test-signing-secret-0123456789-abcdefghij"
KEY_MATERIAL = f"{KEY_ID}:{SIGNING_SECRET}"
SESSION_SECRET = "test-session-secret-0123456789-abcdefghij"

CHANNELS = ["general", "random", "mod"]


@pytest.fixture
def key_material():
    return KEY_MATERIAL


@pytest.fixture
def settings():
    return Settings(
        ably_secret_key=KEY_MATERIAL,
        session_secret=SESSION_SECRET,
        allow_dev_signin=True,
        channels=CHANNELS,
        seed_admins=["admin@example.com"],
    )


@pytest.fixture
def store():
    return InMemoryRoleStore("default", CHANNELS)


@pytest.fixture
def sessions():
    return SessionManager(SESSION_SECRET)
