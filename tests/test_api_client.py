"""
Tests for the HTTP API client.
"""

import json
import stat
from contextlib import asynccontextmanager

import pytest
from aiohttp import test_utils, web

from rolechat.api.app import create_app
from rolechat.client.api_client import ChatApiClient
from rolechat.errors import UpstreamServiceError


@asynccontextmanager
async def chat_server(settings, store):
    async with test_utils.TestServer(create_app(settings, store)) as server:
        yield str(server.make_url("/")).rstrip("/")


class TestTokenStorage:
    """Test session token persistence."""

    def test_save_and_load(self, tmp_path):
        """Saved tokens are readable by a new client and private to the owner."""
        token_file = tmp_path / "session.json"
        ChatApiClient("http://localhost", token_file=token_file).save_token("abc")

        client = ChatApiClient("http://localhost", token_file=token_file)

        assert client.get_token() == "abc"
        assert json.loads(token_file.read_text()) == {"session_token": "abc"}
        assert stat.S_IMODE(token_file.stat().st_mode) == 0o600

    def test_clear(self, tmp_path):
        """Clearing removes the stored token."""
        token_file = tmp_path / "session.json"
        client = ChatApiClient("http://localhost", token_file=token_file)
        client.save_token("abc")

        client.clear_token()

        assert client.get_token() is None
        assert not token_file.exists()

    def test_corrupt_file(self, tmp_path):
        """Unreadable token files are treated as signed out."""
        token_file = tmp_path / "session.json"
        token_file.write_text("{not json")

        assert ChatApiClient("http://localhost", token_file=token_file).load_token() is None


class TestRoutes:
    """Test the route wrappers."""

    @pytest.mark.asyncio
    async def test_sign_in_and_lookup(self, settings, store, tmp_path):
        """Sign-in stores the session used by later calls."""
        token_file = tmp_path / "session.json"
        async with chat_server(settings, store) as base:
            client = ChatApiClient(base, token_file=token_file)
            try:
                user = await client.sign_in("bob@example.com", "Bob")
                me = await client.get_user()
                instances = await client.list_resource_instances()
            finally:
                await client.close()

        assert user["key"] == "bob@example.com"
        assert me["first_name"] == "Bob"
        assert token_file.exists()
        assert {i["key"] for i in instances} == {"general", "random", "mod"}

    @pytest.mark.asyncio
    async def test_error_body_raises(self, settings, store):
        """Error bodies surface as upstream errors with the server's message."""
        async with chat_server(settings, store) as base:
            client = ChatApiClient(base)
            try:
                await client.sign_in("bob@example.com")
                with pytest.raises(UpstreamServiceError) as exc_info:
                    await client.promote("admin@example.com", "chat:general")
            finally:
                await client.close()

        assert exc_info.value.status == 400
        assert "cannot promote channel" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_malformed_body_raises(self):
        """Non-JSON responses surface as upstream errors."""
        async def plain_error(request):
            return web.Response(status=500, text="500 Internal Server Error")

        app = web.Application()
        app.router.add_get("/api/ably", plain_error)
        async with test_utils.TestServer(app) as server:
            client = ChatApiClient(str(server.make_url("/")).rstrip("/"), session_token="abc")
            try:
                with pytest.raises(UpstreamServiceError) as exc_info:
                    await client.fetch_realtime_token()
            finally:
                await client.close()

        assert exc_info.value.status == 500
