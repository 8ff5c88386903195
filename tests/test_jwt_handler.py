"""
Unit tests for realtime access token minting.
"""

import json
from datetime import datetime, timedelta, timezone

import jwt
import pytest

from rolechat.auth.jwt_handler import (
    CAPABILITY_CLAIM,
    CLIENT_ID_CLAIM,
    ROLE_CLAIM,
    TokenMinter,
    create_token,
    split_key_material,
)
from rolechat.auth.models import Capability, RoleClaim
from rolechat.errors import TokenMintError

FIXED_TIME = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def raw_claims(token, secret):
    return jwt.decode(
        token,
        secret,
        algorithms=["HS256"],
        options={"verify_exp": False, "verify_iat": False},
    )


class TestSplitKeyMaterial:
    """Test key material parsing."""

    def test_valid(self):
        """Key id and secret are split at the first colon."""
        assert split_key_material("app.key:sec:ret") == ("app.key", "sec:ret")

    @pytest.mark.parametrize("material", ["", "nocolon", ":secret", "keyid:"])
    def test_invalid(self, material):
        """Missing segments are rejected."""
        with pytest.raises(TokenMintError):
            split_key_material(material)


class TestTokenMinter:
    """Test token minting."""

    def test_header(self, key_material):
        """Header carries alg and kid but no typ."""
        token = TokenMinter(key_material).mint(
            "alice@example.com", RoleClaim(), Capability({})
        )

        header = jwt.get_unverified_header(token)
        assert header == {"alg": "HS256", "kid": "appid.keyid"}

    def test_claims(self, key_material):
        """Payload carries the capability, client id and role claim as JSON strings."""
        capability = Capability({"chat:general": ["subscribe", "publish", "presence"]})
        token = TokenMinter(key_material).mint(
            "alice@example.com", RoleClaim(is_mod=False), capability, issued_at=FIXED_TIME
        )

        _, secret = split_key_material(key_material)
        payload = raw_claims(token, secret)

        assert payload[CLIENT_ID_CLAIM] == "alice@example.com"
        assert payload[CAPABILITY_CLAIM] == '{"chat:general":["subscribe","publish","presence"]}'
        assert json.loads(payload[ROLE_CLAIM]) == {"isMod": False}
        assert payload["iat"] == int(FIXED_TIME.timestamp())
        assert payload["exp"] == payload["iat"] + 24 * 3600

    def test_deterministic(self, key_material):
        """Same inputs and issue time give the same token."""
        minter = TokenMinter(key_material)
        args = ("bob@example.com", RoleClaim(is_mod=True), Capability.wildcard())

        first = minter.mint(*args, issued_at=FIXED_TIME)
        second = minter.mint(*args, issued_at=FIXED_TIME)

        assert first == second

    def test_custom_ttl(self, key_material):
        """Expiry follows the configured lifetime."""
        token = TokenMinter(key_material, ttl=timedelta(minutes=5)).mint(
            "alice@example.com", RoleClaim(), Capability({}), issued_at=FIXED_TIME
        )

        _, secret = split_key_material(key_material)
        payload = raw_claims(token, secret)
        assert payload["exp"] - payload["iat"] == 300

    @pytest.mark.parametrize("client_id", [None, ""])
    def test_requires_client_id(self, key_material, client_id):
        """Minting without a client identity fails."""
        with pytest.raises(TokenMintError):
            TokenMinter(key_material).mint(client_id, RoleClaim(), Capability({}))

    def test_bad_key_material(self):
        """Malformed key material fails before anything is signed."""
        with pytest.raises(TokenMintError):
            create_token("alice@example.com", "no-delimiter", RoleClaim(), Capability({}))


class TestTokenDecode:
    """Test token verification and claim parsing."""

    def test_round_trip(self, key_material):
        """Decoded claims are typed."""
        minter = TokenMinter(key_material)
        token = minter.mint("alice@example.com", RoleClaim(is_mod=True), Capability.wildcard())

        claims = minter.decode(token)

        assert claims is not None
        assert claims.key_id == "appid.keyid"
        assert claims.client_id == "alice@example.com"
        assert claims.claim.is_mod is True
        assert claims.capability.is_wildcard
        assert claims.expires_at - claims.issued_at == timedelta(hours=24)

    def test_wrong_secret(self, key_material):
        """Tokens signed with another secret are rejected."""
        token = TokenMinter("appid.keyid:another-secret-0123456789-abcdefghij").mint(
            "alice@example.com", RoleClaim(), Capability({})
        )

        assert TokenMinter(key_material).decode(token) is None

    def test_wrong_key_id(self, key_material):
        """Tokens carrying another key id are rejected."""
        _, secret = split_key_material(key_material)
        token = TokenMinter(f"other.key:{secret}").mint(
            "alice@example.com", RoleClaim(), Capability({})
        )

        assert TokenMinter(key_material).decode(token) is None

    def test_expired(self, key_material):
        """Expired tokens are rejected."""
        minter = TokenMinter(key_material, ttl=timedelta(seconds=1))
        token = minter.mint(
            "alice@example.com",
            RoleClaim(),
            Capability({}),
            issued_at=datetime.now(timezone.utc) - timedelta(hours=1),
        )

        assert minter.decode(token) is None

    def test_garbage(self, key_material):
        """Non-JWT input is rejected."""
        assert TokenMinter(key_material).decode("not-a-token") is None
