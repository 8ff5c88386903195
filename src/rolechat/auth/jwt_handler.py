"""
Realtime access token minting and verification.

Tokens are HS256 JWTs in the realtime transport's format: the key id is
carried in the header and the capability and role claims travel as JSON
strings inside the payload.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

import jwt
from loguru import logger
from pydantic import ValidationError

from ..errors import TokenMintError
from .models import AccessTokenClaims, Capability, RoleClaim

ALGORITHM = "HS256"
TOKEN_TTL = timedelta(hours=24)

CAPABILITY_CLAIM = "x-ably-capability"
CLIENT_ID_CLAIM = "x-ably-clientId"
ROLE_CLAIM = "ably.channel.*"


def split_key_material(key_material: str) -> Tuple[str, str]:
    """
    Split "<keyId>:<signingSecret>" key material.

    Args:
        key_material: Raw key material

    Returns:
        (key_id, signing_secret) tuple

    Raises:
        TokenMintError: If either segment is missing
    """
    key_id, sep, secret = (key_material or "").partition(":")
    if not sep or not key_id or not secret:
        raise TokenMintError("Key material must have the form '<keyId>:<signingSecret>'")
    return key_id, secret


class TokenMinter:
    """
    Mints capability-scoped realtime access tokens.

    Minting is pure: the only time-dependent claims are iat and exp.
    """

    def __init__(self, key_material: str, ttl: timedelta = TOKEN_TTL):
        """
        Initialize minter.

        Args:
            key_material: "<keyId>:<signingSecret>"
            ttl: Token lifetime (default: 24 hours)

        Raises:
            TokenMintError: If the key material is malformed
        """
        self.key_id, self._secret = split_key_material(key_material)
        self.ttl = ttl

    def mint(
        self,
        client_id: Optional[str],
        claim: RoleClaim,
        capability: Capability,
        issued_at: Optional[datetime] = None,
    ) -> str:
        """
        Create a signed access token.

        Args:
            client_id: Client identity (the user key)
            claim: Role claim (isMod)
            capability: Channel capability
            issued_at: Issue time (default: now)

        Returns:
            JWT token string

        Raises:
            TokenMintError: If client_id is empty
        """
        if not client_id:
            raise TokenMintError("Cannot mint a token without a client identity")

        now = issued_at or datetime.now(timezone.utc)
        iat = int(now.timestamp())
        payload = {
            CAPABILITY_CLAIM: capability.to_json(),
            CLIENT_ID_CLAIM: client_id,
            ROLE_CLAIM: claim.to_json(),
            "iat": iat,
            "exp": iat + int(self.ttl.total_seconds()),
        }
        token = jwt.encode(
            payload,
            self._secret.encode("utf-8"),
            algorithm=ALGORITHM,
            headers={"kid": self.key_id, "typ": None},
        )
        logger.debug(f"Realtime token minted for {client_id} (isMod={claim.is_mod})")
        return token

    def decode(self, token: str) -> Optional[AccessTokenClaims]:
        """
        Verify a token and parse its opaque claims into typed structures.

        Args:
            token: JWT token string

        Returns:
            AccessTokenClaims if valid, None if invalid or expired
        """
        try:
            header = jwt.get_unverified_header(token)
            if header.get("kid") != self.key_id:
                logger.warning(f"Token signed with unknown key id: {header.get('kid')}")
                return None

            payload = jwt.decode(
                token,
                self._secret.encode("utf-8"),
                algorithms=[ALGORITHM],
            )
            return AccessTokenClaims(
                key_id=header["kid"],
                client_id=payload[CLIENT_ID_CLAIM],
                capability=Capability.model_validate(json.loads(payload[CAPABILITY_CLAIM])),
                claim=RoleClaim.model_validate(json.loads(payload[ROLE_CLAIM])),
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )

        except jwt.ExpiredSignatureError:
            logger.warning("Token has expired")
            return None
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid token: {e}")
            return None
        except (KeyError, ValueError, ValidationError) as e:
            logger.warning(f"Malformed token claims: {e}")
            return None


def create_token(
    client_id: Optional[str],
    key_material: str,
    claim: RoleClaim,
    capability: Capability,
    issued_at: Optional[datetime] = None,
) -> str:
    """
    Mint a token in one call.

    Raises:
        TokenMintError: If the key material or client identity is invalid
    """
    return TokenMinter(key_material).mint(client_id, claim, capability, issued_at)
