"""
Runtime configuration.

Settings are read from ROLECHAT_* environment variables once and cached.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "ROLECHAT_"


class Settings(BaseModel):
    # Realtime transport key material: "<keyId>:<signingSecret>"
    ably_secret_key: str = ""
    ably_rest_url: str = "https://rest.ably.io"
    ably_realtime_url: str = "https://realtime.ably.io"

    # Identity sessions
    session_secret: str = "dev-session-secret-change-in-production"
    session_ttl_hours: int = Field(24, gt=0)
    allow_dev_signin: bool = False

    # Role store
    role_store: Literal["memory", "sqlite", "permit"] = "memory"
    database_path: Path = Path("data") / "roles.db"
    permit_api_key: Optional[str] = None
    permit_api_url: str = "https://api.permit.io"
    permit_pdp_url: str = "https://cloudpdp.api.permit.io"
    permit_project: str = "default"
    permit_environment: str = "production"
    role_store_timeout: float = Field(10.0, gt=0)
    role_store_retries: int = Field(2, ge=0)

    tenant: str = "default"
    channels: List[str] = ["general", "random", "mod"]
    seed_admins: List[str] = []

    # HTTP server
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    avatar_base_url: str = "https://www.tapback.co/api/avatar"

    @field_validator("channels", "seed_admins", mode="before")
    @classmethod
    def _split_csv(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (default: os.environ)

        Returns:
            Validated Settings
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        return cls(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
