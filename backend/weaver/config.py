"""Memory Weaver application configuration.

Loads settings from two YAML files:
  * weaver.settings.yaml  — non-secret configuration
  * weaver.secrets.yaml   — secrets (never committed)

Both files are optional; missing files fall back to model defaults.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("weaver.settings.yaml")
SECRETS_FILE  = Path("weaver.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class ObjectStoreSecrets(BaseModel):
    access_key_id:     Optional[str] = None
    secret_access_key: Optional[str] = None


class IPFSSecrets(BaseModel):
    api_key:        Optional[str] = None
    basic_username: Optional[str] = None
    basic_password: Optional[str] = None


class DiscordSecrets(BaseModel):
    bot_token: Optional[str] = None


class Secrets(BaseModel):
    object_store: ObjectStoreSecrets = Field(default_factory=ObjectStoreSecrets)
    ipfs:         IPFSSecrets        = Field(default_factory=IPFSSecrets)
    discord:      DiscordSecrets     = Field(default_factory=DiscordSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class DatabaseSettings(BaseModel):
    path: str = "memory_weaver.duckdb"


class ObjectStoreSettings(BaseModel):
    """Durable object store (system of record for file bytes)."""
    backend:         Literal["s3", "local"] = "local"
    bucket:          str                    = "memory-weaver-files"
    endpoint_url:    Optional[str]          = None
    region:          str                    = "auto"
    public_base_url: str                    = "https://files.memory-weaver.com"
    local_dir:       str                    = "uploads"
    cache_control:   str                    = "public, max-age=31536000"


class StrategySettings(BaseModel):
    name:    str
    headers: Dict[str, str] = Field(default_factory=dict)


class IPFSSettings(BaseModel):
    """Content-addressed replication (best-effort)."""
    enabled:                bool                   = True
    node_url:               str                    = "http://127.0.0.1:5001"
    gateway_url:            str                    = "https://ipfs.io/ipfs/{cid}"
    timeout_seconds:        float                  = 60.0
    health_timeout_seconds: float                  = 10.0
    retries:                int                    = 5
    pin_files:              bool                   = True
    origin:                 Optional[str]          = "https://memory-weaver.local"
    cache_winning_strategy: bool                   = True
    strategies:             Optional[List[StrategySettings]] = None

    @field_validator("retries")
    @classmethod
    def _at_least_one_retry(cls, value: int) -> int:
        if value < 1:
            raise ValueError("ipfs.retries must be >= 1")
        return value


class UploadSettings(BaseModel):
    session_ttl_seconds: int       = 24 * 60 * 60
    default_max_files:   int       = 1
    default_categories:  List[str] = Field(default_factory=lambda: ["Mixed"])
    store_timeout_seconds: Optional[float] = 120.0


class InteractionSettings(BaseModel):
    lifetime_seconds:       int           = 15 * 60
    sweep_interval_seconds: int           = 60
    discord_api_base:       str           = "https://discord.com/api/v10"
    application_id:         Optional[str] = None


class WeaverSettings(BaseModel):
    server:       ServerSettings      = Field(default_factory=ServerSettings)
    logging:      LoggingSettings     = Field(default_factory=LoggingSettings)
    database:     DatabaseSettings    = Field(default_factory=DatabaseSettings)
    object_store: ObjectStoreSettings = Field(default_factory=ObjectStoreSettings)
    ipfs:         IPFSSettings        = Field(default_factory=IPFSSettings)
    uploads:      UploadSettings      = Field(default_factory=UploadSettings)
    interactions: InteractionSettings = Field(default_factory=InteractionSettings)
    secrets:      Secrets             = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_path: Path = SETTINGS_FILE,
    secrets_path: Path = SECRETS_FILE,
) -> WeaverSettings:
    """Load and merge settings + secrets into a single *WeaverSettings* object."""
    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in WeaverSettings
    settings_data["secrets"] = secrets_data

    weaver_settings = WeaverSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, object_store=%s, ipfs.enabled=%s)",
        weaver_settings.server.host,
        weaver_settings.server.port,
        weaver_settings.object_store.backend,
        weaver_settings.ipfs.enabled,
    )
    return weaver_settings


@lru_cache(maxsize=1)
def get_config() -> WeaverSettings:
    """Return the process-wide settings, loading them on first use."""
    return load_settings()
