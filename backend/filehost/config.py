"""FileHost application configuration.

Loads settings from two YAML files:
  * filehost.settings.yaml: non-secret configuration
  * filehost.secrets.yaml: secrets (never committed)

The merged result is an immutable ``AppConfig`` snapshot.  ``set_config``
replaces the current snapshot with a single reference assignment, so a
reader that called ``get_config()`` keeps a fully-formed snapshot for the
rest of its request even if a reload happens meanwhile.
"""
from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("filehost.settings.yaml")
SECRETS_FILE  = Path("filehost.secrets.yaml")

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMG]?)B?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "K": 1024, "M": 1024 ** 2, "G": 1024 ** 3}


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def parse_size(value: Union[int, str]) -> int:
    """Parse a byte count such as ``10485760``, ``"10M"`` or ``"512K"``."""
    if isinstance(value, int):
        return value
    match = _SIZE_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(number) * _SIZE_UNITS[unit.upper()]


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class TokenSecrets(_Frozen):
    secret_key: Optional[str] = None


class Secrets(_Frozen):
    tokens: TokenSecrets = Field(default_factory=TokenSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(_Frozen):
    host: str = "0.0.0.0"
    port: int = 8000


class LoggingSettings(_Frozen):
    level: str = "info"


class FileHostSettings(_Frozen):
    """Where files live and how their public URL is built."""
    storage_path:    str  = "data/uploads"
    mount_path:      str  = "/upload"
    hostname:        str  = "localhost"
    port:            int  = 0
    ssl:             bool = True
    authenticate:    bool = True
    require_tls:     bool = True
    max_upload_size: int  = 10 * 1024 * 1024

    @field_validator("mount_path")
    @classmethod
    def _normalise_mount(cls, value: str) -> str:
        value = "/" + value.strip().strip("/")
        return value if value != "/" else "/upload"

    @field_validator("max_upload_size", mode="before")
    @classmethod
    def _parse_size(cls, value: Any) -> int:
        size = parse_size(value)
        if size <= 0:
            raise ValueError("max_upload_size must be positive")
        return size

    @property
    def public_base(self) -> str:
        """Scheme, host and optional port, e.g. ``https://irc.example.org:8443``."""
        scheme = "https" if self.ssl else "http"
        base = f"{scheme}://{self.hostname}"
        if self.port > 0:
            base += f":{self.port}"
        return base

    @property
    def public_url(self) -> str:
        """Public URL of the upload endpoint; files live directly below it."""
        return self.public_base + self.mount_path


class TokenSettings(_Frozen):
    issuer:          str = "filehost"
    ttl_seconds:     int = 3600
    ttl_min_seconds: int = 60
    ttl_max_seconds: int = 86400

    @model_validator(mode="after")
    def _check_bounds(self) -> "TokenSettings":
        if self.ttl_min_seconds <= 0:
            raise ValueError("ttl_min_seconds must be positive")
        if not self.ttl_min_seconds <= self.ttl_seconds <= self.ttl_max_seconds:
            raise ValueError(
                "token ttl bounds must satisfy ttl_min_seconds <= ttl_seconds <= ttl_max_seconds"
            )
        return self


class AppConfig(_Frozen):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    filehost: FileHostSettings = Field(default_factory=FileHostSettings)
    tokens:   TokenSettings    = Field(default_factory=TokenSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(settings_path or os.environ.get("FILEHOST_SETTINGS", SETTINGS_FILE))
    secrets_path = Path(secrets_path or os.environ.get("FILEHOST_SECRETS", SECRETS_FILE))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)

    # Relative storage paths resolve from the settings file's directory
    storage = Path(config.filehost.storage_path)
    if not storage.is_absolute() and settings_path.exists():
        storage = settings_path.resolve().parent / storage
        config = config.model_copy(
            update={"filehost": config.filehost.model_copy(update={"storage_path": str(storage)})}
        )

    logger.info(
        "Settings loaded (server=%s:%s, public_url=%s, authenticate=%s, require_tls=%s)",
        config.server.host,
        config.server.port,
        config.filehost.public_url,
        config.filehost.authenticate,
        config.filehost.require_tls,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the current configuration snapshot, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    """Atomically replace the current configuration snapshot."""
    global _config
    _config = config


def reset_config() -> None:
    """Forget the current snapshot (for testing)."""
    global _config
    _config = None
