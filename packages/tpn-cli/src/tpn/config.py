"""
TPN-CLI Configuration

Configuration is loaded from (in order of precedence):
1. Explicit keyword overrides passed to get_settings()
2. Environment variables (prefixed with TPN_)
3. ~/.tpn/.env

Key settings:
- TPN_BASE_URLS: Ordered failover list of configuration endpoints
  (JSON list or comma separated)
- TPN_TIMEOUT: Per-attempt HTTP timeout in seconds (default: 60)
- TPN_TMP_DIR: Scratch directory holding the session config, lease files and
  lock file (default: $TMPDIR or /tmp)
- TPN_DEBUG: Verbose driver output and debug logging

The Settings instance is built once at startup and handed to every component
explicitly; nothing reads configuration from module globals at call time.
"""

import json
import logging
import os
from pathlib import Path
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_BASE_URLS = ["http://161.35.91.172:3000"]
ENV_FILE = Path.home() / ".tpn" / ".env"


def _default_tmp_dir() -> Path:
    return Path(os.environ.get("TMPDIR") or "/tmp")


class Settings(BaseSettings):
    """
    TPN-CLI configuration settings.

    All file locations are derived from tmp_dir and interface_name so that one
    machine has exactly one session config, one lease record and one lock.
    """

    # Remote configuration API
    base_urls: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_BASE_URLS)
    )
    timeout: float = 60.0
    retry_attempts: int = 3
    retry_delay: float = 5.0
    ip_service: str = "https://ipv4.icanhazip.com"

    # Session files
    tmp_dir: Path = Field(default_factory=_default_tmp_dir)
    interface_name: str = "tpn_config"

    # Connect defaults
    default_lease_minutes: int = 10

    # Privilege grant for wg-quick
    sudoers_file: Path = Path("/etc/sudoers.d/tpn")

    debug: bool = False

    model_config = SettingsConfigDict(
        env_prefix="TPN_",
        env_file=ENV_FILE,
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("base_urls", mode="before")
    @classmethod
    def _split_base_urls(cls, value):
        if isinstance(value, str):
            value = value.strip()
            if value.startswith("["):
                value = json.loads(value)
            else:
                value = [part for part in value.replace(",", " ").split() if part]
        urls = [str(url).strip().rstrip("/") for url in value if str(url).strip()]
        if not urls:
            raise ValueError("base_urls must contain at least one endpoint")
        return urls

    @field_validator("timeout", "retry_delay")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("retry_attempts", "default_lease_minutes")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @property
    def config_path(self) -> Path:
        """The single Session Configuration path handed to wg-quick."""
        return self.tmp_dir / f"{self.interface_name}.conf"

    @property
    def lease_timestamp_path(self) -> Path:
        return self.tmp_dir / "tpn_lease_end_timestamp"

    @property
    def lease_readable_path(self) -> Path:
        return self.tmp_dir / "tpn_lease_end_readable"

    @property
    def pending_path(self) -> Path:
        return self.tmp_dir / "tpn_connect.pending"

    @property
    def lock_path(self) -> Path:
        return self.tmp_dir / "tpn.lock"


_settings: Optional[Settings] = None


def get_settings(force_reload: bool = False, **overrides) -> Settings:
    """
    Get the process-wide Settings instance.

    Args:
        force_reload: Rebuild settings from the environment
        **overrides: Field overrides; always forces a rebuild

    Returns:
        Settings instance
    """
    global _settings

    if _settings is None or force_reload or overrides:
        _settings = Settings(**overrides)
        logger.debug(
            f"Loaded settings: endpoints={_settings.base_urls}, "
            f"timeout={_settings.timeout}, tmp_dir={_settings.tmp_dir}"
        )

    return _settings
