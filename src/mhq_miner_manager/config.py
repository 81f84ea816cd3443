"""Settings for mhq-miner-manager (pydantic-settings).

Values are layered, strongest first:
1. MHQ_MINER_MANAGER_* environment variables (nested with ``__``,
   e.g. MHQ_MINER_MANAGER_FETCH__MAX_ATTEMPTS=5)
2. An optional JSON config file; keys starting with ``_`` or ``$`` are
   treated as comments
3. Field defaults

The installer core never calls get_settings() itself: front ends resolve a
Settings object and hand it to the Installer explicitly.
"""

import json
import sys
from contextvars import ContextVar
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


APP_NAME = "mhq-miner-manager"

# Pointer file recording the install location, relative to the home directory
POINTER_FILE_NAME = ".mhqpath"

# Installation record written inside the install directory
RECORD_FILE_NAME = "installation.json"

# Per-install scratch directory for partial downloads
STAGING_DIR_NAME = ".staging"

# Every service registered with the OS starts with this prefix
SERVICE_PREFIX = "mininghq"

DEFAULT_API_ENDPOINT = "http://mininghq.local/api/v1"

SUPPORTED_OPERATING_SYSTEMS = ("linux", "darwin", "windows")

_LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")


def current_os() -> str:
    """OS identifier for the running interpreter: 'windows', 'darwin' or 'linux'."""
    if sys.platform == 'win32':
        return 'windows'
    if sys.platform == 'darwin':
        return 'darwin'
    return 'linux'


class FetchConfig(BaseModel):
    """Download policy for the manifest and artifacts."""

    max_attempts: int = Field(default=3, ge=1, le=10, description="Tries per download")
    backoff_multiplier: float = Field(default=0.5, ge=0.0, description="Exponential backoff base (s)")
    backoff_max: float = Field(default=8.0, ge=0.0, description="Longest wait between tries (s)")
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    max_workers: int = Field(default=4, ge=1, le=16, description="Parallel artifact downloads")
    chunk_size: int = Field(default=65536, ge=1024)


class LoggingConfig(BaseModel):
    """Log levels for normal and --debug runs."""

    level: str = "INFO"
    debug_level: str = "DEBUG"

    @field_validator('level', 'debug_level')
    @classmethod
    def level_must_be_known(cls, v: str) -> str:
        upper = v.strip().upper()
        if upper not in _LOG_LEVELS:
            raise ValueError(f'unknown log level: {v}')
        return upper


def _strip_comment_fields(data: Any) -> Any:
    """Drop ``_``/``$``-prefixed keys (JSON comments) at every nesting level."""
    if not isinstance(data, dict):
        return data
    return {
        key: _strip_comment_fields(value)
        for key, value in data.items()
        if key[:1] not in ('_', '$')
    }


# Config file consulted by Settings while from_file() is constructing one
_config_file: ContextVar[Path | None] = ContextVar('mhq_config_file', default=None)


class _ConfigFileSource(PydanticBaseSettingsSource):
    """Settings source reading the active JSON config file."""

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        # __call__ returns the whole mapping at once
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        path = _config_file.get()
        if path is None or not path.is_file():
            return {}
        return _strip_comment_fields(json.loads(path.read_text(encoding='utf-8')))


class Settings(BaseSettings):
    """All manager settings."""

    api_endpoint: str = DEFAULT_API_ENDPOINT
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = SettingsConfigDict(
        env_prefix="MHQ_MINER_MANAGER_",
        env_nested_delimiter="__",
    )

    @classmethod
    def from_file(cls, config_path: Path | str) -> "Settings":
        """Build settings from a JSON file, still overridable from the environment.

        A missing file yields the defaults.
        """
        token = _config_file.set(Path(config_path))
        try:
            return cls()
        finally:
            _config_file.reset(token)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (env_settings, _ConfigFileSource(settings_cls), init_settings)


_settings_cache: Settings | None = None


def get_settings(config_path: Path | str | None = None, *, _force_reload: bool = False) -> Settings:
    """Return the process-wide Settings, building them on first use.

    Args:
        config_path: Load this JSON file instead; the result is not cached
        _force_reload: Rebuild the cached instance (tests, config edits)
    """
    global _settings_cache

    if config_path is not None:
        return Settings.from_file(config_path)

    if _settings_cache is None or _force_reload:
        _settings_cache = Settings()
    return _settings_cache
