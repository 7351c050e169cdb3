"""Configuration management using Pydantic Settings."""

import logging
import tomllib
from pathlib import Path

import tomli_w
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from notesync.core.models import MergeStrategy

logger = logging.getLogger(__name__)

_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class GeneralConfig(BaseSettings):
    """General application configuration."""

    log_level: str = "INFO"
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".notesync")
    log_file_name: str = "notesync.log"
    log_file_max_bytes: int = 5 * 1024 * 1024
    log_file_backup_count: int = 3
    # Per-logger level overrides, e.g. {"notesync.core.merge": "DEBUG"}
    log_overrides: dict[str, str] = Field(default_factory=dict)
    # Runtime metadata - not serialized to config file
    config_file: Path | None = Field(default=None, exclude=True)

    @field_validator("log_level", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        v = v.upper()
        if v not in _VALID_LEVELS:
            raise ValueError(f"Log level must be one of: {', '.join(sorted(_VALID_LEVELS))}")
        return v

    @field_validator("log_overrides", mode="before")
    @classmethod
    def validate_log_overrides(cls, v: dict[str, str] | None) -> dict[str, str]:
        """Normalise override levels to upper case."""
        overrides = {}
        for name, level in (v or {}).items():
            level = str(level).upper()
            if level not in _VALID_LEVELS:
                raise ValueError(f"Invalid log level '{level}' for logger '{name}'")
            overrides[name] = level
        return overrides

    @field_validator("data_dir", mode="before")
    @classmethod
    def expand_data_dir(cls, v: str | Path) -> Path:
        """Expand user home directory in data directory path."""
        return Path(v).expanduser().resolve()


class RemoteConfig(BaseSettings):
    """Where the shared snapshot lives."""

    kind: str = "folder"
    folder: Path | None = None
    webdav_url: str | None = None
    webdav_username: str | None = None
    webdav_password: str | None = None
    webdav_path: str = "NoteSync"
    ssl_verify: bool | str = True

    @field_validator("kind", mode="before")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        """Validate remote kind."""
        valid_kinds = {"folder", "webdav"}
        v = v.lower()
        if v not in valid_kinds:
            raise ValueError(f"Remote kind must be one of: {', '.join(sorted(valid_kinds))}")
        return v

    @field_validator("folder", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path | None) -> Path | None:
        """Expand user home directory in paths."""
        if v is None or v == "":
            return None
        return Path(v).expanduser().resolve()

    @field_validator("webdav_url", mode="before")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate WebDAV URL format."""
        if v and not v.startswith(("http://", "https://")):
            raise ValueError("WebDAV URL must start with http:// or https://")
        return v

    @field_validator("ssl_verify", mode="before")
    @classmethod
    def parse_ssl_verify(cls, v: bool | str) -> bool | str:
        """Accept booleans from the environment; any other string is a CA bundle path."""
        if isinstance(v, str) and v.lower() in {"true", "false", "1", "0"}:
            return v.lower() in {"true", "1"}
        return v


class SyncConfig(BaseSettings):
    """Sync scheduling and conflict handling."""

    auto_sync: bool = False
    sync_on_startup: bool = True
    interval_minutes: int = Field(default=5, ge=1)
    strategy: MergeStrategy = MergeStrategy.MERGE
    shutdown_timeout_seconds: float = Field(default=60.0, gt=0)
    max_version_retries: int = Field(default=3, ge=0)

    @field_validator("strategy", mode="before")
    @classmethod
    def validate_strategy(cls, v: str | MergeStrategy) -> MergeStrategy:
        """Validate merge strategy."""
        try:
            return MergeStrategy(str(v).lower())
        except ValueError as e:
            valid = ", ".join(s.value for s in MergeStrategy)
            raise ValueError(f"Sync strategy must be one of: {valid}") from e


class EncryptionConfig(BaseSettings):
    """Key derivation parameters. The passphrase is never configured here."""

    iterations: int = Field(default=210_000, ge=100_000)


class MediaConfig(BaseSettings):
    """Media attachment reconciliation."""

    enabled: bool = True
    directory: Path | None = None

    @field_validator("directory", mode="before")
    @classmethod
    def expand_path(cls, v: str | Path | None) -> Path | None:
        """Expand user home directory in paths."""
        if v is None or v == "":
            return None
        return Path(v).expanduser().resolve()


class AppConfig(BaseSettings):
    """Main application configuration."""

    model_config = SettingsConfigDict(
        env_prefix="NOTESYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    general: GeneralConfig = Field(default_factory=GeneralConfig)
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    encryption: EncryptionConfig = Field(default_factory=EncryptionConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)

    @classmethod
    def load_from_file(cls, config_path: Path) -> "AppConfig":
        """Load configuration from a TOML file."""
        if not config_path.exists():
            logger.warning(f"Config file not found: {config_path}, using defaults")
            return cls()

        with open(config_path, "rb") as f:
            config_dict = tomllib.load(f)

        return cls(**config_dict)

    def save_to_file(self, config_path: Path) -> None:
        """Save configuration to a TOML file."""
        config_path.parent.mkdir(parents=True, exist_ok=True)

        # Secrets stay in the keyring
        config_dict = self.model_dump(
            mode="json",
            exclude_none=True,
            exclude={"remote": {"webdav_password"}},
        )

        with open(config_path, "wb") as f:
            tomli_w.dump(config_dict, f)

        logger.info(f"Configuration saved to {config_path}")

    def ensure_data_dir(self) -> None:
        """Ensure data directory exists."""
        self.general.data_dir.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Data directory: {self.general.data_dir}")

    @property
    def db_path(self) -> Path:
        """Path to the local notes database."""
        return self.general.data_dir / "notes.db"

    @property
    def media_dir(self) -> Path:
        """Directory holding local media attachments."""
        return self.media.directory or self.general.data_dir / "media"

    @property
    def remote_folder(self) -> Path:
        """Folder used by the folder remote store."""
        return self.remote.folder or self.general.data_dir / "remote"

    @property
    def log_dir(self) -> Path:
        return self.general.data_dir / "logs"

    @property
    def default_config_path(self) -> Path:
        """Get default configuration file path."""
        return self.general.data_dir / "config.toml"


# Global configuration instance
_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = AppConfig()
        _config.ensure_data_dir()
    return _config


def set_config(config: AppConfig) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
    _config.ensure_data_dir()


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load configuration from file or create default."""
    if config_path is None:
        config = AppConfig()
        config_path = config.default_config_path

    if config_path.exists():
        config = AppConfig.load_from_file(config_path)
    else:
        config = AppConfig()

    config.general.config_file = config_path
    set_config(config)
    return config
