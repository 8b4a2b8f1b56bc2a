"""
Configuration management for discburn.

Loads `config.yaml` from the discburn home directory:
    $DISCBURN_HOME, or ~/.config/discburn

An optional `env_file` is loaded into the environment first, so secrets
such as DISCBURN_SIGNING_KEY can live outside the YAML file.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from discburn.errors import ConfigError
from discburn.gateway import SecurityPolicy

SIGNING_KEY_ENV = "DISCBURN_SIGNING_KEY"


def get_discburn_home() -> Path:
    """Directory holding config.yaml and .env."""
    env_home = os.environ.get("DISCBURN_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.config/discburn").expanduser()


@dataclass
class DiscburnConfig:
    """
    Settings shared by the initiator and the executor.

    Attributes:
        store_root: Directory backing the FileBlobStore (a synced folder
            when relaying through a cloud drive)
        executor_id: Identity the executor stamps on signals and transitions
        initiator_id: Identity the CLI stamps on signals and transitions
        device_name: Burner attached to the executor
        poll_interval: Seconds between polling ticks
        phase_delay: Seconds between burn progress phases
        verify_delay: Seconds spent in the verifying phase
        max_retries: Failed attempts allowed before a job is archived as failed
        auto_retry: Requeue failed jobs automatically within the budget
        signal_buffer_size: Envelopes kept in each signal ring buffer
        log_level / log_format / log_file: Logging setup
        env_file: Optional dotenv file loaded before reading secrets
        security: Gateway policy
    """
    store_root: str = "~/.local/share/discburn/store"
    executor_id: str = "discburn-executor"
    initiator_id: str = "discburn-cli"
    device_name: str = "HP DVD557s"
    poll_interval: float = 5.0
    phase_delay: float = 1.0
    verify_delay: float = 0.5
    max_retries: int = 3
    auto_retry: bool = True
    signal_buffer_size: int = 10
    log_level: str = "INFO"
    log_format: str = "pretty"
    log_file: Optional[str] = None
    env_file: Optional[str] = None
    security: SecurityPolicy = field(default_factory=SecurityPolicy)

    def __post_init__(self):
        if isinstance(self.security, dict):
            self.security = SecurityPolicy.from_dict(self.security)
        self.validate()

    @property
    def store_path(self) -> Path:
        return Path(self.store_root).expanduser()

    @property
    def log_path(self) -> Optional[Path]:
        return Path(self.log_file).expanduser() if self.log_file else None

    def validate(self) -> None:
        """Validate value ranges."""
        if self.poll_interval <= 0:
            raise ConfigError("poll_interval must be positive")
        if self.phase_delay < 0 or self.verify_delay < 0:
            raise ConfigError("phase_delay and verify_delay must not be negative")
        if self.max_retries < 0:
            raise ConfigError("max_retries must not be negative")
        if self.signal_buffer_size < 1:
            raise ConfigError("signal_buffer_size must be >= 1")
        if self.log_format not in ("structured", "pretty"):
            raise ConfigError(f"log_format must be 'structured' or 'pretty', got {self.log_format!r}")
        if not self.executor_id or not self.initiator_id:
            raise ConfigError("executor_id and initiator_id are required")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DiscburnConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        """Serializable form, without secrets."""
        result = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "security"}
        result["security"] = self.security.to_dict()
        return result


def load_config(config_path: Optional[Path] = None) -> DiscburnConfig:
    """
    Load configuration from YAML.

    Args:
        config_path: Path to config file. Defaults to <home>/config.yaml

    Returns:
        DiscburnConfig instance

    Raises:
        FileNotFoundError: If the config file is missing
        ConfigError: If the config is invalid
    """
    if config_path is None:
        config_path = get_discburn_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(
            f"discburn config.yaml not found at {config_path}. Run `discburn init`."
        )

    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")
    if not isinstance(data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    env_file = data.get("env_file")
    if env_file:
        load_dotenv(Path(env_file).expanduser(), override=False)

    try:
        config = DiscburnConfig.from_dict(data)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}")

    signing_key = os.environ.get(SIGNING_KEY_ENV)
    if signing_key and not config.security.signing_key:
        config.security.signing_key = signing_key

    return config


def default_config_dict(home: Path) -> dict[str, Any]:
    """Starting config written by `discburn init`."""
    config = DiscburnConfig(env_file=str(home / ".env"))
    return config.to_dict()
