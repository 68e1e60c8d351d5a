"""Configuration management for the wapair service."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

import yaml


@dataclass
class PairingConfig:
    """Pairing session lifecycle configuration."""

    min_phone_digits: int = 8
    connect_timeout: float = 45.0  # seconds to wait for a pairing code
    expiry_timeout: float = 1800.0  # 30 minutes to link the device
    cleanup_grace: float = 30.0  # keep terminal sessions queryable
    deploy_delay: float = 3.0  # let the client flush credentials after linking
    session_prefix: str = "wapair"
    sessions_dir: str = "~/.local/share/wapair/sessions"
    unique_user_ids: bool = False  # also reject user ids known to the status store
    rate_limit_requests: int = 10
    rate_limit_window: int = 60


@dataclass
class BridgeConfig:
    """WhatsApp HTTP bridge configuration."""

    base_url: str = "http://localhost:3000"
    api_key: str | None = None
    poll_interval: float = 1.0
    request_timeout: float = 30.0


@dataclass
class GithubConfig:
    """Repository that receives session credential files."""

    repo_url: str | None = None
    branch: str = "main"
    token: str | None = None
    author_name: str = "wapair"
    author_email: str = "wapair@localhost"


@dataclass
class HerokuConfig:
    """Heroku platform API configuration."""

    api_key: str | None = None
    app_prefix: str = "wapair"
    tarball_url: str = "https://github.com/xhclintohn/Toxic-v2/tarball/main/"
    request_timeout: float = 30.0
    build_timeout: float = 60.0
    config_vars: dict[str, str] = field(default_factory=dict)  # extra app env


@dataclass
class StatusStoreConfig:
    """Durable status record configuration."""

    backend: str = "json"  # json | postgres | none
    path: str = "~/.local/share/wapair/status.json"
    database_url: str | None = None
    retention_days: int = 7


@dataclass
class Config:
    """Service configuration."""

    port: int = 3000
    bind_address: str = "0.0.0.0"
    log_level: str = "INFO"
    log_file: str | None = None
    pairing: PairingConfig = field(default_factory=PairingConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    github: GithubConfig = field(default_factory=GithubConfig)
    heroku: HerokuConfig = field(default_factory=HerokuConfig)
    status_store: StatusStoreConfig = field(default_factory=StatusStoreConfig)


def get_config_path(custom_path: Path | None = None) -> Path:
    """Get the configuration file path.

    Args:
        custom_path: Override path. If None, returns default.

    Returns:
        Path to config file.
    """
    if custom_path is not None:
        return custom_path
    return Path.home() / ".config" / "wapair" / "config.yaml"


def _default_file_reader(path: Path) -> dict[str, Any] | None:
    """Default file reader that loads YAML from disk."""
    if not path.exists():
        return None
    try:
        content = path.read_text()
        if not content.strip():
            return None
        data = yaml.safe_load(content)
    except yaml.YAMLError:
        return None
    return data if isinstance(data, dict) else None


def _section(cls: type, data: Mapping[str, Any]) -> Any:
    """Build a config section, ignoring unknown keys."""
    known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
    return cls(**known)


def _apply_env(config: Config, env: Mapping[str, str]) -> Config:
    """Let environment variables override secrets and port."""
    if env.get("PORT"):
        try:
            config.port = int(env["PORT"])
        except ValueError:
            pass
    if env.get("HEROKU_API_KEY"):
        config.heroku.api_key = env["HEROKU_API_KEY"]
    if env.get("GITHUB_TOKEN"):
        config.github.token = env["GITHUB_TOKEN"]
    if env.get("DATABASE_URL"):
        config.status_store.database_url = env["DATABASE_URL"]
    if env.get("WAPAIR_BRIDGE_API_KEY"):
        config.bridge.api_key = env["WAPAIR_BRIDGE_API_KEY"]
    return config


def load_config(
    path: Path | None = None,
    file_reader: Callable[[Path], dict[str, Any] | None] | None = None,
    env: Mapping[str, str] | None = None,
) -> Config:
    """Load configuration from file and environment.

    Args:
        path: Path to config file. If None, uses default path.
        file_reader: Injectable file reader for testing.
        env: Environment mapping. Defaults to os.environ.

    Returns:
        Config object with values from file or defaults.
    """
    config_path = get_config_path(path)
    reader = file_reader or _default_file_reader
    env = os.environ if env is None else env

    data = reader(config_path)

    if data is None:
        return _apply_env(Config(), env)

    config = Config(
        port=data.get("port", Config.port),
        bind_address=data.get("bind_address", Config.bind_address),
        log_level=data.get("log_level", Config.log_level),
        log_file=data.get("log_file", Config.log_file),
        pairing=_section(PairingConfig, data.get("pairing") or {}),
        bridge=_section(BridgeConfig, data.get("bridge") or {}),
        github=_section(GithubConfig, data.get("github") or {}),
        heroku=_section(HerokuConfig, data.get("heroku") or {}),
        status_store=_section(StatusStoreConfig, data.get("status_store") or {}),
    )
    return _apply_env(config, env)
