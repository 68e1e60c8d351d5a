"""Tests for config module."""

from pathlib import Path

import yaml

from wapair.config import (
    Config,
    HerokuConfig,
    PairingConfig,
    get_config_path,
    load_config,
)


class TestConfigDefaults:
    """Test default configuration values."""

    def test_default_config_values(self):
        """Config has sensible defaults when no file exists."""
        config = Config()

        assert config.port == 3000
        assert config.bind_address == "0.0.0.0"
        assert config.log_level == "INFO"
        assert config.log_file is None
        assert config.status_store.backend == "json"

    def test_default_pairing_timers(self):
        """Pairing defaults match the documented lifecycle."""
        pairing = PairingConfig()

        assert pairing.connect_timeout == 45.0
        assert pairing.expiry_timeout == 1800.0
        assert pairing.cleanup_grace == 30.0
        assert pairing.min_phone_digits == 8

    def test_default_heroku_settings(self):
        """Heroku defaults need only an API key."""
        heroku = HerokuConfig()

        assert heroku.api_key is None
        assert heroku.tarball_url.endswith("/tarball/main/")
        assert heroku.config_vars == {}


class TestGetConfigPath:
    """Test config path resolution."""

    def test_get_config_path_default(self):
        """Default config path is ~/.config/wapair/config.yaml."""
        assert get_config_path() == Path.home() / ".config" / "wapair" / "config.yaml"

    def test_get_config_path_custom(self):
        """Can override config path."""
        custom = Path("/custom/config.yaml")
        assert get_config_path(custom) == custom


class TestLoadConfig:
    """Test config loading."""

    def test_no_file_returns_defaults(self, tmp_path):
        """Config returns defaults when no file exists."""
        config = load_config(tmp_path / "nonexistent.yaml", env={})

        assert config.port == 3000
        assert config.pairing == PairingConfig()

    def test_load_from_file(self, tmp_path):
        """Config loads top-level values and sections from YAML."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            yaml.dump(
                {
                    "port": 8080,
                    "log_level": "DEBUG",
                    "pairing": {"expiry_timeout": 600, "session_prefix": "toxic"},
                    "heroku": {"app_prefix": "toxic-md"},
                    "status_store": {"backend": "postgres"},
                }
            )
        )

        config = load_config(config_file, env={})

        assert config.port == 8080
        assert config.log_level == "DEBUG"
        assert config.pairing.expiry_timeout == 600
        assert config.pairing.session_prefix == "toxic"
        assert config.pairing.connect_timeout == 45.0
        assert config.heroku.app_prefix == "toxic-md"
        assert config.status_store.backend == "postgres"

    def test_unknown_keys_are_ignored(self, tmp_path):
        """Unknown section keys do not break loading."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("bridge:\n  base_url: http://bridge:3000\n  colour: blue\n")

        config = load_config(config_file, env={})

        assert config.bridge.base_url == "http://bridge:3000"

    def test_invalid_yaml_returns_defaults(self, tmp_path):
        """Invalid YAML falls back to defaults."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("port: [unclosed")

        assert load_config(config_file, env={}).port == 3000

    def test_empty_file_returns_defaults(self, tmp_path):
        """Empty file falls back to defaults."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")

        assert load_config(config_file, env={}) == Config()

    def test_non_mapping_yaml_returns_defaults(self, tmp_path):
        """A YAML list is not a config."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- 1\n- 2\n")

        assert load_config(config_file, env={}).port == 3000

    def test_injected_file_reader(self):
        """A custom reader replaces disk access."""
        config = load_config(
            Path("/nowhere.yaml"),
            file_reader=lambda path: {"port": 9999},
            env={},
        )

        assert config.port == 9999


class TestEnvironmentOverrides:
    """Environment variables override secrets and port."""

    def test_env_overrides_file_values(self):
        """Secrets from the environment win over the file."""
        config = load_config(
            Path("/nowhere.yaml"),
            file_reader=lambda path: {
                "port": 8080,
                "heroku": {"api_key": "from-file"},
            },
            env={
                "PORT": "5000",
                "HEROKU_API_KEY": "from-env",
                "GITHUB_TOKEN": "ghp_token",
                "DATABASE_URL": "postgres://db/wapair",
                "WAPAIR_BRIDGE_API_KEY": "bridge-key",
            },
        )

        assert config.port == 5000
        assert config.heroku.api_key == "from-env"
        assert config.github.token == "ghp_token"
        assert config.status_store.database_url == "postgres://db/wapair"
        assert config.bridge.api_key == "bridge-key"

    def test_env_applies_without_file(self):
        """Environment overrides also apply to defaults."""
        config = load_config(
            Path("/nowhere.yaml"),
            file_reader=lambda path: None,
            env={"HEROKU_API_KEY": "key"},
        )

        assert config.heroku.api_key == "key"

    def test_invalid_port_env_is_ignored(self):
        """A non-numeric PORT keeps the configured port."""
        config = load_config(
            Path("/nowhere.yaml"), file_reader=lambda path: None, env={"PORT": "http"}
        )

        assert config.port == 3000
