"""Unit tests for configuration management."""

from unittest.mock import mock_open, patch

import pytest

from dbclone.config import AppConfig, ConfigLoader, config_loader
from dbclone.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for env_var in ConfigLoader.ENV_MAPPINGS:
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def write_config(tmp_path):
    def _write(content: str) -> str:
        path = tmp_path / "config.yaml"
        path.write_text(content)
        return str(path)

    return _write


class TestAppConfig:
    """Test AppConfig Pydantic model."""

    def test_app_config_defaults(self):
        config = AppConfig()
        assert config.store_type == "file"
        assert config.store_url is None
        assert config.disk_backend == "hyperv"
        assert config.clone_subdirectory == "clone"
        assert config.ssh_port == 22
        assert config.ssh_host_key_policy == "strict"
        assert config.default_timeout == 300
        assert config.log_level == "INFO"
        assert config.sqlcmd_path == "sqlcmd"

    def test_log_level_normalized(self):
        assert AppConfig(log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValueError, match="log_level must be one of"):
            AppConfig(log_level="TRACE")

    def test_store_type_and_backend_normalized(self):
        config = AppConfig(store_type="SQL", store_url="sqlite://", disk_backend="QEMU")
        assert config.store_type == "sql"
        assert config.disk_backend == "qemu"

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"store_type": "mongo"},
            {"disk_backend": "vmware"},
            {"ssh_host_key_policy": "trust"},
            {"ssh_port": 0},
            {"default_timeout": -1},
            {"clone_subdirectory": ""},
        ],
    )
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            AppConfig(**kwargs)

    def test_sql_store_requires_url(self):
        with pytest.raises(ValueError, match="store_url is required"):
            AppConfig(store_type="sql")

    def test_forbids_unknown_fields(self):
        with pytest.raises(ValueError):
            AppConfig(unknown_field="value")


class TestConfigLoader:
    """Test ConfigLoader class."""

    def test_no_file_returns_defaults(self):
        with patch("os.path.exists", return_value=False):
            config = ConfigLoader().load_config()
        assert config == AppConfig()

    def test_load_from_path(self, write_config):
        path = write_config(
            "store_type: sql\n"
            "store_url: sqlite:////var/lib/dbclone/registry.db\n"
            "disk_backend: qemu\n"
            "ssh_username: provisioner\n"
            "default_timeout: 120\n"
        )
        config = ConfigLoader().load_config(path)

        assert config.store_type == "sql"
        assert config.store_url == "sqlite:////var/lib/dbclone/registry.db"
        assert config.disk_backend == "qemu"
        assert config.ssh_username == "provisioner"
        assert config.default_timeout == 120

    def test_load_from_default_location(self):
        def exists(path):
            return path == "config.yaml"

        with patch("os.path.exists", side_effect=exists), patch(
            "builtins.open", mock_open(read_data="log_level: ERROR\n")
        ):
            config = ConfigLoader().load_config()
        assert config.log_level == "ERROR"

    def test_empty_file(self, write_config):
        assert ConfigLoader().load_config(write_config("")) == AppConfig()

    def test_invalid_yaml(self, write_config):
        path = write_config("key: value\n  invalid indentation\n")
        with pytest.raises(ConfigurationError, match="Failed to parse configuration file"):
            ConfigLoader().load_config(path)

    def test_non_mapping(self, write_config):
        with pytest.raises(ConfigurationError, match="Invalid configuration format"):
            ConfigLoader().load_config(write_config("- a\n- b\n"))

    def test_invalid_values(self, write_config):
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            ConfigLoader().load_config(write_config("store_type: sql\n"))

    def test_missing_file(self):
        with pytest.raises(ConfigurationError):
            ConfigLoader().load_config("/nonexistent/path/config.yaml")


class TestEnvironmentOverrides:
    def test_env_overrides_file(self, write_config, monkeypatch):
        path = write_config("disk_backend: hyperv\ndefault_timeout: 60\n")
        monkeypatch.setenv("DBCLONE_DISK_BACKEND", "qemu")
        monkeypatch.setenv("DBCLONE_TIMEOUT", "900")
        monkeypatch.setenv("DBCLONE_STORE_PATH", "/srv/dbclone")

        config = ConfigLoader().load_config(path)

        assert config.disk_backend == "qemu"
        assert config.default_timeout == 900
        assert config.store_path == "/srv/dbclone"

    def test_invalid_integer_is_ignored(self, write_config, monkeypatch):
        path = write_config("ssh_port: 2222\n")
        monkeypatch.setenv("DBCLONE_SSH_PORT", "not-a-port")

        assert ConfigLoader().load_config(path).ssh_port == 2222

    def test_invalid_env_value_is_rejected(self, monkeypatch):
        monkeypatch.setenv("DBCLONE_STORE_TYPE", "mongo")
        with patch("os.path.exists", return_value=False):
            with pytest.raises(ConfigurationError):
                ConfigLoader().load_config()


def test_global_config_loader():
    assert isinstance(config_loader, ConfigLoader)
