"""Tests for the command-line interface."""

import json
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from click.testing import CliRunner

from dbclone.cli import cli
from dbclone.config import ConfigLoader
from dbclone.exceptions import InvalidRequestError
from dbclone.models import CloneFailure, CloneRecord, CloneState, ProvisionResult
from dbclone.store import DocumentMetadataStore


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for env_var in ConfigLoader.ENV_MAPPINGS:
        monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def registry(tmp_path):
    store = DocumentMetadataStore(str(tmp_path / "registry"))
    image = store.register_image(
        "DB1_2024.vhdx", "D:\\images\\DB1_2024.vhdx", "DB1", datetime(2024, 3, 1)
    )
    host = store.create_host("HOSTA", "10.0.0.5", "hosta.corp.local")
    store.create_clone(
        image.image_id, host.host_id, "C:\\clone\\DB1_2024.vhdx",
        "C:\\clone\\DB1_2024_abcde", "HOSTA", "DB1_2024",
    )
    return store


@pytest.fixture
def config_file(tmp_path, registry):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"store_type": "file", "store_path": registry.path}))
    return str(path)


RECORD = CloneRecord(
    clone_id=1,
    clone_location="C:\\clone\\DB1_2024.vhdx",
    access_path="C:\\clone\\DB1_2024_abcde",
    sql_instance="HOSTA",
    database_name="DB1_2024",
    is_enabled=True,
    image_id=1,
    image_name="DB1_2024.vhdx",
    image_location="D:\\images\\DB1_2024.vhdx",
    host_name="HOSTA",
)


def fake_client(new_clone):
    client = MagicMock()
    client.new_clone = new_clone
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=None)
    return MagicMock(return_value=client)


class TestListCommands:
    def test_list_json(self, config_file):
        result = CliRunner().invoke(cli, ["-c", config_file, "-o", "json", "list"])

        assert result.exit_code == 0, result.output
        [row] = json.loads(result.output)
        assert row["clone_id"] == 1
        assert row["host_name"] == "HOSTA"
        assert row["image_location"] == "D:\\images\\DB1_2024.vhdx"

    def test_list_filter_text(self, config_file):
        result = CliRunner().invoke(cli, ["-c", config_file, "list", "--host", "hostb"])
        assert result.exit_code == 0
        assert "No records found" in result.output

        result = CliRunner().invoke(cli, ["-c", config_file, "list", "--enabled"])
        assert "DB1_2024" in result.output
        assert result.output.splitlines()[0].split() == [
            "clone_id", "host_name", "sql_instance", "database_name", "image_name", "is_enabled",
        ]

    def test_images_yaml(self, config_file):
        result = CliRunner().invoke(cli, ["-c", config_file, "-o", "yaml", "images", "-d", "db1"])

        assert result.exit_code == 0, result.output
        [row] = yaml.safe_load(result.output)
        assert row["image_name"] == "DB1_2024.vhdx"
        assert row["created_on"].startswith("2024-03-01")

    def test_hosts(self, config_file):
        result = CliRunner().invoke(cli, ["-c", config_file, "hosts"])
        assert result.exit_code == 0
        assert "hosta.corp.local" in result.output


class TestNewCommand:
    def test_new_success(self, config_file):
        new_clone = AsyncMock(return_value=ProvisionResult("op", clones=[RECORD]))
        with patch("dbclone.cli.DBCloneClient", fake_client(new_clone)):
            result = CliRunner().invoke(
                cli,
                [
                    "-c", config_file, "new", "-H", "HOSTA", "-d", "DB1", "--latest",
                    "--destination", "C:\\clone", "--sql-user", "sa", "--sql-password", "pw",
                ],
            )

        assert result.exit_code == 0, result.output
        assert "C:\\clone\\DB1_2024_abcde" in result.output
        args, kwargs = new_clone.await_args
        assert args == (["HOSTA"],)
        assert kwargs["databases"] == ["DB1"]
        assert kwargs["latest"] is True
        assert kwargs["destination"] == "C:\\clone"
        assert kwargs["credential"] is None
        assert kwargs["sql_credential"].username == "sa"

    def test_new_partial_failure(self, config_file):
        failure = CloneFailure("HOSTB", "DB1", CloneState.MOUNTING, "no free device", 1308)
        new_clone = AsyncMock(
            return_value=ProvisionResult("op", clones=[RECORD], failures=[failure])
        )
        with patch("dbclone.cli.DBCloneClient", fake_client(new_clone)):
            result = CliRunner().invoke(
                cli, ["-c", config_file, "new", "-H", "HOSTA", "-H", "HOSTB", "-d", "DB1", "--latest"]
            )

        assert result.exit_code == 1
        assert "✗ HOSTB/DB1 failed while mounting: no free device" in result.output

    def test_new_invalid_request(self, config_file):
        new_clone = AsyncMock(side_effect=InvalidRequestError("Latest-image mode needs at least one database"))
        with patch("dbclone.cli.DBCloneClient", fake_client(new_clone)):
            result = CliRunner().invoke(cli, ["-c", config_file, "new", "-H", "HOSTA", "--latest"])

        assert result.exit_code == 1
        assert "✗ Error [1400]" in result.output

    def test_new_requires_host(self, config_file):
        result = CliRunner().invoke(cli, ["-c", config_file, "new", "--latest"])
        assert result.exit_code == 2


def test_invalid_config_file(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("store_type: mongo\n")
    result = CliRunner().invoke(cli, ["-c", str(path), "hosts"])

    assert result.exit_code == 1
    assert "Invalid configuration" in result.output


def test_config_show(config_file, registry):
    result = CliRunner().invoke(cli, ["-c", config_file, "config", "show"])
    assert result.exit_code == 0
    assert yaml.safe_load(result.output)["store_path"] == registry.path
