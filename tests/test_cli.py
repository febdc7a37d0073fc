"""Tests for CLI commands."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from lsrelay import __version__
from lsrelay.cli.app import app
from lsrelay.errors import EndpointUnavailableError


@pytest.fixture
def fake_client(monkeypatch) -> MagicMock:
    """Replace ExtensionServiceClient with a mock returned for every launcher."""
    client = MagicMock()
    client.get_service_version = AsyncMock(return_value=("0.9.0", "12"))
    client.get_language_server_version = AsyncMock(return_value="1.300.0")
    client.quit_service = AsyncMock()
    client.close = AsyncMock()
    monkeypatch.setattr(
        "lsrelay.service.ExtensionServiceClient", MagicMock(return_value=client)
    )
    return client


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text('[service]\nsocket_path = "/tmp/lsrelay-cli-test.sock"\n')
    return path


class TestVersionCommand:
    def test_shows_all_versions(self, cli_runner, fake_client):
        result = cli_runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert f"lsrelay {__version__}" in result.stdout
        assert "extension service 0.9.0 (build 12)" in result.stdout
        assert "language server 1.300.0" in result.stdout
        fake_client.close.assert_awaited_once()

    def test_language_server_not_running(self, cli_runner, fake_client):
        fake_client.get_language_server_version.return_value = None

        result = cli_runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert "language server not running" in result.stdout

    def test_service_unreachable(self, cli_runner, fake_client):
        fake_client.get_service_version.side_effect = EndpointUnavailableError()

        result = cli_runner.invoke(app, ["version"])

        assert result.exit_code == 1
        assert "Waiting for service" in result.stdout
        fake_client.close.assert_awaited_once()


class TestQuitCommand:
    def test_not_running(self, cli_runner, fake_client, monkeypatch):
        monkeypatch.setattr(
            "lsrelay.service.launcher.is_listening", AsyncMock(return_value=False)
        )

        result = cli_runner.invoke(app, ["quit"])

        assert result.exit_code == 0
        assert "not running" in result.stdout
        fake_client.quit_service.assert_not_awaited()

    def test_running(self, cli_runner, fake_client, monkeypatch):
        monkeypatch.setattr(
            "lsrelay.service.launcher.is_listening", AsyncMock(return_value=True)
        )

        result = cli_runner.invoke(app, ["quit"])

        assert result.exit_code == 0
        assert "Extension service stopped" in result.stdout
        fake_client.get_service_version.assert_awaited_once()
        fake_client.quit_service.assert_awaited_once()

    def test_missing_socket_directory(self, cli_runner):
        # Nothing listens under the temporary LSRELAY_HOME.
        result = cli_runner.invoke(app, ["quit"])

        assert result.exit_code == 0
        assert "not running" in result.stdout


class TestServeCommand:
    def test_runs_host_with_config(self, cli_runner, config_file, monkeypatch):
        host = MagicMock()
        host.serve_forever = AsyncMock()
        host_cls = MagicMock(return_value=host)
        configure = MagicMock()
        monkeypatch.setattr("lsrelay.service.host.ServiceHost", host_cls)
        monkeypatch.setattr("lsrelay.logging.configure_logging", configure)

        result = cli_runner.invoke(app, ["serve", "--config", str(config_file)])

        assert result.exit_code == 0
        config = host_cls.call_args.args[0]
        assert str(config.service.socket_path) == "/tmp/lsrelay-cli-test.sock"
        configure.assert_called_once_with(
            "INFO", use_rich=True, redact_secrets=True, redact_patterns=[]
        )
        host.serve_forever.assert_awaited_once()


class TestConfigOption:
    def test_missing_file(self, cli_runner, tmp_path):
        result = cli_runner.invoke(
            app, ["version", "--config", str(tmp_path / "missing.toml")]
        )
        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_invalid_file(self, cli_runner, tmp_path):
        invalid_file = tmp_path / "invalid.toml"
        invalid_file.write_text("not valid toml [[[")

        result = cli_runner.invoke(app, ["quit", "--config", str(invalid_file)])

        assert result.exit_code == 1
        assert "Invalid TOML" in result.stdout
