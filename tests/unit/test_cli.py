"""
Unit tests for the command-line entry point.
"""

import pytest

import wsoos.__main__ as cli
from wsoos import __version__
from wsoos.config import ConfigError, ProxyConfig, TLSMode
from wsoos.tunnel import ListenError


class FakeServer:
    """Stands in for ProxyServer; records the config it was given."""

    instances = []

    def __init__(self, config, metrics=None):
        self.config = config
        self.ran = False
        FakeServer.instances.append(self)

    def run(self):
        self.ran = True


class FailingServer(FakeServer):
    def run(self):
        raise ListenError("HTTP", OSError("address already in use"))


@pytest.fixture
def fake_server(monkeypatch):
    FakeServer.instances = []
    monkeypatch.setattr(cli, "ProxyServer", FakeServer)
    return FakeServer


@pytest.fixture
def loaded(monkeypatch):
    """Make load_config return a known config and remember the path."""
    state = {"config": ProxyConfig(dst_address="10.0.0.5:22"), "path": "unset"}

    def fake_load(path=None):
        state["path"] = path
        return state["config"]

    monkeypatch.setattr(cli, "load_config", fake_load)
    return state


class TestMain:
    """Tests for main()."""

    def test_runs_with_loaded_config(self, fake_server, loaded, capsys):
        assert cli.main([]) == 0

        server = fake_server.instances[0]
        assert server.ran
        assert server.config.dst_address == "10.0.0.5:22"
        assert loaded["path"] is None
        assert __version__ in capsys.readouterr().out

    def test_flags_override(self, fake_server, loaded):
        cli.main([
            "-a", ":8080",
            "--tls-addr", ":8443",
            "--custom-handshake", "200",
            "--tls",
            "--tls-mode", "stunnel",
            "--metrics",
            "--metrics-port", ":9191",
            "-l", "debug",
        ])

        config = fake_server.instances[0].config
        assert config.address == ":8080"
        assert config.tls_address == ":8443"
        assert config.handshake_code == "200"
        assert config.tls_enabled is True
        assert config.tls_mode == TLSMode.STUNNEL
        assert config.metrics_enabled is True
        assert config.metrics_port == ":9191"
        assert config.log_level == "debug"

    def test_unpassed_flags_keep_loaded_values(self, fake_server, loaded):
        loaded["config"] = ProxyConfig(dst_address="10.0.0.5:22", tls_enabled=True, log_level="warn")

        cli.main(["--dst-addr", "10.0.0.9:22"])

        config = fake_server.instances[0].config
        assert config.dst_address == "10.0.0.9:22"
        assert config.tls_enabled is True
        assert config.log_level == "warn"

    def test_config_path_passed(self, fake_server, loaded):
        cli.main(["-c", "/tmp/wsoos.yaml"])
        assert loaded["path"] == "/tmp/wsoos.yaml"

    def test_key_paths(self, fake_server, loaded):
        cli.main(["--private-key", "/certs/cert.pem", "--public-key", "/certs/key.pem"])

        config = fake_server.instances[0].config
        assert config.tls_private_key == "/certs/cert.pem"
        assert config.tls_public_key == "/certs/key.pem"

    def test_invalid_config_exits_1(self, fake_server, loaded, capsys):
        assert cli.main(["--dst-addr", "no-port"]) == 1
        assert "Error:" in capsys.readouterr().err
        assert fake_server.instances == []

    def test_load_error_exits_1(self, fake_server, monkeypatch, capsys):
        def broken(path=None):
            raise ConfigError("config file not found: /nope")

        monkeypatch.setattr(cli, "load_config", broken)

        assert cli.main(["-c", "/nope"]) == 1
        assert "not found" in capsys.readouterr().err

    def test_listen_error_exits_1(self, monkeypatch, loaded, capsys):
        monkeypatch.setattr(cli, "ProxyServer", FailingServer)

        assert cli.main([]) == 1
        assert "HTTP server failed" in capsys.readouterr().err

    def test_invalid_tls_mode_rejected_by_parser(self, fake_server, loaded):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--tls-mode", "sni"])
        assert exc_info.value.code == 2

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--version"])

        assert exc_info.value.code == 0
        assert f"wsoos version {__version__}" in capsys.readouterr().out


class TestFlagOverrides:
    """Tests for flag_overrides()."""

    def test_only_passed_flags(self):
        args = cli.build_parser().parse_args(["--tls"])
        assert cli.flag_overrides(args) == {"tls_enabled": True}

    def test_nothing_passed(self):
        args = cli.build_parser().parse_args([])
        assert cli.flag_overrides(args) == {}
