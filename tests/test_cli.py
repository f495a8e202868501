"""Tests for the projlink command-line entry point."""

import functools
import json
import socket
from collections.abc import Iterator
from typing import Any

import pytest
from fakes import FakeClientFactory, FakeScanner, ProjectorServer

import projlink.__main__ as cli
from projlink.core.ble import SyncBluetoothManager
from projlink.core.config import ConfigManager
from projlink.models.settings import RemoteSettings

ADDRESS = "AA:BB:CC:DD:EE:FF"


class AdvertisingScanner(FakeScanner):
    """Scanner that sees one projector as soon as it starts."""

    async def start(self) -> None:
        await super().start()
        self.advertise(ADDRESS, "Projector-L", rssi=-40)


@pytest.fixture
def config() -> Iterator[ConfigManager]:
    """Return an isolated, cleared config."""
    config = ConfigManager("ProjLinkTest", "CliTest")
    config.clear()
    yield config
    config.clear()


def _use_scanner(monkeypatch: pytest.MonkeyPatch, scanner_factory: Any) -> None:
    monkeypatch.setattr(
        cli,
        "SyncBluetoothManager",
        functools.partial(
            SyncBluetoothManager,
            scanner_factory=scanner_factory,
            client_factory=FakeClientFactory(),
        ),
    )


class TestParser:
    """Tests for argument parsing."""

    def test_scan_defaults(self) -> None:
        """Test scan has a default duration."""
        args = cli.build_parser().parse_args(["scan"])
        assert args.command == "scan"
        assert args.duration == 5.0
        assert args.verbose is False

    def test_remote_args(self) -> None:
        """Test remote takes host, action and optional argument."""
        args = cli.build_parser().parse_args(
            ["-v", "remote", "192.168.1.20", "seek", "1500", "--timeout", "3"]
        )
        assert args.host == "192.168.1.20"
        assert args.action == "seek"
        assert args.arg == "1500"
        assert args.timeout == 3.0
        assert args.verbose is True

    def test_unknown_action_rejected(self) -> None:
        """Test actions are restricted to known requests."""
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["remote", "192.168.1.20", "rewind"])

    def test_command_required(self) -> None:
        """Test a subcommand is mandatory."""
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])

    @pytest.mark.parametrize(
        "argv",
        [
            ["remote", "192.168.1.20", "seek"],
            ["remote", "192.168.1.20", "seek", "soon"],
            ["remote", "192.168.1.20", "discover"],
            ["remote", "192.168.1.20", "blend", "SPARKLE"],
        ],
    )
    def test_bad_argument_rejected(self, argv: list[str]) -> None:
        """Test missing or invalid action arguments exit with usage."""
        with pytest.raises(SystemExit) as exc_info:
            cli.main(argv)
        assert exc_info.value.code == 2


class TestRunRemote:
    """Tests for one-shot remote requests."""

    @pytest.mark.asyncio
    async def test_seek_acknowledged(
        self,
        config: ConfigManager,
        remote_settings: RemoteSettings,
        projector_server: ProjectorServer,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test the correlated ack is printed and the exit code is 0."""
        config.save_remote_settings(remote_settings)

        code = await cli.run_remote("127.0.0.1", "seek", "1500", 2.0, config)

        assert code == 0
        reply = json.loads(capsys.readouterr().out)
        assert reply["commandType"] == "AckResponse"
        assert reply["command"] == "VideoSeekRequest"
        assert projector_server.requests("VideoSeekRequest")[0]["positionMs"] == 1500

    @pytest.mark.asyncio
    async def test_typed_response(
        self,
        config: ConfigManager,
        remote_settings: RemoteSettings,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test a typed response is printed."""
        config.save_remote_settings(remote_settings)

        assert await cli.run_remote("127.0.0.1", "info", None, 2.0, config) == 0
        assert json.loads(capsys.readouterr().out)["durationMs"] == 60000

    @pytest.mark.asyncio
    async def test_no_response(
        self,
        config: ConfigManager,
        remote_settings: RemoteSettings,
        projector_server: ProjectorServer,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test a silent projector times out with exit code 1."""
        config.save_remote_settings(remote_settings)
        projector_server.silent = True

        assert await cli.run_remote("127.0.0.1", "play", None, 0.3, config) == 1
        assert "No response" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_unreachable(
        self, config: ConfigManager, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test an unreachable projector fails with exit code 1."""
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        settings = RemoteSettings(port=port, reconnect_delay=0.5, open_timeout=1.0)
        config.save_remote_settings(settings)

        assert await cli.run_remote("127.0.0.1", "play", None, 0.3, config) == 1
        assert "Could not connect" in capsys.readouterr().err


class TestRunScan:
    """Tests for the scan command."""

    @pytest.mark.asyncio
    async def test_prints_found_projectors(
        self,
        config: ConfigManager,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test seen projectors are listed."""
        _use_scanner(monkeypatch, AdvertisingScanner)

        assert await cli.run_scan(0.05, config) == 0
        out = capsys.readouterr().out
        assert ADDRESS in out
        assert "Projector-L" in out
        assert "-40 dBm" in out

    @pytest.mark.asyncio
    async def test_nothing_found(
        self,
        config: ConfigManager,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test an empty scan exits with 1."""
        _use_scanner(monkeypatch, FakeScanner)

        assert await cli.run_scan(0.05, config) == 1
        assert "No projectors found" in capsys.readouterr().out
