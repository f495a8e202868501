"""Test fixtures for projlink tests."""

import os
from collections.abc import AsyncGenerator

import pytest
from fakes import FakeClientFactory, FakeClock, FakeScannerFactory, ProjectorServer
from websockets.asyncio.server import serve

from projlink.models.settings import BleSettings, RemoteSettings

# Qt widgets and signals without a display
os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")


@pytest.fixture
async def projector_server() -> AsyncGenerator[ProjectorServer, None]:
    """Fixture providing a running projector server on an ephemeral port."""
    projector = ProjectorServer()
    async with serve(projector.handler, projector.host, 0) as server:
        projector.port = server.sockets[0].getsockname()[1]
        yield projector


@pytest.fixture
def remote_settings(projector_server: ProjectorServer) -> RemoteSettings:
    """Return fast socket settings pointing at the test server."""
    return RemoteSettings(
        port=projector_server.port,
        reconnect_delay=0.2,
        keepalive_interval=20.0,
        open_timeout=2.0,
    )


@pytest.fixture
def ble_settings() -> BleSettings:
    """Return short-range settings with near-zero delays."""
    return BleSettings(
        retry_delay=0.01,
        connect_settle_delay=0.0,
        disconnect_timeout=0.2,
        scan_settle_delay=0.0,
        prune_interval=0.05,
    )


@pytest.fixture
def clock() -> FakeClock:
    """Return a fake clock starting at t=0."""
    return FakeClock()


@pytest.fixture
def client_factory() -> FakeClientFactory:
    """Return a factory of healthy fake clients."""
    return FakeClientFactory()


@pytest.fixture
def scanner_factory() -> FakeScannerFactory:
    """Return a factory of fake scanners."""
    return FakeScannerFactory()
