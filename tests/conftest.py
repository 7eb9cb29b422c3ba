"""Shared fixtures: a scripted JRMP endpoint and a client talking to it."""

from collections.abc import Iterator

import pytest

from rmiguess.client import RmiClient
from tests.fixtures.jrmp_stub import ScriptedRemote
from tests.fixtures.jrmp_stub import StubJrmpServer


@pytest.fixture()
def scripted() -> ScriptedRemote:
    """Return an empty scripted remote, configured by each test before use.

    :returns: Scripted call handler.
    """
    return ScriptedRemote()


@pytest.fixture()
def stub_server(scripted: ScriptedRemote) -> Iterator[StubJrmpServer]:
    """Serve ``scripted`` on a local port.

    :param scripted: Scripted call handler.
    :yields: Running stub server.
    """
    server: StubJrmpServer = StubJrmpServer(scripted)
    scripted.port = server.port
    with server:
        yield server


@pytest.fixture()
def client() -> RmiClient:
    return RmiClient(timeout=5.0, max_connections=8)
