"""Shared fixtures: throwaway Python processes standing in for the engine."""

import sys
import textwrap

import pytest_asyncio

from viperserver.server import ViperServer


@pytest_asyncio.fixture
async def spawn_script():
    """Spawn ``python -u -c <script>`` under a ViperServer supervisor.

    Every supervisor created through the factory is closed at teardown.
    """
    servers = []

    async def _spawn(script: str, **kwargs) -> ViperServer:
        server = await ViperServer.spawn(
            sys.executable,
            ["-u", "-c", textwrap.dedent(script)],
            **kwargs,
        )
        servers.append(server)
        return server

    yield _spawn

    for server in servers:
        await server.aclose()
