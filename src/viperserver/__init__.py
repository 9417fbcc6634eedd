"""Supervisor and streaming client for a local ViperServer.

Spawns the ViperServer engine, drains its output, waits for it to announce
its address, submits verification jobs and streams their status messages.

Usage:
    server = await ViperServer.launch("viperserver.jar")
    async with await ViperClient.connect(server) as client:
        job = await client.submit(VerificationRequest.silicon("hello.vpr"))
        async for status in client.stream_status(job):
            print(status)
"""

__version__ = "0.1.0"

from viperserver.client import VerificationJob, VerificationRequest, ViperClient
from viperserver.config import ServerLogLevel, ServerMode, ServerSettings
from viperserver.errors import (
    ConnectFailed,
    LineDecodeError,
    NetworkError,
    ReadinessNotReported,
    ResponseParseError,
    SpawnError,
    ViperServerError,
)
from viperserver.server import ViperServer
from viperserver.verification import Backend, StatusMessage, decode_line

__all__ = [
    # Supervisor and client
    "ViperServer",
    "ViperClient",
    "VerificationJob",
    "VerificationRequest",
    # Configuration
    "ServerLogLevel",
    "ServerMode",
    "ServerSettings",
    # Status stream
    "Backend",
    "StatusMessage",
    "decode_line",
    # Errors
    "ConnectFailed",
    "LineDecodeError",
    "NetworkError",
    "ReadinessNotReported",
    "ResponseParseError",
    "SpawnError",
    "ViperServerError",
]
