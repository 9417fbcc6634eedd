"""HTTP client for a running ViperServer.

A ``ViperClient`` can only be obtained through ``ViperClient.connect``, which
waits for the engine to announce its address first. The client keeps its
``ViperServer`` alive for as long as the client is in use.

Wire protocol:
    POST /verify        {"type": "verify", "arg": "<command>"}
                        -> {"ast_id": <int>, "id": <int>}
    GET  /verify/{id}   one JSON status message per line until EOF

Usage:
    server = await ViperServer.launch("viperserver.jar")
    async with await ViperClient.connect(server) as client:
        job = await client.submit(VerificationRequest.silicon("hello.vpr"))
        async for status in client.stream_status(job):
            print(status)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence, Union

import httpx
from pydantic import BaseModel, ConfigDict, StrictInt, ValidationError

from viperserver.errors import (
    ConnectFailed,
    LineDecodeError,
    NetworkError,
    ReadinessNotReported,
    ResponseParseError,
)
from viperserver.server import ViperServer
from viperserver.verification import Backend, StatusMessage, decode_line

logger = logging.getLogger(__name__)

VERIFY_PATH = "verify"

StatusItem = Union[StatusMessage, LineDecodeError]


def _decode_line_bytes(raw: bytes) -> str:
    if raw.endswith(b"\r"):
        raw = raw[:-1]
    return raw.decode("utf-8", errors="replace")


async def _iter_lines(response: httpx.Response) -> AsyncIterator[str]:
    """Yield the lines of a streaming body as their bytes arrive.

    Only ``\\n`` terminates a line. JSON strings may carry other Unicode line
    breaks (U+0085, U+2028, ...) unescaped, so those must not split a message.
    A final unterminated line is still yielded.
    """
    pending = b""
    async for chunk in response.aiter_bytes():
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            yield _decode_line_bytes(line)
    if pending:
        yield _decode_line_bytes(pending)


class VerificationJob(BaseModel):
    """A job accepted by the engine. ``id`` selects its status stream."""

    id: StrictInt
    ast_id: StrictInt

    model_config = ConfigDict(frozen=True)

    @property
    def status_path(self) -> str:
        return f"{VERIFY_PATH}/{self.id}"


@dataclass(frozen=True)
class VerificationRequest:
    """Verify one file with one backend.

    ``options`` are backend flags passed through verbatim, e.g.
    ``("--timeout", "10", "--z3Exe", "/usr/bin/z3")``.
    """

    backend: Backend
    file: Path
    options: Sequence[str] = ()

    @classmethod
    def silicon(cls, file: Union[str, Path], *options: str) -> "VerificationRequest":
        return cls(Backend.SILICON, Path(file), tuple(options))

    @classmethod
    def carbon(cls, file: Union[str, Path], *options: str) -> "VerificationRequest":
        return cls(Backend.CARBON, Path(file), tuple(options))

    def to_command(self) -> str:
        """Render the command string the engine expects in ``arg``.

        Format: ``<backend> <options...> "<file>"``
        """
        return " ".join(
            [Backend(self.backend).value, *self.options, json.dumps(str(self.file))]
        )


class ViperClient:
    """Submits verification jobs and streams their status.

    Build clients with ``connect``. The constructor only accepts a server
    whose address is already known and raises ``RuntimeError`` otherwise.
    """

    def __init__(
        self,
        server: ViperServer,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        base_url = server.address
        if base_url is None:
            raise RuntimeError(
                f"{server!r} has not announced an address; "
                "use ViperClient.connect()"
            )
        self.server = server
        self.base_url = base_url
        # Status streams last as long as the verification; no timeouts
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=None,
            transport=transport,
        )

    @classmethod
    async def connect(
        cls,
        server: ViperServer,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ViperClient":
        """Wait for the engine's address and build a client for it.

        Args:
            server: The engine to talk to; owned by the client from now on
            transport: Optional httpx transport (tests mount mocks here)

        Raises:
            ConnectFailed: If the engine never announced an address, or the
                announced address is not a usable URL. Carries the engine's
                captured stdout and stderr.
        """
        try:
            address = await server.online_at()
        except ReadinessNotReported as e:
            # Drain the queues; the readiness failure already holds every line
            queued_stdout = server.drain_stdout()
            queued_stderr = server.drain_stderr()
            raise ConnectFailed(
                e.stdout or queued_stdout,
                e.stderr or queued_stderr,
                e,
            ) from e

        try:
            client = cls(server, transport=transport)
        except httpx.InvalidURL as e:
            raise ConnectFailed(server.drain_stdout(), server.drain_stderr(), e) from e

        logger.info(f"Connected to engine at {address}")
        return client

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path}"

    async def submit(
        self,
        request: Union[VerificationRequest, str],
    ) -> VerificationJob:
        """Submit a verification request.

        Args:
            request: A request, or an already rendered command string

        Returns:
            The job the engine created

        Raises:
            NetworkError: On transport failure
            ResponseParseError: If the body is not a job description
        """
        command = request if isinstance(request, str) else request.to_command()
        logger.info(f"Submitting verification: {command}")

        try:
            response = await self._http.post(
                VERIFY_PATH,
                json={"type": "verify", "arg": command},
            )
        except httpx.RequestError as e:
            raise NetworkError(self._url(VERIFY_PATH), e) from e

        body = response.text
        if not response.is_success:
            logger.warning(f"Engine answered {response.status_code} to submission")

        try:
            job = VerificationJob.model_validate_json(body)
        except ValidationError as e:
            raise ResponseParseError(body, e, response.status_code) from e

        logger.info(f"Engine accepted job {job.id} (ast_id={job.ast_id})")
        return job

    async def stream_status(
        self,
        job: Union[VerificationJob, int],
    ) -> AsyncIterator[StatusItem]:
        """Stream status messages for a job as the engine writes them.

        Lines are read and decoded one at a time, only when the consumer asks
        for the next element. A line that fails to decode is yielded as a
        ``LineDecodeError`` and the stream continues. The iterator ends when
        the engine closes the connection; leaving it early closes the
        connection.

        Raises:
            NetworkError: On transport failure while connecting or reading
        """
        path = (
            job.status_path
            if isinstance(job, VerificationJob)
            else f"{VERIFY_PATH}/{int(job)}"
        )
        url = self._url(path)
        count = 0

        try:
            async with self._http.stream("GET", path) as response:
                if not response.is_success:
                    logger.warning(f"Engine answered {response.status_code} for {url}")

                async for line in _iter_lines(response):
                    if not line.strip():
                        continue
                    logger.debug(f"[status] {line}")

                    try:
                        status: StatusItem = decode_line(line)
                    except LineDecodeError as e:
                        logger.warning(f"Skipping undecodable status line: {e}")
                        status = e

                    count += 1
                    yield status
        except httpx.RequestError as e:
            raise NetworkError(url, e) from e

        logger.debug(f"Status stream {url} closed after {count} messages")

    async def verify(
        self,
        request: Union[VerificationRequest, str],
    ) -> AsyncIterator[StatusItem]:
        """Submit ``request`` and stream its status."""
        job = await self.submit(request)
        statuses = self.stream_status(job)
        try:
            async for status in statuses:
                yield status
        finally:
            await statuses.aclose()

    async def aclose(self) -> None:
        """Close the HTTP client and shut down the engine."""
        await self._http.aclose()
        await self.server.aclose()

    async def __aenter__(self) -> "ViperClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return f"ViperClient(base_url={self.base_url!r}, server={self.server!r})"
