"""Supervision of a locally spawned ViperServer process.

``ViperServer.spawn`` starts the engine and two background tasks that drain
its stdout and stderr for the whole process lifetime. A full OS pipe buffer
would block the engine, so the drain tasks never stop reading while the pipes
are open. Every line ends up on an unbounded queue (``stdout`` / ``stderr``);
nothing applies backpressure, so long-running callers should drain them.

The stdout task also watches for the readiness marker::

    ViperServer online at http://localhost:41273

and hands the address to ``online_at()`` through a one-shot future.

Usage:
    async with await ViperServer.launch("viperserver.jar") as server:
        address = await server.online_at()
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Optional, Sequence, Union

from viperserver.config import ONLINE_MARKER, ServerSettings
from viperserver.errors import ReadinessNotReported, SpawnError

logger = logging.getLogger(__name__)

# How long an engine that closed stdout has to exit before readiness fails
# without waiting for stderr EOF
EXIT_GRACE_SECONDS = 1.0


# --- Readiness States ---
# The gate moves from _Waiting to exactly one of _Ready/_Failed by replacing
# the state object; states themselves are never mutated.


@dataclass(frozen=True)
class _Waiting:
    future: "asyncio.Future[str]"


@dataclass(frozen=True)
class _Ready:
    address: str


@dataclass(frozen=True)
class _Failed:
    error: ReadinessNotReported


OnlineAt = Union[_Waiting, _Ready, _Failed]


def find_online_address(line: str, marker: str = ONLINE_MARKER) -> Optional[str]:
    """Return the announced address if ``line`` carries the marker.

    Everything after the first occurrence of the marker is the address,
    stripped of surrounding whitespace.
    """
    _, found, rest = line.partition(marker)
    if not found:
        return None
    return rest.strip()


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").rstrip("\r\n")


async def _read_lines(reader: asyncio.StreamReader) -> AsyncIterator[str]:
    """Yield complete lines until EOF.

    Lines longer than the reader's buffer limit are accumulated rather than
    dropped. A final unterminated line is still yielded.
    """
    pending = b""
    while True:
        try:
            chunk = await reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            if pending or e.partial:
                yield _decode(pending + e.partial)
            return
        except asyncio.LimitOverrunError as e:
            pending += await reader.readexactly(e.consumed)
            continue
        yield _decode(pending + chunk)
        pending = b""


def _drain_queue(queue: "asyncio.Queue[str]") -> List[str]:
    lines: List[str] = []
    while True:
        try:
            lines.append(queue.get_nowait())
        except asyncio.QueueEmpty:
            return lines


def _retrieve_exception(future: "asyncio.Future[str]") -> None:
    # Marks a readiness failure as retrieved when nobody ever awaited it
    if not future.cancelled():
        future.exception()


def _fail_if_pending(future: "asyncio.Future[str]", task: asyncio.Task) -> None:
    # The stdout task ended without resolving the gate (cancelled or crashed)
    if not future.done():
        future.set_exception(ReadinessNotReported())


class ViperServer:
    """A running engine process and its output drains.

    Create instances with ``spawn`` or ``launch``; the constructor expects an
    already started process and must run inside an event loop.

    The engine is only stopped by ``aclose()``, ``kill()`` or leaving an
    ``async with`` block. The drain tasks keep the supervisor reachable while
    the pipes are open, so dropping the last reference does not stop the
    engine.

    Attributes:
        args: Full argument vector, executable first
        stdout: Unbounded queue of stdout lines, in order
        stderr: Unbounded queue of stderr lines, in order
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        args: Sequence[str],
        marker: str = ONLINE_MARKER,
    ):
        self._process = process
        self.args = list(args)
        self.stdout: asyncio.Queue[str] = asyncio.Queue()
        self.stderr: asyncio.Queue[str] = asyncio.Queue()

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_retrieve_exception)
        self._online_at: OnlineAt = _Waiting(future)
        self._stderr_transcript: List[str] = []

        self._stderr_task = asyncio.create_task(
            self._drain_stderr(process.stderr, future),
            name=f"viperserver-stderr-{process.pid}",
        )
        self._stdout_task = asyncio.create_task(
            self._drain_stdout(process.stdout, future, marker),
            name=f"viperserver-stdout-{process.pid}",
        )
        self._stdout_task.add_done_callback(
            functools.partial(_fail_if_pending, future)
        )

    @classmethod
    async def spawn(
        cls,
        executable: Union[str, Path],
        args: Sequence[str] = (),
        *,
        marker: str = ONLINE_MARKER,
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[dict[str, str]] = None,
    ) -> "ViperServer":
        """Spawn the engine and start draining its output.

        Args:
            executable: Program to run
            args: Arguments after the executable
            marker: Readiness marker to scan stdout for
            cwd: Working directory for the engine
            env: Environment for the engine (default: inherited)

        Returns:
            Supervisor for the live process

        Raises:
            SpawnError: If the OS could not create the process
        """
        path = str(executable)
        argv = [path, *(str(a) for a in args)]

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
            )
        except OSError as e:
            logger.error(f"Failed to spawn engine `{path}`: {e}")
            raise SpawnError(path, e) from e

        logger.info(f"Spawned engine (pid={process.pid}): {' '.join(argv)}")
        return cls(process, argv, marker=marker)

    @classmethod
    async def launch(
        cls,
        jar: Union[str, Path],
        settings: Optional[ServerSettings] = None,
    ) -> "ViperServer":
        """Spawn ``java ... -jar <jar> <engine flags>`` from settings."""
        settings = settings or ServerSettings()
        command = settings.command(jar)
        return await cls.spawn(command[0], command[1:])

    # --- Drain Tasks ---

    async def _drain_stdout(
        self,
        reader: asyncio.StreamReader,
        sender: Optional["asyncio.Future[str]"],
        marker: str,
    ) -> None:
        # Lines seen before readiness, kept for the failure report
        transcript: List[str] = []

        async for line in _read_lines(reader):
            logger.debug(f"[engine stdout] {line}")
            if sender is not None:
                address = find_online_address(line, marker)
                if address is not None:
                    logger.info(f"Engine online at {address}")
                    sender.set_result(address)
                    sender = None
                    transcript = []
                else:
                    transcript.append(line)
            self.stdout.put_nowait(line)

        logger.debug(f"Engine stdout closed (pid={self.pid})")
        if sender is None:
            return

        stderr_lines = await self._stderr_after_stdout_eof()
        error = ReadinessNotReported(transcript, stderr_lines)
        logger.warning(
            f"Engine closed stdout without announcing its address "
            f"(pid={self.pid}, {len(transcript)} stdout lines, "
            f"{len(stderr_lines)} stderr lines)"
        )
        sender.set_exception(error)

    async def _stderr_after_stdout_eof(self) -> List[str]:
        """Stderr lines to report once stdout closed without the marker.

        An exiting engine gets a short grace period to be reaped, after which
        stderr is read to EOF. An engine that closed stdout but is still running
        after the grace period fails with the stderr lines captured so far.
        """
        exited = asyncio.ensure_future(self._process.wait())
        try:
            await asyncio.wait(
                {self._stderr_task, exited},
                timeout=EXIT_GRACE_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not exited.done():
                exited.cancel()

        if self._stderr_task.done() or self._process.returncode is not None:
            return await self._stderr_task

        logger.debug(f"Engine closed stdout but is still running (pid={self.pid})")
        return list(self._stderr_transcript)

    async def _drain_stderr(
        self,
        reader: asyncio.StreamReader,
        readiness: "asyncio.Future[str]",
    ) -> List[str]:
        # Recorded only while readiness is pending
        transcript = self._stderr_transcript

        async for line in _read_lines(reader):
            logger.debug(f"[engine stderr] {line}")
            if not readiness.done():
                transcript.append(line)
            elif transcript:
                transcript.clear()
            self.stderr.put_nowait(line)

        logger.debug(f"Engine stderr closed (pid={self.pid})")
        return list(transcript)

    # --- Readiness ---

    async def online_at(self) -> str:
        """Wait for the address the engine announced on stdout.

        The first call suspends until the marker is seen or stdout closes;
        later calls return the memoized outcome immediately. Concurrent
        callers all observe the same address. There is no timeout; race this
        against ``asyncio.wait_for`` if one is needed.

        Raises:
            ReadinessNotReported: If the engine closed stdout without the
                marker
        """
        state = self._online_at
        if isinstance(state, _Ready):
            return state.address
        if isinstance(state, _Failed):
            raise state.error

        try:
            address = await asyncio.shield(state.future)
        except ReadinessNotReported as e:
            self._online_at = _Failed(e)
            raise
        self._online_at = _Ready(address)
        return address

    @property
    def address(self) -> Optional[str]:
        """The announced address once ``online_at()`` has returned it."""
        state = self._online_at
        return state.address if isinstance(state, _Ready) else None

    # --- Diagnostics ---

    def drain_stdout(self) -> List[str]:
        """Take every stdout line queued so far without waiting."""
        return _drain_queue(self.stdout)

    def drain_stderr(self) -> List[str]:
        """Take every stderr line queued so far without waiting."""
        return _drain_queue(self.stderr)

    # --- Process Lifetime ---

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    async def wait(self) -> int:
        """Wait for the engine to exit and return its exit code."""
        return await self._process.wait()

    def kill(self) -> None:
        """Kill the engine immediately. No shutdown handshake is attempted."""
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            # Exited between the returncode check and the signal
            return
        logger.info(f"Killed engine (pid={self.pid})")

    async def aclose(self) -> None:
        """Kill the engine, reap it, and wait for both drains to reach EOF."""
        self.kill()
        await self._process.wait()
        await asyncio.gather(self._stdout_task, self._stderr_task)

    async def __aenter__(self) -> "ViperServer":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        return (
            f"ViperServer(pid={self.pid}, returncode={self.returncode}, "
            f"state={type(self._online_at).__name__.lstrip('_')})"
        )
