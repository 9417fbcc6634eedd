"""Error taxonomy for the ViperServer supervisor and client.

Construction-time failures (spawn, readiness, connect) are fatal for the
whole session. ``NetworkError`` and ``ResponseParseError`` are fatal for the
call that raised them. ``LineDecodeError`` is reported per status line while
the stream keeps going.
"""

from __future__ import annotations

from typing import Optional, Sequence


def _format_lines(label: str, lines: Sequence[str]) -> str:
    if not lines:
        return f"{label}: <nothing captured>"
    return f"{label}:\n" + "\n".join(f"  {line}" for line in lines)


class ViperServerError(Exception):
    """Base class for all errors raised by this package."""

    pass


class SpawnError(ViperServerError):
    """The OS could not create the engine process."""

    def __init__(self, path: str, cause: BaseException):
        self.path = path
        self.cause = cause
        super().__init__(f"failed to spawn server using `{path}`: {cause}")


class ReadinessNotReported(ViperServerError):
    """The engine closed stdout without announcing its address.

    Carries every line captured on both pipes up to the failure.
    """

    def __init__(self, stdout: Sequence[str] = (), stderr: Sequence[str] = ()):
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        super().__init__(
            "server did not announce its address\n"
            + _format_lines("stdout", self.stdout)
            + "\n"
            + _format_lines("stderr", self.stderr)
        )


class ConnectFailed(ViperServerError):
    """Readiness failed while connecting a client to the engine."""

    def __init__(
        self,
        stdout: Sequence[str],
        stderr: Sequence[str],
        cause: BaseException,
    ):
        self.stdout = list(stdout)
        self.stderr = list(stderr)
        self.cause = cause
        super().__init__(
            "failed to connect to server\n"
            + _format_lines("stdout", self.stdout)
            + "\n"
            + _format_lines("stderr", self.stderr)
        )

    @property
    def stdout_text(self) -> str:
        return "\n".join(self.stdout)

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr)


class NetworkError(ViperServerError):
    """Transport-level failure talking to the engine."""

    def __init__(self, url: str, cause: BaseException):
        self.url = url
        self.cause = cause
        super().__init__(f"network error on {url}: {cause}")


class ResponseParseError(ViperServerError):
    """A response body arrived but was not the expected JSON."""

    def __init__(
        self,
        raw_body: str,
        cause: BaseException,
        status_code: Optional[int] = None,
    ):
        self.raw_body = raw_body
        self.cause = cause
        self.status_code = status_code
        status = f" (HTTP {status_code})" if status_code is not None else ""
        super().__init__(f"failed to parse response{status}: {raw_body!r}")


class LineDecodeError(ViperServerError):
    """One status line could not be decoded.

    Yielded as a value by ``ViperClient.stream_status`` rather than raised,
    so the stream continues with the next line.
    """

    def __init__(self, line: str, cause: BaseException):
        self.line = line
        self.cause = cause
        super().__init__(f"failed to decode status line {line!r}: {cause}")
