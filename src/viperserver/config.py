"""Launch settings for ViperServer."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

# Prefix of the stdout line announcing the listening address
PRODUCT_NAME = "ViperServer"
ONLINE_MARKER = f"{PRODUCT_NAME} online at "

DEFAULT_JVM_FLAGS = ("-Xss128m", "-Xmx4g")


class ServerLogLevel(str, Enum):
    """Values accepted by ``--logLevel``."""

    ALL = "ALL"
    TRACE = "TRACE"
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    OFF = "OFF"


class ServerMode(str, Enum):
    """Values accepted by ``--serverMode``."""

    LSP = "LSP"
    HTTP = "HTTP"


@dataclass
class ServerSettings:
    """How to launch the engine.

    Every engine flag is optional; unset flags are left to the engine's own
    defaults. Flags are rendered in a fixed order by ``engine_args``.
    """

    java: str = "java"
    jvm_flags: List[str] = field(default_factory=lambda: list(DEFAULT_JVM_FLAGS))

    backend_specific_cache: bool = False
    cache_file: Optional[str] = None
    disable_version_check: bool = False
    log_file: Optional[str] = None
    log_level: Optional[ServerLogLevel] = None
    maximum_active_jobs: Optional[int] = None
    n_threads: Optional[int] = None
    port: Optional[int] = None
    server_mode: Optional[ServerMode] = ServerMode.HTTP
    single_client: bool = False

    def http(self) -> "ServerSettings":
        """Copy of these settings with ``--serverMode HTTP``."""
        return replace(self, server_mode=ServerMode.HTTP)

    def lsp(self) -> "ServerSettings":
        """Copy of these settings with ``--serverMode LSP``."""
        return replace(self, server_mode=ServerMode.LSP)

    def engine_args(self) -> List[str]:
        """Flat engine flag vector (everything after the jar path)."""
        args: List[str] = []
        if self.backend_specific_cache:
            args.append("--backendSpecificCache")
        if self.cache_file is not None:
            args += ["--cacheFile", self.cache_file]
        if self.disable_version_check:
            args.append("--disableVersionCheck")
        if self.log_file is not None:
            args += ["--logFile", self.log_file]
        if self.log_level is not None:
            args += ["--logLevel", ServerLogLevel(self.log_level).value]
        if self.maximum_active_jobs is not None:
            args += ["--maximumActiveJobs", str(self.maximum_active_jobs)]
        if self.n_threads is not None:
            args += ["--nThreads", str(self.n_threads)]
        if self.port is not None:
            args += ["--port", str(self.port)]
        if self.server_mode is not None:
            args += ["--serverMode", ServerMode(self.server_mode).value]
        if self.single_client:
            args.append("--singleClient")
        return args

    def command(self, jar: Union[str, Path]) -> List[str]:
        """Full argument vector: ``java <jvm flags> -jar <jar> <engine flags>``."""
        return [self.java, *self.jvm_flags, "-jar", str(jar), *self.engine_args()]
