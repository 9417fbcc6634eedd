"""Command line interface.

Commands:
- viperserver verify FILE --jar JAR [--backend silicon|carbon] [-O FLAGS]...
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import sys
from pathlib import Path
from typing import Optional, Sequence

import click
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from viperserver import __version__
from viperserver.client import StatusItem, VerificationRequest, ViperClient
from viperserver.config import ServerLogLevel, ServerSettings
from viperserver.errors import ConnectFailed, LineDecodeError, ViperServerError
from viperserver.server import ViperServer
from viperserver.verification import (
    Backend,
    BackendSubProcessReport,
    ExceptionReport,
    Statistics,
    VerificationResult,
)

console = Console()


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="warning",
    help="Log level for this tool (engine output is logged at debug)",
)
def cli(log_level: str):
    """Drive a local ViperServer from the command line."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def render_status(status: StatusItem) -> bool:
    """Print one status element. Returns False if it reports a failure."""
    if isinstance(status, LineDecodeError):
        console.print(
            f"[yellow]⚠ undecodable line:[/yellow] [dim]{escape(status.line)}[/dim]"
        )
        return True

    if isinstance(status, VerificationResult):
        entity = status.details.entity
        target = entity.name if entity else "program"
        if status.is_success:
            console.print(
                f"[green]✓ {target}[/green] [dim]({status.verifier.value}, "
                f"{status.details.time} ms)[/dim]"
            )
            return True

        console.print(f"[red]✗ {target}[/red] [dim]({status.verifier.value})[/dim]")
        errors = status.details.result.errors if status.details.result else []
        for error in errors:
            where = (
                f"{error.position.file}:{error.position.start}"
                if error.position
                else "<no position>"
            )
            console.print(f"  [red]{escape(where)}[/red] {escape(error.text)}")
        return False

    if isinstance(status, ExceptionReport):
        console.print(
            Panel(
                escape("\n".join([status.message, *status.stacktrace])),
                title="Engine exception",
                border_style="red",
            )
        )
        return False

    if isinstance(status, Statistics):
        console.print(
            f"[dim]statistics: {status.methods} methods, {status.functions} "
            f"functions, {status.predicates} predicates, {status.fields} fields, "
            f"{status.domains} domains[/dim]"
        )
        return True

    if isinstance(status, BackendSubProcessReport):
        console.print(
            f"[dim]{status.tool.value} {status.phase} "
            f"{status.process_exe} (pid={status.pid})[/dim]"
        )
        return True

    console.print(f"[dim]{status.msg_type}[/dim]")
    return True


async def run_verification(
    jar: Path,
    request: VerificationRequest,
    settings: ServerSettings,
    online_timeout: Optional[float] = None,
) -> bool:
    """Launch the engine, verify one file, and print every status.

    Returns:
        True if no status reported a failure
    """
    server = await ViperServer.launch(jar, settings)
    async with server:
        if online_timeout is not None:
            await asyncio.wait_for(server.online_at(), timeout=online_timeout)

        async with await ViperClient.connect(server) as client:
            console.print(f"[dim]Engine online at {client.base_url}[/dim]")
            passed = True
            async for status in client.verify(request):
                passed = render_status(status) and passed
            return passed


def _split_options(options: Sequence[str]) -> list[str]:
    return [token for option in options for token in shlex.split(option)]


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--jar",
    required=True,
    envvar="VIPERSERVER_JAR",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Path to viperserver.jar (or set VIPERSERVER_JAR)",
)
@click.option(
    "--backend",
    type=click.Choice([b.value for b in Backend]),
    default=Backend.SILICON.value,
    help="Verification backend",
)
@click.option(
    "--option",
    "-O",
    "options",
    multiple=True,
    help='Backend flags, shell-quoted, e.g. -O "--timeout 10" (repeatable)',
)
@click.option("--java", default="java", help="Java executable")
@click.option(
    "--server-log-level",
    type=click.Choice([level.value for level in ServerLogLevel]),
    default=None,
    help="Engine --logLevel",
)
@click.option("--server-log-file", default=None, help="Engine --logFile")
@click.option(
    "--online-timeout",
    type=float,
    default=None,
    help="Seconds to wait for the engine to come online (default: forever)",
)
def verify(
    file: Path,
    jar: Path,
    backend: str,
    options: tuple[str, ...],
    java: str,
    server_log_level: Optional[str],
    server_log_file: Optional[str],
    online_timeout: Optional[float],
):
    """Verify FILE with a freshly launched ViperServer.

    Exits with status 1 if verification fails or the engine cannot be used.
    """
    settings = ServerSettings(
        java=java,
        log_level=ServerLogLevel(server_log_level) if server_log_level else None,
        log_file=server_log_file,
    )
    request = VerificationRequest(
        Backend(backend), file.resolve(), tuple(_split_options(options))
    )

    try:
        passed = asyncio.run(run_verification(jar, request, settings, online_timeout))
    except asyncio.TimeoutError:
        console.print(
            f"[red]Error: engine did not come online within {online_timeout}s[/red]"
        )
        sys.exit(1)
    except ConnectFailed as e:
        console.print("[red]Error: engine exited before announcing its address[/red]")
        console.print(Panel(escape(e.stdout_text) or "<empty>", title="stdout"))
        console.print(Panel(escape(e.stderr_text) or "<empty>", title="stderr"))
        sys.exit(1)
    except ViperServerError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Verification interrupted[/yellow]")
        sys.exit(130)

    if passed:
        console.print("[green]✓ Verification succeeded[/green]")
    else:
        console.print("[red]✗ Verification failed[/red]")
        sys.exit(1)
