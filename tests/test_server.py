"""Tests for the process supervisor and readiness gate.

Verifies:
- spawn returns a live handle or raises SpawnError
- stdout/stderr lines are drained into their queues in order
- online_at resolves to the trimmed address, once, for every waiter
- an engine exiting without the marker fails readiness with its output
- drains keep up with engines that write more than a pipe buffer
"""

import asyncio
import sys

import pytest

from viperserver.config import ServerSettings
from viperserver.errors import ReadinessNotReported, SpawnError
from viperserver.server import ViperServer, find_online_address

# Generous upper bound so a broken gate fails instead of hanging the suite
WAIT = 30.0

ANNOUNCE_AND_WAIT = """
    import sys, time
    print("Starting engine")
    print("booting backends", file=sys.stderr)
    print("ViperServer online at   http://127.0.0.1:9999   ")
    print("ready for requests")
    time.sleep(60)
"""


class TestFindOnlineAddress:
    """Tests for readiness marker scanning."""

    def test_extracts_and_trims_address(self):
        line = "ViperServer online at  http://localhost:1234 \t"
        assert find_online_address(line) == "http://localhost:1234"

    def test_marker_anywhere_in_line(self):
        line = "[INFO] 12:00:01 ViperServer online at http://localhost:1234"
        assert find_online_address(line) == "http://localhost:1234"

    def test_line_without_marker(self):
        assert find_online_address("ViperServer starting up") is None

    def test_custom_marker(self):
        line = "FooEngine online at http://127.0.0.1:9999"
        address = find_online_address(line, marker="FooEngine online at ")
        assert address == "http://127.0.0.1:9999"


class TestSpawn:
    """Tests for spawning the engine process."""

    @pytest.mark.asyncio
    async def test_missing_executable_raises_spawn_error(self, tmp_path):
        """A binary that does not exist is reported with its path."""
        missing = tmp_path / "no-such-java"

        with pytest.raises(SpawnError) as exc_info:
            await ViperServer.spawn(missing, ["-jar", "viperserver.jar"])

        assert exc_info.value.path == str(missing)
        assert isinstance(exc_info.value.cause, FileNotFoundError)
        assert str(missing) in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_non_executable_file_raises_spawn_error(self, tmp_path):
        """A file without execute permission cannot be spawned."""
        script = tmp_path / "engine.sh"
        script.write_text("#!/bin/sh\necho hi\n")
        script.chmod(0o644)

        with pytest.raises(SpawnError) as exc_info:
            await ViperServer.spawn(script)

        assert isinstance(exc_info.value.cause, PermissionError)

    @pytest.mark.asyncio
    async def test_launch_missing_java_raises_spawn_error(self, tmp_path):
        """launch() surfaces the java executable as the failing path."""
        settings = ServerSettings(java=str(tmp_path / "java"))

        with pytest.raises(SpawnError) as exc_info:
            await ViperServer.launch(tmp_path / "viperserver.jar", settings)

        assert exc_info.value.path == str(tmp_path / "java")

    @pytest.mark.asyncio
    async def test_spawn_returns_live_process(self, spawn_script):
        """A successful spawn has a pid and no exit code yet."""
        server = await spawn_script(ANNOUNCE_AND_WAIT)

        assert server.pid > 0
        assert server.returncode is None
        assert server.args[0] == sys.executable

    @pytest.mark.asyncio
    async def test_aclose_kills_process(self, spawn_script):
        """Closing the supervisor terminates the engine."""
        server = await spawn_script(ANNOUNCE_AND_WAIT)
        await asyncio.wait_for(server.online_at(), WAIT)

        await server.aclose()

        assert server.returncode is not None

    @pytest.mark.asyncio
    async def test_aclose_is_idempotent(self, spawn_script):
        server = await spawn_script(ANNOUNCE_AND_WAIT)

        await server.aclose()
        await server.aclose()

        assert server.returncode is not None

    @pytest.mark.asyncio
    async def test_context_manager_kills_process(self):
        async with await ViperServer.spawn(
            sys.executable, ["-c", "import time; time.sleep(60)"]
        ) as server:
            assert server.returncode is None

        assert server.returncode is not None


class TestOutputDrains:
    """Tests for the stdout/stderr drain tasks."""

    @pytest.mark.asyncio
    async def test_lines_forwarded_in_order(self, spawn_script):
        """Every stdout line, marker included, reaches the stdout queue."""
        server = await spawn_script(
            """
            import sys
            for i in range(5):
                print(f"out {i}")
                print(f"err {i}", file=sys.stderr)
            print("ViperServer online at http://127.0.0.1:1")
            print("after")
            """
        )
        await asyncio.wait_for(server.online_at(), WAIT)
        await asyncio.wait_for(server.wait(), WAIT)
        await asyncio.wait_for(server.aclose(), WAIT)

        assert server.drain_stdout() == [
            "out 0",
            "out 1",
            "out 2",
            "out 3",
            "out 4",
            "ViperServer online at http://127.0.0.1:1",
            "after",
        ]
        assert server.drain_stderr() == [f"err {i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_drain_empties_queue(self, spawn_script):
        server = await spawn_script("print('one'); print('two')")
        await asyncio.wait_for(server.wait(), WAIT)
        await asyncio.wait_for(server.aclose(), WAIT)

        assert server.drain_stdout() == ["one", "two"]
        assert server.drain_stdout() == []

    @pytest.mark.asyncio
    async def test_queue_consumed_while_running(self, spawn_script):
        """Callers can await lines as the engine produces them."""
        server = await spawn_script(ANNOUNCE_AND_WAIT)

        first = await asyncio.wait_for(server.stdout.get(), WAIT)
        first_err = await asyncio.wait_for(server.stderr.get(), WAIT)

        assert first == "Starting engine"
        assert first_err == "booting backends"

    @pytest.mark.asyncio
    async def test_large_output_does_not_block_engine(self, spawn_script):
        """Engines writing far more than a pipe buffer still come online."""
        server = await spawn_script(
            """
            import sys, time
            for i in range(20000):
                print(f"stdout line {i:06d} " + "x" * 40)
                print(f"stderr line {i:06d} " + "y" * 40, file=sys.stderr)
            print("ViperServer online at http://127.0.0.1:2")
            time.sleep(60)
            """
        )

        address = await asyncio.wait_for(server.online_at(), WAIT)

        assert address == "http://127.0.0.1:2"
        assert server.stdout.qsize() == 20001

    @pytest.mark.asyncio
    async def test_long_line_kept_whole(self, spawn_script):
        """Lines longer than the reader buffer are not truncated."""
        server = await spawn_script(
            """
            print("z" * 200000)
            print("ViperServer online at http://127.0.0.1:3")
            """
        )
        await asyncio.wait_for(server.online_at(), WAIT)

        assert server.stdout.get_nowait() == "z" * 200000

    @pytest.mark.asyncio
    async def test_unterminated_last_line(self, spawn_script):
        server = await spawn_script("import sys; sys.stdout.write('tail')")
        await asyncio.wait_for(server.wait(), WAIT)
        await asyncio.wait_for(server.aclose(), WAIT)

        assert server.drain_stdout() == ["tail"]


class TestReadinessGate:
    """Tests for online_at()."""

    @pytest.mark.asyncio
    async def test_resolves_trimmed_address(self, spawn_script):
        server = await spawn_script(ANNOUNCE_AND_WAIT)

        address = await asyncio.wait_for(server.online_at(), WAIT)

        assert address == "http://127.0.0.1:9999"

    @pytest.mark.asyncio
    async def test_custom_product_marker(self, spawn_script):
        server = await spawn_script(
            """
            import time
            print("FooEngine online at http://127.0.0.1:9999")
            time.sleep(60)
            """,
            marker="FooEngine online at ",
        )

        address = await asyncio.wait_for(server.online_at(), WAIT)

        assert address == "http://127.0.0.1:9999"

    @pytest.mark.asyncio
    async def test_memoized_after_first_call(self, spawn_script):
        """Later calls return the cached address, even after the engine dies."""
        server = await spawn_script(ANNOUNCE_AND_WAIT)
        first = await asyncio.wait_for(server.online_at(), WAIT)

        await server.aclose()
        second = await asyncio.wait_for(server.online_at(), 1.0)

        assert first == second == "http://127.0.0.1:9999"

    @pytest.mark.asyncio
    async def test_concurrent_waiters_see_same_address(self, spawn_script):
        server = await spawn_script(
            """
            import time
            time.sleep(0.3)
            print("ViperServer online at http://127.0.0.1:4")
            time.sleep(60)
            """
        )

        addresses = await asyncio.wait_for(
            asyncio.gather(*(server.online_at() for _ in range(5))), WAIT
        )

        assert addresses == ["http://127.0.0.1:4"] * 5

    @pytest.mark.asyncio
    async def test_fires_only_once(self, spawn_script):
        """A second announcement does not change the address."""
        server = await spawn_script(
            """
            import time
            print("ViperServer online at http://127.0.0.1:5")
            print("ViperServer online at http://127.0.0.1:6")
            time.sleep(60)
            """
        )

        assert await asyncio.wait_for(server.online_at(), WAIT) == (
            "http://127.0.0.1:5"
        )
        # Both lines still reach the diagnostic queue
        lines = [
            await asyncio.wait_for(server.stdout.get(), WAIT) for _ in range(2)
        ]
        assert lines[1] == "ViperServer online at http://127.0.0.1:6"
        assert await server.online_at() == "http://127.0.0.1:5"

    @pytest.mark.asyncio
    async def test_timed_out_waiter_does_not_break_gate(self, spawn_script):
        """A caller racing online_at against a timer leaves the gate usable."""
        server = await spawn_script(
            """
            import time
            time.sleep(1.0)
            print("ViperServer online at http://127.0.0.1:7")
            time.sleep(60)
            """
        )

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(server.online_at(), 0.05)

        address = await asyncio.wait_for(server.online_at(), WAIT)
        assert address == "http://127.0.0.1:7"

    @pytest.mark.asyncio
    async def test_exit_without_marker_fails(self, spawn_script):
        """The failure carries every line the engine wrote."""
        server = await spawn_script(
            """
            import sys
            print("Error: could not find or load main class")
            print("Exception in thread main", file=sys.stderr)
            print("  at Main.main", file=sys.stderr)
            sys.exit(1)
            """
        )

        with pytest.raises(ReadinessNotReported) as exc_info:
            await asyncio.wait_for(server.online_at(), WAIT)

        error = exc_info.value
        assert error.stdout == ["Error: could not find or load main class"]
        assert error.stderr == ["Exception in thread main", "  at Main.main"]
        assert "could not find or load main class" in str(error)
        assert "at Main.main" in str(error)

    @pytest.mark.asyncio
    async def test_stdout_closed_by_running_engine_fails(self, spawn_script):
        """Closing stdout fails readiness even while the engine stays alive."""
        server = await spawn_script(
            """
            import os, sys, time
            print("booting")
            print("stdout going away", file=sys.stderr)
            sys.stdout.flush()
            os.close(1)
            time.sleep(60)
            """
        )

        with pytest.raises(ReadinessNotReported) as exc_info:
            await asyncio.wait_for(server.online_at(), 10.0)

        assert server.returncode is None
        assert exc_info.value.stdout == ["booting"]
        assert exc_info.value.stderr == ["stdout going away"]

    @pytest.mark.asyncio
    async def test_address_known_only_after_online_at(self, spawn_script):
        server = await spawn_script(ANNOUNCE_AND_WAIT)
        assert server.address is None

        await asyncio.wait_for(server.online_at(), WAIT)

        assert server.address == "http://127.0.0.1:9999"

    @pytest.mark.asyncio
    async def test_failure_is_memoized(self, spawn_script):
        server = await spawn_script("print('bye')")

        with pytest.raises(ReadinessNotReported) as first:
            await asyncio.wait_for(server.online_at(), WAIT)
        with pytest.raises(ReadinessNotReported) as second:
            await asyncio.wait_for(server.online_at(), 1.0)

        assert first.value is second.value

    @pytest.mark.asyncio
    async def test_failure_keeps_lines_already_consumed(self, spawn_script):
        """Lines the caller drained earlier still appear in the failure."""
        server = await spawn_script(
            """
            import time
            print("early line")
            time.sleep(0.5)
            """
        )
        assert await asyncio.wait_for(server.stdout.get(), WAIT) == "early line"

        with pytest.raises(ReadinessNotReported) as exc_info:
            await asyncio.wait_for(server.online_at(), WAIT)

        assert exc_info.value.stdout == ["early line"]

    @pytest.mark.asyncio
    async def test_killed_before_announcing_fails(self, spawn_script):
        server = await spawn_script("import time; time.sleep(60)")

        server.kill()

        with pytest.raises(ReadinessNotReported):
            await asyncio.wait_for(server.online_at(), WAIT)
