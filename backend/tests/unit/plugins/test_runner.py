"""
Unit tests for the npm command runner.

Commands are small Python one-liners run through the current interpreter,
so the pseudo-terminal path is exercised without npm being installed.
"""

import asyncio
import signal
import sys
from pathlib import Path
from typing import List
from unittest.mock import patch

import pytest

from bridge_console.config import Settings
from bridge_console.plugins.exceptions import CommandFailedError, CommandInProgressError
from bridge_console.plugins.runner import (
    FAILURE_MESSAGE,
    CommandCompleted,
    CommandRunner,
    InstallPathLocks,
    OutputChunk,
    version_below,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="pseudo-terminal execution is POSIX only")

SUCCESS_TEXT = "Command succeeded!."


async def node_18() -> str:
    return "18.17.0"


def python_command(code: str) -> List[str]:
    return [sys.executable, "-c", code]


def make_runner(settings: Settings, node_version=node_18) -> CommandRunner:
    return CommandRunner(settings, node_version_query=node_version, username_query=lambda: "homebridge")


async def collect(runner: CommandRunner, argv: List[str], cwd: Path):
    events = []
    async for event in runner.stream(argv, str(cwd)):
        events.append(event)
    return events


def output_text(events) -> str:
    return "".join(e.data for e in events if isinstance(e, OutputChunk))


# ---------------------------------------------------------------------------
# Command preparation and preflight
# ---------------------------------------------------------------------------
@pytest.mark.unit
class TestPrepare:
    """Test argv preparation."""

    def test_drops_empty_arguments(self, settings: Settings) -> None:
        runner = make_runner(settings)
        assert runner.prepare(["npm", "", "install", "homebridge-hue"]) == ["npm", "install", "homebridge-hue"]

    def test_sudo_prefix(self) -> None:
        runner = make_runner(Settings(_env_file=None, sudo=True))
        assert runner.prepare(["npm", "install"]) == ["sudo", "-E", "-n", "npm", "install"]


@pytest.mark.unit
class TestPreflight:
    """Test diagnostic lines emitted before a command runs."""

    @pytest.mark.asyncio
    async def test_user_dir_cmd_lines(self, settings: Settings, tmp_path: Path) -> None:
        lines = await make_runner(settings).preflight(["npm", "install", "homebridge-hue"], str(tmp_path))
        text = "".join(lines)

        assert "USER: homebridge" in text
        assert f"DIR: {tmp_path}" in text
        assert "CMD: npm install homebridge-hue" in text
        assert "write access" not in text

    @pytest.mark.asyncio
    async def test_write_access_warning(self, settings: Settings, tmp_path: Path) -> None:
        with patch("bridge_console.plugins.runner.os.access", return_value=False):
            lines = await make_runner(settings).preflight(["npm", "install"], str(tmp_path))
        text = "".join(lines)

        assert 'The user "homebridge" does not have write access to the target directory' in text
        assert "This may cause the operation to fail." in text
        assert "#sudo-mode" in text
        # diagnostics still follow
        assert "CMD: npm install" in text

    @pytest.mark.asyncio
    async def test_no_write_check_with_sudo(self, tmp_path: Path) -> None:
        runner = make_runner(Settings(_env_file=None, sudo=True))
        with patch("bridge_console.plugins.runner.os.access", return_value=False) as access:
            await runner.preflight(["sudo", "npm"], str(tmp_path))
        access.assert_not_called()

    @pytest.mark.asyncio
    async def test_old_node_warning(self, settings: Settings, tmp_path: Path) -> None:
        async def node_8() -> str:
            return "8.11.1"

        lines = await make_runner(settings, node_version=node_8).preflight(["npm"], str(tmp_path))
        text = "".join(lines)

        assert f"Node.js v{settings.minimum_node_version} higher is required" in text
        assert "Node.js v8.11.1" in text

    @pytest.mark.asyncio
    async def test_unknown_node_version(self, settings: Settings, tmp_path: Path) -> None:
        async def no_node():
            return None

        lines = await make_runner(settings, node_version=no_node).preflight(["npm"], str(tmp_path))
        assert "higher is required" not in "".join(lines)

    def test_version_below(self) -> None:
        assert version_below("8.11.1", "10.17.0")
        assert not version_below("10.17.0", "10.17.0")
        assert not version_below("garbage", "10.17.0")


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------
@posix_only
@pytest.mark.unit
class TestStream:
    """Test pty execution and the completion event."""

    @pytest.mark.asyncio
    async def test_success(self, settings: Settings, tmp_path: Path) -> None:
        events = await collect(make_runner(settings), python_command("print('hello from npm')"), tmp_path)

        assert isinstance(events[-1], CommandCompleted)
        assert events[-1].success is True
        assert events[-1].exit_code == 0
        assert sum(isinstance(e, CommandCompleted) for e in events) == 1

        text = output_text(events)
        assert "hello from npm" in text
        assert text.index(SUCCESS_TEXT) > text.index("hello from npm")
        assert events[-2].data.endswith("Command succeeded!.\n\r\x1b[0m")

    @pytest.mark.asyncio
    async def test_failure(self, settings: Settings, tmp_path: Path) -> None:
        code = "import sys; print('npm ERR! code E404'); sys.exit(1)"
        events = await collect(make_runner(settings), python_command(code), tmp_path)

        completed = events[-1]
        assert isinstance(completed, CommandCompleted)
        assert completed.success is False
        assert completed.exit_code == 1
        assert completed.message == FAILURE_MESSAGE
        assert "npm ERR! code E404" in output_text(events)
        assert SUCCESS_TEXT not in output_text(events)

    @pytest.mark.asyncio
    async def test_runs_in_a_terminal(self, settings: Settings, tmp_path: Path) -> None:
        code = "import os, sys; print('tty' if sys.stdout.isatty() else 'pipe', os.get_terminal_size().columns)"
        events = await collect(make_runner(settings), python_command(code), tmp_path)
        assert "tty 80" in output_text(events)

    @pytest.mark.asyncio
    async def test_output_order_preserved(self, settings: Settings, tmp_path: Path) -> None:
        code = "import sys, time\nfor i in range(5):\n    print(f'line-{i}', flush=True)\n    time.sleep(0.01)"
        events = await collect(make_runner(settings), python_command(code), tmp_path)
        text = output_text(events)

        positions = [text.index(f"line-{i}") for i in range(5)]
        assert positions == sorted(positions)

    @pytest.mark.asyncio
    async def test_working_directory(self, settings: Settings, tmp_path: Path) -> None:
        events = await collect(make_runner(settings), python_command("import os; print(os.getcwd())"), tmp_path)
        assert str(tmp_path.resolve()) in output_text(events)

    @pytest.mark.asyncio
    async def test_timeout_terminates(self, tmp_path: Path) -> None:
        settings = Settings(_env_file=None, command_timeout=1)
        runner = make_runner(settings)

        events = await asyncio.wait_for(
            collect(runner, python_command("import time; time.sleep(60)"), tmp_path),
            timeout=20,
        )

        completed = events[-1]
        assert isinstance(completed, CommandCompleted)
        assert completed.success is False
        assert completed.exit_code == -signal.SIGTERM

    @pytest.mark.asyncio
    async def test_missing_executable(self, settings: Settings, tmp_path: Path) -> None:
        events = await collect(make_runner(settings), [str(tmp_path / "no-such-npm"), "install"], tmp_path)

        completed = events[-1]
        assert isinstance(completed, CommandCompleted)
        assert completed.success is False
        assert completed.exit_code is None
        assert "Failed to start" in output_text(events)


@posix_only
@pytest.mark.unit
class TestRun:
    """Test the sink-based wrapper."""

    @pytest.mark.asyncio
    async def test_success_pushes_chunks(self, settings: Settings, tmp_path: Path, sink) -> None:
        result = await make_runner(settings).run(python_command("print('added 1 package')"), str(tmp_path), sink)

        assert result is True
        assert "added 1 package" in sink.text
        assert sink.chunks[-1].endswith("Command succeeded!.\n\r\x1b[0m")

    @pytest.mark.asyncio
    async def test_failure_raises(self, settings: Settings, tmp_path: Path, sink) -> None:
        with pytest.raises(CommandFailedError) as exc_info:
            await make_runner(settings).run(python_command("import sys; sys.exit(1)"), str(tmp_path), sink)

        assert exc_info.value.exit_code == 1
        assert exc_info.value.message == FAILURE_MESSAGE
        assert SUCCESS_TEXT not in sink.text


# ---------------------------------------------------------------------------
# Install path locks
# ---------------------------------------------------------------------------
@pytest.mark.unit
class TestInstallPathLocks:
    """Test per-install-path mutual exclusion."""

    @pytest.mark.asyncio
    async def test_second_holder_rejected(self, tmp_path: Path) -> None:
        locks = InstallPathLocks()

        async with locks.hold(str(tmp_path)):
            assert locks.is_locked(str(tmp_path))
            with pytest.raises(CommandInProgressError):
                async with locks.hold(str(tmp_path / ".." / tmp_path.name)):
                    pass

        assert not locks.is_locked(str(tmp_path))

    @pytest.mark.asyncio
    async def test_independent_paths(self, tmp_path: Path) -> None:
        locks = InstallPathLocks()
        async with locks.hold(str(tmp_path / "a")):
            async with locks.hold(str(tmp_path / "b")):
                assert locks.is_locked(str(tmp_path / "a"))
                assert locks.is_locked(str(tmp_path / "b"))

    @pytest.mark.asyncio
    async def test_released_on_error(self, tmp_path: Path) -> None:
        locks = InstallPathLocks()
        with pytest.raises(CommandFailedError):
            async with locks.hold(str(tmp_path)):
                raise CommandFailedError("npm install")
        assert not locks.is_locked(str(tmp_path))
