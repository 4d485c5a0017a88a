"""
npm Command Runner

Runs npm inside a pseudo-terminal so its progress bars and colours render
exactly as they would in a shell, and turns the output into a stream of
events: any number of OutputChunk events followed by exactly one
CommandCompleted event.

Usage:
    runner = CommandRunner(settings)

    # event stream
    async for event in runner.stream(["npm", "install", "homebridge-foo"], cwd):
        ...

    # push chunks into a sink, raise CommandFailedError on failure
    await runner.run(["npm", "install", "homebridge-foo"], cwd, sink)
"""

import asyncio
import codecs
import getpass
import logging
import os
import signal
import struct
import sys
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import semver

from ..config import Settings
from .exceptions import CommandFailedError, CommandInProgressError

if sys.platform != "win32":
    import fcntl
    import pty
    import termios

logger = logging.getLogger(__name__)

READ_SIZE = 4096

# Seconds to keep reading after the process exited, for output still in the pty
DRAIN_TIMEOUT = 0.5

SUDO_DOCS_URL = "https://github.com/oznu/homebridge-config-ui-x#sudo-mode"
FAILURE_MESSAGE = "Command failed. Please review log for details."


def yellow(text: str) -> str:
    return f"\x1b[33m{text}\x1b[0m"


def cyan(text: str) -> str:
    return f"\x1b[36m{text}\x1b[0m"


def green(text: str) -> str:
    return f"\x1b[32m{text}\x1b[0m"


def red(text: str) -> str:
    return f"\x1b[31m{text}\x1b[0m"


@dataclass(frozen=True)
class OutputChunk:
    """Raw terminal output, forwarded verbatim."""

    data: str


@dataclass(frozen=True)
class CommandCompleted:
    """Final event of a command stream."""

    success: bool
    exit_code: Optional[int]
    message: Optional[str] = None


CommandEvent = Union[OutputChunk, CommandCompleted]
OutputSink = Callable[[str], Awaitable[None]]


async def query_node_version() -> Optional[str]:
    """Version of the Node.js runtime npm will run on, without the leading "v"."""
    try:
        process = await asyncio.create_subprocess_exec(
            "node",
            "--version",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=10)
    except (OSError, asyncio.TimeoutError) as e:
        logger.debug(f"Could not determine Node.js version: {e}")
        return None

    if process.returncode != 0:
        return None
    return stdout.decode("utf-8", errors="replace").strip().lstrip("v") or None


def current_username() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def version_below(version: str, minimum: str) -> bool:
    """True when ``version`` is a valid semver lower than ``minimum``."""
    try:
        return semver.Version.parse(version) < semver.Version.parse(minimum)
    except ValueError:
        return False


class InstallPathLocks:
    """
    One lock per install location.

    Guarantees at most one mutating npm command per node_modules tree.
    A second request fails immediately instead of queueing.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def _key(install_path: str) -> str:
        return str(Path(install_path).resolve())

    def is_locked(self, install_path: str) -> bool:
        lock = self._locks.get(self._key(install_path))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, install_path: str):
        key = self._key(install_path)
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            raise CommandInProgressError(key)
        async with lock:
            yield


class CommandRunner:
    """Executes package manager commands attached to a pseudo-terminal."""

    def __init__(
        self,
        settings: Settings,
        node_version_query: Callable[[], Awaitable[Optional[str]]] = query_node_version,
        username_query: Callable[[], str] = current_username,
    ):
        self.settings = settings
        self.timeout = settings.command_timeout
        self.node_version_query = node_version_query
        self.username_query = username_query

    def prepare(self, argv: Sequence[str]) -> List[str]:
        """Drop empty arguments and apply the sudo wrapper when configured."""
        command = [arg for arg in argv if arg]
        if self.settings.sudo:
            command = ["sudo", "-E", "-n", *command]
        return command

    async def preflight(self, command: Sequence[str], cwd: str) -> List[str]:
        """Diagnostic lines shown to the user before the command starts."""
        username = self.username_query()
        lines = []

        if not self.settings.sudo and not os.access(cwd, os.W_OK):
            lines += [
                yellow(f'The user "{username}" does not have write access to the target directory:\n\r\n\r'),
                f"{cwd}\n\r\n\r",
                yellow("This may cause the operation to fail.\n\r"),
                yellow("See the docs for details on how to enable sudo mode:\n\r"),
                yellow(f"{SUDO_DOCS_URL}\n\r\n\r"),
            ]

        logger.info(f"Running Command: {' '.join(command)}")

        minimum = self.settings.minimum_node_version
        node_version = await self.node_version_query()
        if node_version and version_below(node_version, minimum):
            lines += [
                yellow(f"Node.js v{minimum} higher is required for {self.settings.app_name}.\n\r"),
                yellow(f"You may experience issues while running on Node.js v{node_version}.\n\r\n\r"),
            ]

        lines += [
            cyan(f"USER: {username}\n\r"),
            cyan(f"DIR: {cwd}\n\r"),
            cyan(f"CMD: {' '.join(command)}\n\r\n\r"),
        ]
        return lines

    async def stream(self, argv: Sequence[str], cwd: str) -> AsyncIterator[CommandEvent]:
        """Run a command and yield its output followed by one completion event."""
        command = self.prepare(argv)

        for line in await self.preflight(command, cwd):
            yield OutputChunk(line)

        try:
            process, master_fd = await self._spawn(command, cwd)
        except OSError as e:
            logger.error(f"Failed to start {command[0]}: {e}")
            yield OutputChunk(red(f"Failed to start {command[0]}: {e}\n\r"))
            yield CommandCompleted(success=False, exit_code=None, message=FAILURE_MESSAGE)
            return

        loop = asyncio.get_running_loop()
        timer = loop.call_later(self.timeout, self._terminate, process)
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        try:
            reader = self._read_pty(master_fd) if master_fd is not None else self._read_pipe(process)
            async for data in self._until_exit(reader, process):
                text = decoder.decode(data)
                if text:
                    yield OutputChunk(text)
            exit_code = await process.wait()
        finally:
            timer.cancel()
            if master_fd is not None:
                os.close(master_fd)
            if process.returncode is None:
                with suppress(ProcessLookupError):
                    process.kill()

        tail = decoder.decode(b"", final=True)
        if tail:
            yield OutputChunk(tail)

        if exit_code == 0:
            yield OutputChunk(green("\n\rCommand succeeded!.\n\r"))
            yield CommandCompleted(success=True, exit_code=0)
        else:
            logger.warning(f"Command exited with code {exit_code}: {' '.join(command)}")
            yield CommandCompleted(success=False, exit_code=exit_code, message=FAILURE_MESSAGE)

    async def run(self, argv: Sequence[str], cwd: str, sink: OutputSink) -> bool:
        """
        Run a command, pushing every chunk into ``sink``.

        Raises:
            CommandFailedError: The command exited with a non-zero code or
                was terminated by the timeout.
        """
        completed: Optional[CommandCompleted] = None
        async for event in self.stream(argv, cwd):
            if isinstance(event, OutputChunk):
                await sink(event.data)
            else:
                completed = event

        if completed is None or not completed.success:
            raise CommandFailedError(" ".join(argv), completed.exit_code if completed else None)
        return True

    def _terminate(self, process: asyncio.subprocess.Process):
        if process.returncode is None:
            logger.warning(f"Command exceeded {self.timeout}s, sending SIGTERM to pid {process.pid}")
            with suppress(ProcessLookupError):
                process.send_signal(signal.SIGTERM)

    async def _spawn(
        self, command: List[str], cwd: str
    ) -> Tuple[asyncio.subprocess.Process, Optional[int]]:
        env = dict(os.environ)

        if sys.platform == "win32":
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            return process, None

        env["TERM"] = "xterm-color"
        master_fd, slave_fd = pty.openpty()
        try:
            winsize = struct.pack("HHHH", self.settings.term_rows, self.settings.term_cols, 0, 0)
            fcntl.ioctl(slave_fd, termios.TIOCSWINSZ, winsize)
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=env,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # the child holds its own copy; EOF arrives once it is gone
            os.close(slave_fd)
        return process, master_fd

    async def _read_pty(self, master_fd: int) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def on_readable():
            try:
                data = os.read(master_fd, READ_SIZE)
            except OSError:
                # EIO once every slave descriptor is closed
                data = b""
            if not data:
                loop.remove_reader(master_fd)
            queue.put_nowait(data)

        loop.add_reader(master_fd, on_readable)
        try:
            while True:
                data = await queue.get()
                if not data:
                    return
                yield data
        finally:
            loop.remove_reader(master_fd)

    async def _read_pipe(self, process: asyncio.subprocess.Process) -> AsyncIterator[bytes]:
        while True:
            data = await process.stdout.read(READ_SIZE)
            if not data:
                return
            yield data

    async def _until_exit(
        self, reader: AsyncIterator[bytes], process: asyncio.subprocess.Process
    ) -> AsyncIterator[bytes]:
        """
        Forward output until EOF, or until shortly after the process exits.

        A background grandchild can keep the terminal open after npm itself
        has exited; its output is not waited for.
        """
        wait_task = asyncio.ensure_future(process.wait())
        try:
            while True:
                read_task = asyncio.ensure_future(_next_or_none(reader))
                if wait_task.done():
                    done, _ = await asyncio.wait({read_task}, timeout=DRAIN_TIMEOUT)
                else:
                    done, _ = await asyncio.wait({read_task, wait_task}, return_when=asyncio.FIRST_COMPLETED)
                    if read_task not in done:
                        done, _ = await asyncio.wait({read_task}, timeout=DRAIN_TIMEOUT)

                if read_task not in done:
                    read_task.cancel()
                    await asyncio.wait({read_task})
                    return

                data = read_task.result()
                if data is None:
                    return
                yield data
        finally:
            if not wait_task.done():
                wait_task.cancel()
            await reader.aclose()


async def _next_or_none(reader: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await reader.__anext__()
    except StopAsyncIteration:
        return None
