"""Run external commands inside the service's Kerberos environment."""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import threading
import traceback
from dataclasses import dataclass
from typing import IO, Dict, List, Optional, Protocol, Sequence, Tuple

from ..core.config import settings
from ..core.environment import EnvironmentSnapshot

logger = logging.getLogger(__name__)

# How long to wait for the output readers once the process group is gone
READER_JOIN_TIMEOUT_SECONDS = 2.0


@dataclass(slots=True)
class SpawnResult:
    """Raw outcome of a spawned child process."""

    stdout: str
    stderr: str
    exited_in_time: bool


@dataclass(slots=True)
class CommandResult:
    """Captured output of a /run invocation."""

    stdout: str
    stderr: str
    exited_in_time: bool

    @property
    def text(self) -> str:
        """Combined output returned to the caller; the exit code is not surfaced."""

        return f"{self.stdout}\n{self.stderr}"


class ProcessSpawner(Protocol):
    """Capability used by :class:`CommandRunner` to start child processes."""

    def spawn(
        self,
        program: str,
        args: Sequence[str],
        env: Dict[str, str],
        stdin: Optional[str],
        timeout: float,
    ) -> SpawnResult:
        ...


def parse_command(command: str) -> Tuple[str, List[str]]:
    """Split a command line on whitespace into program and arguments.

    There are no quoting rules: an argument containing spaces cannot be
    expressed.
    """

    segments = (command or "").split()
    if not segments:
        raise ValueError("Command must not be empty")
    return segments[0], segments[1:]


def _drain(stream: IO[str], sink: List[str]) -> None:
    # Line by line, so output read before an abandoned join is still reported
    try:
        for line in stream:
            sink.append(line)
    finally:
        stream.close()


def _kill_process_group(process: subprocess.Popen) -> None:
    """Kill the child together with anything it forked into its session."""

    if os.name == "posix":
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
    else:
        process.kill()
    process.wait()


class SubprocessSpawner:
    """Spawn real child processes with :mod:`subprocess`."""

    def spawn(
        self,
        program: str,
        args: Sequence[str],
        env: Dict[str, str],
        stdin: Optional[str],
        timeout: float,
    ) -> SpawnResult:
        process = subprocess.Popen(
            [program, *args],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            env=env,
            text=True,
            encoding="utf-8",
            errors="replace",
            start_new_session=True,
        )
        try:
            # Input goes in first, then both pipes are drained while we wait so
            # a full output buffer can never block the child.
            self._write_input(process, stdin)

            stdout_sink: List[str] = []
            stderr_sink: List[str] = []
            readers = [
                threading.Thread(target=_drain, args=(process.stdout, stdout_sink), daemon=True),
                threading.Thread(target=_drain, args=(process.stderr, stderr_sink), daemon=True),
            ]
            for reader in readers:
                reader.start()

            try:
                process.wait(timeout=timeout)
                exited_in_time = True
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Process %s did not exit within %.1fs; killing pid %s",
                    program,
                    timeout,
                    process.pid,
                )
                _kill_process_group(process)
                exited_in_time = False

            self._join_readers(readers, program, process)
        except BaseException:
            if process.poll() is None:
                _kill_process_group(process)
            raise

        return SpawnResult(
            stdout="".join(list(stdout_sink)),
            stderr="".join(list(stderr_sink)),
            exited_in_time=exited_in_time,
        )

    @staticmethod
    def _join_readers(
        readers: List[threading.Thread], program: str, process: subprocess.Popen
    ) -> None:
        # Background descendants can keep the pipes open after the child is gone
        for reader in readers:
            reader.join(READER_JOIN_TIMEOUT_SECONDS)
        if not any(reader.is_alive() for reader in readers):
            return

        logger.warning(
            "Output of %s still held open by a descendant; killing process group %s",
            program,
            process.pid,
        )
        _kill_process_group(process)
        for reader in readers:
            reader.join(READER_JOIN_TIMEOUT_SECONDS)
            if reader.is_alive():
                logger.warning("Returning output of %s read so far", program)

    @staticmethod
    def _write_input(process: subprocess.Popen, stdin: Optional[str]) -> None:
        if process.stdin is None:
            return
        try:
            if stdin is not None:
                process.stdin.write(stdin + "\n")
                process.stdin.flush()
        except BrokenPipeError:
            # The child exited without reading its input
            logger.debug("Child process closed stdin before input was written")
        finally:
            try:
                process.stdin.close()
            except BrokenPipeError:
                pass


class CommandRunner:
    """Execute an operator-supplied command line and capture its output."""

    def __init__(
        self,
        spawner: Optional[ProcessSpawner] = None,
        timeout: Optional[float] = None,
    ):
        self._spawner: ProcessSpawner = spawner or SubprocessSpawner()
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        if self._timeout is not None:
            return self._timeout
        return settings.command_timeout_seconds

    async def execute(
        self,
        command: str,
        input: Optional[str] = None,
        env: Optional[EnvironmentSnapshot] = None,
    ) -> CommandResult:
        """Run ``command`` and return its captured output.

        The child inherits every variable of ``env``. ``input`` is expanded
        against ``env`` and written as a single line before output is read.
        """

        env = env if env is not None else EnvironmentSnapshot.capture()
        program, args = parse_command(command)
        stdin = env.expand(input) if input is not None else None

        logger.info("Running command %s with %d argument(s)", program, len(args))
        spawned = await asyncio.to_thread(
            self._spawner.spawn,
            program,
            args,
            env.as_dict(),
            stdin,
            self.timeout,
        )
        return CommandResult(
            stdout=spawned.stdout,
            stderr=spawned.stderr,
            exited_in_time=spawned.exited_in_time,
        )

    async def run(
        self,
        command: str,
        input: Optional[str] = None,
        env: Optional[EnvironmentSnapshot] = None,
    ) -> str:
        """Run ``command`` and return its output text, or the error text on failure."""

        try:
            result = await self.execute(command, input, env)
        except Exception:
            logger.exception("Command %r failed", command)
            return traceback.format_exc()
        return result.text


# Global service instance
command_runner = CommandRunner()

__all__ = [
    "CommandResult",
    "CommandRunner",
    "ProcessSpawner",
    "SpawnResult",
    "SubprocessSpawner",
    "command_runner",
    "parse_command",
]
