"""Task Runner — the only place external commands execute.

The engine awaits :meth:`TaskRunner.run` inside an asyncio task. Cancelling
that task is the cancel signal: runners must stop the underlying work
promptly and let :class:`asyncio.CancelledError` propagate, which the engine
records as Aborted.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import Mapping, Protocol

logger = logging.getLogger("conveyor.pipeline.runner")


@dataclass(frozen=True)
class TaskOutcome:
    """Exit status and captured output of a single command."""

    exit_code: int
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class TaskRunner(Protocol):
    """Executes one command with a given environment and working directory."""

    async def run(
        self,
        command: str,
        env: Mapping[str, str],
        workdir: str | None = None,
    ) -> TaskOutcome:
        """Run ``command`` and return its outcome. Must honor task cancellation."""
        ...


class ShellTaskRunner:
    """Runs commands through the system shell as asyncio subprocesses.

    Each command runs in its own process group so cancellation reaches
    every process the shell started, not just the shell itself.
    """

    def __init__(
        self,
        *,
        shell: str = "/bin/sh",
        inherit_environment: bool = True,
        kill_grace_seconds: float = 5.0,
        max_output_chars: int = 1_000_000,
    ):
        self._shell = shell
        self._inherit_environment = inherit_environment
        self._kill_grace = kill_grace_seconds
        self._max_output_chars = max_output_chars

    async def run(
        self,
        command: str,
        env: Mapping[str, str],
        workdir: str | None = None,
    ) -> TaskOutcome:
        process_env = dict(os.environ) if self._inherit_environment else {}
        process_env.update(env)

        proc = await asyncio.create_subprocess_exec(
            self._shell,
            "-c",
            command,
            cwd=workdir,
            env=process_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        logger.debug("Started pid %s: %s", proc.pid, command)
        try:
            stdout_bytes, _ = await proc.communicate()
        except asyncio.CancelledError:
            logger.info("Cancelling pid %s: %s", proc.pid, command)
            await self._terminate(proc)
            raise

        output = (stdout_bytes or b"").decode(errors="replace").rstrip()
        if len(output) > self._max_output_chars:
            output = output[-self._max_output_chars :]
        return TaskOutcome(exit_code=proc.returncode or 0, output=output)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, then SIGKILL it after the grace period."""
        if proc.returncode is not None:
            return
        _signal_group(proc.pid, signal.SIGTERM)
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            logger.warning("pid %s ignored SIGTERM; sending SIGKILL", proc.pid)
            _signal_group(proc.pid, signal.SIGKILL)
            await proc.wait()


def _signal_group(pid: int, sig: signal.Signals) -> None:
    try:
        os.killpg(os.getpgid(pid), sig)
    except ProcessLookupError:
        pass
