"""Subprocess execution for the platform command-line tools."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from . import config
from .errors import MobileToolError

logger = logging.getLogger(__name__)

PROBE_TIMEOUT = 15.0


@dataclass
class CommandResult:
    """Captured output of a finished command."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def error_text(self) -> str:
        return self.stderr.strip() or self.stdout.strip() or "Unknown error"


def _decode(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace")


async def reap(proc: asyncio.subprocess.Process) -> None:
    """Kill ``proc`` if it is still running and wait for it to exit."""
    if proc.returncode is not None:
        return
    try:
        proc.kill()
    except ProcessLookupError:
        pass
    await proc.wait()


class CommandExecutor:
    """Runs external programs from an argument vector.

    No shell is involved: every argument reaches the program as-is.
    """

    def __init__(self, default_timeout: float = config.COMMAND_TIMEOUT):
        self.default_timeout = default_timeout

    async def _spawn(
        self,
        args: list[str],
        discard_stdout: bool = False,
        discard_stderr: bool = False,
    ) -> asyncio.subprocess.Process:
        logger.debug(f"Running: {' '.join(args)}")
        try:
            return await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.DEVNULL if discard_stdout else asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL if discard_stderr else asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise MobileToolError.external(f"Could not start `{args[0]}`: {e}") from e

    async def run(
        self,
        *args: str,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run a command to completion and capture its output."""
        cmd = [str(a) for a in args]
        limit = self.default_timeout if timeout is None else timeout
        proc = await self._spawn(cmd)

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=limit)
        except asyncio.TimeoutError as e:
            raise MobileToolError.timeout(
                f"Command timed out after {limit:g} seconds: {' '.join(cmd)}"
            ) from e
        finally:
            # also reached on cancellation
            await reap(proc)

        result = CommandResult(cmd, proc.returncode or 0, _decode(stdout), _decode(stderr))

        if check and not result.ok:
            raise MobileToolError.external(f"`{' '.join(cmd)}` failed: {result.error_text}")

        return result

    async def start(
        self,
        *args: str,
        discard_stdout: bool = False,
        discard_stderr: bool = False,
    ) -> asyncio.subprocess.Process:
        """Start a command and return its live process handle.

        Long-lived processes should discard any stream nobody reads, so a
        full pipe cannot stall them.
        """
        return await self._spawn(
            [str(a) for a in args], discard_stdout=discard_stdout, discard_stderr=discard_stderr
        )


class ToolProbe:
    """Checks whether a platform tool is installed by running ``<tool> version``."""

    def __init__(self, executor: CommandExecutor):
        self.executor = executor

    async def is_available(self, program: str) -> bool:
        try:
            result = await self.executor.run(program, "version", timeout=PROBE_TIMEOUT, check=False)
        except MobileToolError as e:
            logger.debug(f"Probe for {program} failed: {e.message}")
            return False
        return result.ok

    async def require(self, program: str, display_name: str) -> None:
        """Raise a precondition error unless ``program`` runs."""
        if not await self.is_available(program):
            raise MobileToolError.precondition(
                f"{display_name} is not installed or not in PATH. "
                f"Please install {display_name} and ensure it is in your PATH."
            )
