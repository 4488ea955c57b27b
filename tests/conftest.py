"""Test doubles for the command executor and spawned processes."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass

import pytest

from mobile_dev_mcp.errors import MobileToolError
from mobile_dev_mcp.executor import CommandResult, ToolProbe


class FakeProcess:
    """Stands in for ``asyncio.subprocess.Process``.

    ``hang=True`` keeps the process "running" until it is killed or signalled.
    ``exited=True`` makes it look like it died right after starting.
    """

    def __init__(
        self,
        exit_code: int = 0,
        stderr: bytes = b"",
        hang: bool = False,
        exited: bool = False,
        on_finish: Callable[[], None] | None = None,
    ):
        self.exit_code = exit_code
        self.stderr_data = stderr
        self.hang = hang
        self.on_finish = on_finish
        self.returncode: int | None = exit_code if exited else None
        self.killed = False
        self.signals: list[int] = []
        self._stopped = asyncio.Event()

    async def _finish(self) -> None:
        if self.hang:
            await self._stopped.wait()
        elif self.returncode is None:
            if self.on_finish:
                self.on_finish()
            self.returncode = self.exit_code

    async def communicate(self):
        await self._finish()
        return b"", self.stderr_data

    async def wait(self) -> int:
        await self._finish()
        return self.returncode

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9
        self._stopped.set()

    def send_signal(self, sig: int) -> None:
        self.signals.append(sig)
        self.returncode = 0
        self._stopped.set()


@dataclass
class Response:
    tokens: tuple[str, ...]
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0
    effect: Callable[[list[str]], None] | None = None


class FakeExecutor:
    """Records argument vectors and answers with canned results.

    A response matches when all of its tokens appear in the argument vector;
    the most recently added match wins. Unmatched commands succeed silently.
    """

    def __init__(self):
        self.calls: list[list[str]] = []
        self.started: list[list[str]] = []
        self.start_options: list[dict[str, bool]] = []
        self.processes: list[FakeProcess] = []
        self._responses: list[Response] = []

    def add(self, *tokens: str, stdout: str = "", stderr: str = "", returncode: int = 0, effect=None):
        self._responses.insert(0, Response(tokens, stdout, stderr, returncode, effect))

    def commands_with(self, token: str) -> list[list[str]]:
        return [c for c in self.calls if token in c]

    async def run(self, *args, timeout=None, check=True) -> CommandResult:
        cmd = [str(a) for a in args]
        self.calls.append(cmd)

        response = next((r for r in self._responses if all(t in cmd for t in r.tokens)), None)
        if response is None:
            return CommandResult(cmd, 0, "", "")
        if response.effect:
            response.effect(cmd)

        result = CommandResult(cmd, response.returncode, response.stdout, response.stderr)
        if check and not result.ok:
            raise MobileToolError.external(f"`{' '.join(cmd)}` failed: {result.error_text}")
        return result

    async def start(self, *args, discard_stdout=False, discard_stderr=False) -> FakeProcess:
        cmd = [str(a) for a in args]
        self.calls.append(cmd)
        self.started.append(cmd)
        self.start_options.append({"discard_stdout": discard_stdout, "discard_stderr": discard_stderr})
        return self.processes.pop(0) if self.processes else FakeProcess()


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def probe(fake_executor) -> ToolProbe:
    return ToolProbe(fake_executor)
