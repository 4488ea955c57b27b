"""iOS simulator UI automation via idb."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from . import config
from .errors import MobileToolError, require_value
from .executor import CommandExecutor, ToolProbe

logger = logging.getLogger(__name__)


class IdbClient:
    """Simulates touches, text and keys on a simulator and captures its screen."""

    def __init__(
        self,
        executor: CommandExecutor,
        probe: ToolProbe,
        log: logging.Logger | None = None,
        idb_binary: str = config.IDB_BINARY,
    ):
        self.executor = executor
        self.probe = probe
        self.logger = log or logger
        self.idb_binary = idb_binary

    async def _ui(self, udid: str, action: str, *args: str | int | float) -> None:
        require_value(udid, f"Device {udid} not found.")
        await self.probe.require(self.idb_binary, "Idb")
        await self.executor.run(self.idb_binary, "ui", action, "--udid", udid, *(str(a) for a in args))

    async def tap(self, udid: str, x: int, y: int) -> str:
        await self._ui(udid, "tap", x, y)
        return f"Successfully tapped at ({x}, {y})"

    async def swipe(
        self,
        udid: str,
        start_x: int,
        start_y: int,
        end_x: int,
        end_y: int,
        duration_s: float = 0.5,
    ) -> str:
        await self._ui(udid, "swipe", "--duration", duration_s, start_x, start_y, end_x, end_y)
        return f"Successfully swiped from ({start_x}, {start_y}) to ({end_x}, {end_y})"

    async def input_text(self, udid: str, text: str) -> str:
        if not text:
            raise MobileToolError.precondition("Invalid or missing text.")
        await self._ui(udid, "text", text)
        return "Successfully input text on device."

    async def press_key(self, udid: str, key_code: int) -> str:
        await self._ui(udid, "key", key_code)
        return "Key press operation completed successfully."

    async def screenshot(self, udid: str) -> bytes:
        """Capture the simulator screen as PNG bytes."""
        require_value(udid, f"Device {udid} not found.")
        await self.probe.require(self.idb_binary, "Idb")

        fd, local_name = tempfile.mkstemp(prefix="ios-screenshot-", suffix=".png")
        os.close(fd)
        local_path = Path(local_name)

        try:
            await self.executor.run(self.idb_binary, "screenshot", "--udid", udid, str(local_path))
            data = local_path.read_bytes()
        finally:
            local_path.unlink(missing_ok=True)

        if not data:
            raise MobileToolError.external(f"Screenshot from {udid} was empty.")
        return data
