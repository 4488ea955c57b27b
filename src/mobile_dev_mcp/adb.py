"""Android device control via adb."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import tempfile
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from . import config
from .errors import MobileToolError, require_value
from .executor import CommandExecutor, ToolProbe, reap
from .formatting import code_block, format_size_mb, markdown_table

logger = logging.getLogger(__name__)

DEVICE_SCREENSHOT_DIR = "/sdcard"
MISSING_SERIAL = "Invalid or missing device serial number."


class LogLevel(str, Enum):
    """Android log priority."""

    VERBOSE = "verbose"
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    FATAL = "fatal"

    @property
    def letter(self) -> str:
        return self.value[0].upper()


@dataclass
class AdbDevice:
    """One line of ``adb devices -l``."""

    serial: str
    state: str = ""
    device: str = ""
    product: str = ""
    model: str = ""


def _property(parts: list[str], key: str) -> str:
    for part in parts:
        if part.lower().startswith(key):
            return part[len(key):]
    return ""


def parse_devices(output: str) -> list[AdbDevice]:
    """Parse ``adb devices -l`` output, skipping the header and daemon notices."""
    devices: list[AdbDevice] = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        devices.append(
            AdbDevice(
                serial=parts[0],
                state=parts[1] if len(parts) > 1 else "",
                device=_property(parts, "device:"),
                product=_property(parts, "product:"),
                model=_property(parts, "model:"),
            )
        )
    return devices


def parse_packages(output: str) -> list[str]:
    return [
        line.strip()[len("package:"):].strip()
        for line in output.splitlines()
        if line.strip().startswith("package:")
    ]


def filter_log_lines(text: str, level: LogLevel) -> str:
    """Keep the log lines tagged with ``level``, in their original order."""
    marker = f"/{level.letter} "
    return "\n".join(line for line in text.splitlines() if marker in line)


def escape_input_text(text: str) -> str:
    # `input text` treats %s as a space
    return text.replace(" ", "%s")


class AndroidBridge:
    """Runs adb operations against a device identified by its serial."""

    def __init__(
        self,
        executor: CommandExecutor,
        probe: ToolProbe,
        log: logging.Logger | None = None,
        adb_binary: str = config.ADB_BINARY,
        emulator_binary: str = config.EMULATOR_BINARY,
        boot_grace: float = config.EMULATOR_BOOT_GRACE,
    ):
        self.executor = executor
        self.probe = probe
        self.logger = log or logger
        self.adb_binary = adb_binary
        self.emulator_binary = emulator_binary
        self.boot_grace = boot_grace

    async def _require_adb(self) -> None:
        await self.probe.require(self.adb_binary, "ADB")

    async def _adb(self, serial: str, *args: str, timeout: float | None = None, check: bool = True):
        return await self.executor.run(
            self.adb_binary, "-s", serial, *args, timeout=timeout, check=check
        )

    async def _device_shell(self, serial: str, *args: str, check: bool = True):
        """Run a device-side command; adb joins the words into a shell line, so quote them."""
        return await self._adb(serial, "shell", *(shlex.quote(str(a)) for a in args), check=check)

    # === Devices ===

    async def list_devices(self) -> str:
        await self._require_adb()
        result = await self.executor.run(self.adb_binary, "devices", "-l")
        devices = parse_devices(result.stdout)

        if not devices:
            return "No devices found."

        rows = [
            (f"`{d.serial}`", f"`{d.device}`", f"`{d.product}`", f"`{d.model}`")
            for d in devices
        ]
        return markdown_table("Devices", ["Serial", "Device", "Product", "Model"], rows)

    async def boot_device(self, avd_name: str) -> str:
        """Start an emulator for an AVD and return once it survives the grace delay."""
        require_value(avd_name, "Device name is missing or invalid.")
        self.logger.info(f"Booting emulator {avd_name}")

        # the emulator logs for as long as it runs and nothing reads it
        proc = await self.executor.start(
            self.emulator_binary, "-avd", avd_name, discard_stdout=True, discard_stderr=True
        )
        await asyncio.sleep(self.boot_grace)

        if proc.returncode is not None:
            raise MobileToolError.external(
                f"Emulator {avd_name} exited immediately with code {proc.returncode}. "
                "Check the name against `emulator -list-avds`."
            )

        return f"Emulator {avd_name} is booting."

    async def shutdown_device(self, serial: str) -> str:
        require_value(serial, "Device name is missing or invalid.")
        await self._require_adb()
        await self._adb(serial, "emu", "kill")
        self.logger.info(f"Shut down emulator {serial}")
        return f"Device {serial} shut down."

    # === Apps ===

    async def install_app(self, serial: str, app_path: str) -> str:
        require_value(serial, MISSING_SERIAL)
        require_value(app_path, "Invalid or missing application path.")
        await self._require_adb()

        result = await self._adb(serial, "install", app_path, timeout=300.0)
        if "Failure" in result.stdout:
            raise MobileToolError.external(f"Error installing application: {result.stdout.strip()}")

        self.logger.info(f"Installed {app_path} on {serial}")
        return f"Application `{app_path}` installed on device {serial}."

    async def launch_app(self, serial: str, package_name: str) -> str:
        require_value(serial, MISSING_SERIAL)
        require_value(package_name, "Invalid or missing package name.")
        await self._require_adb()

        result = await self._device_shell(
            serial, "monkey", "-p", package_name, "-c", "android.intent.category.LAUNCHER", "1"
        )
        if "No activities found" in result.stdout:
            raise MobileToolError.external(f"No launchable activity found for {package_name}.")

        return f"Application `{package_name}` launched on device {serial}."

    async def list_packages(self, serial: str) -> str:
        require_value(serial, MISSING_SERIAL)
        await self._require_adb()

        result = await self._device_shell(serial, "pm", "list", "packages")
        packages = parse_packages(result.stdout)

        if not packages:
            return "No packages found on the device."

        return markdown_table("Installed Packages", ["Package Name"], [(f"`{p}`",) for p in packages])

    # === Logs & diagnostics ===

    async def logcat(
        self,
        serial: str,
        level: LogLevel | None = None,
        max_lines: int | None = None,
    ) -> str:
        """Dump the device log, optionally limited to the last lines and one level."""
        require_value(serial, MISSING_SERIAL)
        await self._require_adb()

        args = ["logcat", "-d"]
        if max_lines:
            args.extend(["-t", str(max_lines)])
        result = await self._adb(serial, *args)

        if level is None:
            return result.stdout
        return filter_log_lines(result.stdout, LogLevel(level))

    async def bug_report(
        self,
        serial: str,
        output_path: str = "",
        timeout_seconds: float = config.BUGREPORT_TIMEOUT,
    ) -> str:
        require_value(serial, MISSING_SERIAL)
        await self._require_adb()

        if not output_path or not output_path.strip():
            output_path = os.path.join(tempfile.gettempdir(), f"bugreport_{serial}.zip")
        path = Path(output_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)

        self.logger.info(f"Capturing bug report from {serial} to {path} (timeout {timeout_seconds}s)")
        proc = await self.executor.start(self.adb_binary, "-s", serial, "bugreport", str(path))

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_seconds)
        except asyncio.TimeoutError as e:
            raise MobileToolError.timeout(
                f"Bug report capture exceeded the time limit of {timeout_seconds} seconds."
            ) from e
        finally:
            await reap(proc)

        if proc.returncode != 0:
            message = (stderr or b"").decode("utf-8", errors="replace").strip()
            raise MobileToolError.external(f"Failed to capture bug report. ADB message: {message}")

        if not path.exists():
            raise MobileToolError.external(
                "Bug report could not be saved because the output file was not generated."
            )

        size = format_size_mb(path.stat().st_size)
        self.logger.info(f"Bug report saved to {path} ({size})")
        return f"Bug report completed successfully. Saved to: {path} ({size})"

    # === Files ===

    async def push_file(self, serial: str, local_path: str, device_path: str) -> str:
        require_value(serial, MISSING_SERIAL)
        require_value(device_path, "Invalid or missing device path.")
        if not local_path or not Path(local_path).is_file():
            raise MobileToolError.precondition(f"Local file {local_path} does not exist.")
        await self._require_adb()

        await self._adb(serial, "push", local_path, device_path, timeout=300.0)
        return (
            f"File Uploaded Successfully. The file `{local_path}` has been uploaded "
            f"to `{device_path}` on device {serial}."
        )

    async def pull_file(self, serial: str, device_path: str, local_path: str) -> str:
        require_value(serial, MISSING_SERIAL)
        require_value(device_path, "Invalid or missing device path.")
        require_value(local_path, "Invalid or missing local path.")
        parent = Path(local_path).expanduser().resolve().parent
        if not parent.is_dir():
            raise MobileToolError.precondition(f"Local directory {parent} does not exist.")
        await self._require_adb()

        await self._adb(serial, "pull", device_path, local_path, timeout=300.0)
        return (
            f"File downloaded Successfully. The file `{device_path}` has been downloaded "
            f"to `{local_path}` from device {serial}."
        )

    async def delete_file(self, serial: str, device_path: str) -> str:
        require_value(serial, MISSING_SERIAL)
        require_value(device_path, "Invalid or missing device path.")
        await self._require_adb()

        await self._device_shell(serial, "rm", "-f", device_path)
        return f"File `{device_path}` deleted from device {serial}."

    # === Shell ===

    async def shell(self, serial: str, command: str) -> str:
        require_value(serial, "Device not found.")
        require_value(command, "Invalid or missing command.")
        await self._require_adb()

        # The command is meant for the device shell, so it is passed through unquoted.
        result = await self._adb(serial, "shell", command, check=False)
        output = result.stdout
        if not result.ok and result.stderr.strip():
            output = f"{output}\n{result.stderr}".strip()
        return code_block(f"Command Output from {serial}", output)

    # === Screen ===

    async def screenshot(self, serial: str) -> bytes:
        """Capture the screen as PNG bytes via a device-side staging file."""
        require_value(serial, "Device not found.")
        await self._require_adb()

        device_path = f"{DEVICE_SCREENSHOT_DIR}/screenshot_{uuid.uuid4().hex}.png"
        fd, local_name = tempfile.mkstemp(prefix="android-screenshot-", suffix=".png")
        os.close(fd)
        local_path = Path(local_name)

        try:
            await self._device_shell(serial, "screencap", "-p", device_path)
            try:
                await self._adb(serial, "pull", device_path, str(local_path))
            finally:
                await self._device_shell(serial, "rm", "-f", device_path, check=False)
            data = local_path.read_bytes()
        finally:
            local_path.unlink(missing_ok=True)

        if not data:
            raise MobileToolError.external(f"Screenshot from {serial} was empty.")
        return data

    # === Input ===

    async def tap(self, serial: str, x: int, y: int) -> str:
        require_value(serial, f"Device {serial} not connected or not found.")
        await self._require_adb()
        await self._device_shell(serial, "input", "tap", x, y)
        return f"Successfully tapped at ({x}, {y})"

    async def swipe(
        self,
        serial: str,
        start_x: int,
        start_y: int,
        end_x: int,
        end_y: int,
        duration_ms: int = 500,
    ) -> str:
        require_value(serial, f"Device {serial} not connected or not found.")
        await self._require_adb()
        await self._device_shell(
            serial, "input", "swipe", start_x, start_y, end_x, end_y, duration_ms
        )
        return f"Successfully swiped from ({start_x}, {start_y}) to ({end_x}, {end_y})"

    async def input_text(self, serial: str, text: str) -> str:
        require_value(serial, f"Device {serial} not connected or not found.")
        if not text:
            raise MobileToolError.precondition("Invalid or missing text.")
        await self._require_adb()
        await self._device_shell(serial, "input", "text", escape_input_text(text))
        return "Successfully input text on device."

    async def press_key(self, serial: str, key_code: int | str) -> str:
        require_value(serial, f"Device {serial} not connected or not found.")
        require_value(str(key_code), "Invalid or missing key code.")
        await self._require_adb()
        await self._device_shell(serial, "input", "keyevent", key_code)
        return f"Key press {key_code} completed successfully."
