"""iOS Simulator management via xcrun simctl."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from . import config
from .errors import MobileToolError, require_value
from .executor import CommandExecutor, reap
from .formatting import markdown_table

logger = logging.getLogger(__name__)

RUNTIME_PREFIX = "com.apple.CoreSimulator.SimRuntime."
MISSING_DEVICE_ID = "Invalid or missing device ID."


class SimulatorState(str, Enum):
    """Simulator runtime state."""

    SHUTDOWN = "Shutdown"
    BOOTED = "Booted"
    BOOTING = "Booting"
    SHUTTING_DOWN = "Shutting Down"


@dataclass
class SimulatorDevice:
    """Represents an iOS Simulator device."""

    udid: str
    name: str
    state: str
    runtime: str

    @property
    def is_booted(self) -> bool:
        return self.state == SimulatorState.BOOTED.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "udid": self.udid,
            "name": self.name,
            "state": self.state,
            "runtime": self.runtime,
        }


@dataclass
class RecordingSession:
    """A running ``simctl io recordVideo`` process."""

    token: str
    udid: str
    output_path: Path
    process: asyncio.subprocess.Process
    started_at: datetime = field(default_factory=datetime.now)

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "udid": self.udid,
            "output_path": str(self.output_path),
            "started_at": self.started_at.isoformat(timespec="seconds"),
            "running": self.is_running,
        }


def parse_devices(payload: str) -> list[SimulatorDevice]:
    """Parse ``simctl list devices --json`` output.

    The ``devices`` mapping is keyed by runtime identifier; the common
    ``com.apple.CoreSimulator.SimRuntime.`` prefix is stripped.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        raise MobileToolError.parse(f"Error parsing simulator devices: {e}") from e

    runtimes = data.get("devices") if isinstance(data, dict) else None
    if not isinstance(runtimes, dict):
        raise MobileToolError.parse(
            "Error parsing simulator devices: no `devices` mapping in simctl output"
        )

    devices: list[SimulatorDevice] = []
    for runtime, device_list in runtimes.items():
        runtime_name = runtime.replace(RUNTIME_PREFIX, "")
        for device_data in device_list or []:
            try:
                devices.append(
                    SimulatorDevice(
                        udid=device_data["udid"],
                        name=device_data["name"],
                        state=device_data.get("state", SimulatorState.SHUTDOWN.value),
                        runtime=runtime_name,
                    )
                )
            except (KeyError, TypeError, AttributeError) as e:
                raise MobileToolError.parse(
                    f"Error parsing simulator devices: malformed record {device_data!r}"
                ) from e
    return devices


def _stderr_text(data: bytes | None) -> str:
    return (data or b"").decode("utf-8", errors="replace").strip()


class SimulatorManager:
    """Manages iOS Simulators via xcrun simctl."""

    def __init__(
        self,
        executor: CommandExecutor,
        log: logging.Logger | None = None,
        xcrun_binary: str = config.XCRUN_BINARY,
        recordings_dir: Path = config.RECORDINGS_DIR,
        recording_grace: float = config.RECORDING_GRACE,
        recording_stop_timeout: float = config.RECORDING_STOP_TIMEOUT,
    ):
        self.executor = executor
        self.logger = log or logger
        self.xcrun_binary = xcrun_binary
        self.recordings_dir = recordings_dir
        self.recording_grace = recording_grace
        self.recording_stop_timeout = recording_stop_timeout
        self._recordings: dict[str, RecordingSession] = {}

    async def _run_simctl(self, *args: str, timeout: float | None = None):
        return await self.executor.run(self.xcrun_binary, "simctl", *args, timeout=timeout)

    # === Devices ===

    async def get_devices(self) -> list[SimulatorDevice]:
        result = await self._run_simctl("list", "devices", "--json")
        return parse_devices(result.stdout)

    async def list_devices(self) -> str:
        """Render all simulators as a table."""
        devices = await self.get_devices()
        if not devices:
            return "No simulator devices available."

        rows = [(d.name, d.udid, d.runtime, d.state) for d in devices]
        return markdown_table("Simulator Devices", ["Name", "Udid", "Runtime", "State"], rows)

    async def booted_device(self) -> str:
        """Render the first booted simulator."""
        devices = await self.get_devices()
        if not devices:
            return "No simulator devices available."

        for device in devices:
            if device.is_booted:
                return markdown_table("Booted Device", ["Name", "Udid"], [(device.name, device.udid)])

        return "No booted devices found."

    async def boot(self, udid: str) -> str:
        require_value(udid, MISSING_DEVICE_ID)
        await self._run_simctl("boot", udid, timeout=120.0)
        self.logger.info(f"Booted simulator: {udid}")
        return f"Simulator {udid} booted successfully."

    async def shutdown(self, udid: str) -> str:
        require_value(udid, MISSING_DEVICE_ID)
        await self._run_simctl("shutdown", udid)
        self.logger.info(f"Shut down simulator: {udid}")
        return f"Simulator {udid} shut down successfully."

    # === Apps ===

    async def install_app(self, udid: str, app_path: str) -> str:
        require_value(udid, MISSING_DEVICE_ID)
        require_value(app_path, "Invalid or missing application path.")
        await self._run_simctl("install", udid, app_path, timeout=300.0)
        self.logger.info(f"Installed {app_path} on simulator {udid}")
        return f"Application `{app_path}` installed on simulator {udid}."

    async def launch_app(self, udid: str, bundle_id: str) -> str:
        require_value(udid, MISSING_DEVICE_ID)
        require_value(bundle_id, "Invalid or missing Bundle ID.")
        await self._run_simctl("launch", udid, bundle_id)
        return f"Application `{bundle_id}` launched on simulator {udid}."

    # === Screen Recording ===

    def _default_recording_path(self) -> Path:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        return self.recordings_dir / f"simulator_recording_{timestamp}.mp4"

    async def start_recording(
        self,
        udid: str,
        path: str | None = None,
        codec: str = "hevc",
        display: str | None = None,
        mask: str | None = None,
        force: bool = False,
    ) -> RecordingSession:
        """Start screen recording and register it under a new session token.

        Args:
            udid: Simulator UDID
            path: Output file; relative paths are placed in the recordings directory
            codec: Video codec ('h264' or 'hevc')
            display: 'internal' or 'external'
            mask: 'ignored', 'alpha' or 'black'
            force: Overwrite an existing output file
        """
        require_value(udid, MISSING_DEVICE_ID)

        output_path = self.recordings_dir / Path(path).expanduser() if path else self._default_recording_path()
        output_path.parent.mkdir(parents=True, exist_ok=True)

        args = ["simctl", "io", udid, "recordVideo"]
        if codec:
            args.append(f"--codec={codec}")
        if display:
            args.append(f"--display={display}")
        if mask:
            args.append(f"--mask={mask}")
        if force:
            args.append("--force")
        args.append(str(output_path))

        proc = await self.executor.start(self.xcrun_binary, *args, discard_stdout=True)

        # simctl fails fast on a bad device or an existing file
        await asyncio.sleep(self.recording_grace)
        if proc.returncode is not None:
            _, stderr = await proc.communicate()
            raise MobileToolError.external(
                f"Recording process terminated unexpectedly: {_stderr_text(stderr) or 'no output'}"
            )

        self._forget_finished()
        session = RecordingSession(
            token=uuid.uuid4().hex,
            udid=udid,
            output_path=output_path,
            process=proc,
        )
        self._recordings[session.token] = session
        self.logger.info(f"Recording {session.token} started for {udid}: {output_path}")
        return session

    async def stop_recording(self, token: str) -> RecordingSession:
        """Stop the recording identified by ``token`` and wait for the file to be finalized."""
        require_value(token, "Invalid or missing recording token.")
        session = self._recordings.pop(token, None)
        if session is None:
            raise MobileToolError.precondition(f"No active recording with token {token}.")

        proc = session.process
        if proc.returncode is None:
            proc.send_signal(signal.SIGINT)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.recording_stop_timeout)
            except asyncio.TimeoutError:
                self.logger.warning(f"Recording {token} did not stop in time, killing it")
            finally:
                await reap(proc)

        self.logger.info(f"Recording {token} stopped for {session.udid}")
        return session

    def _forget_finished(self) -> None:
        for token, session in list(self._recordings.items()):
            if not session.is_running:
                self.logger.warning(
                    f"Recording {token} ended on its own (code {session.process.returncode}): "
                    f"{session.output_path}"
                )
                del self._recordings[token]

    def active_recordings(self) -> list[RecordingSession]:
        self._forget_finished()
        return list(self._recordings.values())

    async def stop_all_recordings(self) -> None:
        for token in list(self._recordings):
            await self.stop_recording(token)
