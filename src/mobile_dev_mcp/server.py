"""MCP Server exposing Android (adb) and iOS simulator (simctl, idb) tools.

This server uses FastMCP for decorator-based tool definitions.
"""

import functools
import io
import logging
import sys
from contextlib import asynccontextmanager
from typing import Annotated, Any

from fastmcp import Context, FastMCP
from fastmcp.utilities.types import Image
from PIL import Image as PILImage
from PIL import UnidentifiedImageError
from pydantic import Field

from . import config
from .adb import AndroidBridge, LogLevel
from .comparison import DEFAULT_PROMPT, compare_screenshots
from .dashboard import dashboard_state, start_dashboard, stop_dashboard
from .errors import MobileToolError
from .executor import CommandExecutor, ToolProbe
from .formatting import markdown_table
from .idb import IdbClient
from .simulator import SimulatorManager


class FlushingStreamHandler(logging.StreamHandler):
    def emit(self, record):
        super().emit(record)
        self.flush()


# stdout carries the MCP stdio transport
handler = FlushingStreamHandler(sys.stderr)
handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    handlers=[handler],
)
logger = logging.getLogger("mobile-dev-mcp")

executor = CommandExecutor()
probe = ToolProbe(executor)
android = AndroidBridge(executor, probe)
simulator_manager = SimulatorManager(executor)
idb = IdbClient(executor, probe)

_dashboard_wrapped_tools: set[str] = set()

SerialArg = Annotated[str, Field(description="Android device serial number (see android_list_devices)")]
UdidArg = Annotated[str, Field(description="iOS simulator UDID (see ios_list_devices)")]
ScaleArg = Annotated[float, Field(ge=0.1, le=1.0, description="Scale factor 0.1-1.0")]


# === Helper Functions ===


def to_image(data: bytes, scale: float = 1.0) -> Image:
    """Wrap PNG bytes for the client, downscaling when ``scale`` < 1."""
    if scale >= 1.0:
        return Image(data=data, format="png")

    try:
        with PILImage.open(io.BytesIO(data)) as img:
            new_size = (max(1, int(img.width * scale)), max(1, int(img.height * scale)))
            resized = img.resize(new_size, PILImage.Resampling.LANCZOS)
            buffer = io.BytesIO()
            resized.save(buffer, "PNG", optimize=True)
    except UnidentifiedImageError as e:
        raise MobileToolError.parse("Screenshot data is not a valid image.") from e

    logger.debug(f"Screenshot scaled to {new_size[0]}x{new_size[1]}")
    return Image(data=buffer.getvalue(), format="png")


def _wrap_tool_with_tracking(tool_name: str, original_fn):
    """Wrap a tool function to record calls in the dashboard."""

    @functools.wraps(original_fn)
    async def tracked_fn(*args, **kwargs):
        activity = dashboard_state.begin(tool_name, kwargs)
        try:
            result = await original_fn(*args, **kwargs)
        except Exception as e:
            dashboard_state.finish(activity, error=e)
            raise
        dashboard_state.finish(activity, result=result)
        return result

    return tracked_fn


# === Lifespan ===


@asynccontextmanager
async def lifespan(mcp: FastMCP):
    logger.info("=" * 60)
    logger.info("Mobile Dev MCP Server starting...")
    logger.info(f"adb: {config.ADB_BINARY}")
    logger.info(f"idb: {config.IDB_BINARY}")
    logger.info(f"xcrun: {config.XCRUN_BINARY}")
    logger.info(f"Command timeout: {config.COMMAND_TIMEOUT}s")
    logger.info(f"Recordings dir: {config.RECORDINGS_DIR}")
    logger.info(f"Log level: {config.LOG_LEVEL}")
    logger.info("=" * 60)

    tools = await mcp.get_tools()
    wrapped_count = 0
    for tool_name, tool in tools.items():
        if tool_name in _dashboard_wrapped_tools:
            continue
        tool.fn = _wrap_tool_with_tracking(tool_name, tool.fn)
        _dashboard_wrapped_tools.add(tool_name)
        wrapped_count += 1
    logger.info(f"Wrapped {wrapped_count} tools with activity tracking")

    dashboard_state.recordings_provider = lambda: [
        s.to_dict() for s in simulator_manager.active_recordings()
    ]
    dashboard_runner = await start_dashboard() if config.DASHBOARD_ENABLED else None
    logger.info("Server ready, waiting for MCP client connection...")

    try:
        yield
    finally:
        await simulator_manager.stop_all_recordings()
        await stop_dashboard(dashboard_runner)


# === Create FastMCP Server ===

mcp = FastMCP(
    "mobile-dev-mcp",
    lifespan=lifespan,
)


# === Android: Devices ===


@mcp.tool
async def android_list_devices() -> str:
    """Lists all available Android devices."""
    return await android.list_devices()


@mcp.tool
async def android_boot_device(
    avd_name: Annotated[str, Field(description="Name of the Android Virtual Device to start")],
) -> str:
    """Boots the specified Android emulator (AVD)."""
    return await android.boot_device(avd_name)


@mcp.tool
async def android_shutdown_device(
    device_serial: Annotated[str, Field(description="Emulator serial, e.g. emulator-5554")],
) -> str:
    """Shuts down the specified Android emulator."""
    return await android.shutdown_device(device_serial)


# === Android: Apps ===


@mcp.tool
async def android_install_app(
    device_serial: SerialArg,
    app_path: Annotated[str, Field(description="Local path to the APK file")],
) -> str:
    """Installs an application on the specified Android device."""
    return await android.install_app(device_serial, app_path)


@mcp.tool
async def android_launch_app(
    device_serial: SerialArg,
    package_name: Annotated[str, Field(description="Package name, e.g. com.android.settings")],
) -> str:
    """Launches an application on the specified Android device."""
    return await android.launch_app(device_serial, package_name)


@mcp.tool
async def android_list_packages(device_serial: SerialArg) -> str:
    """Retrieves the list of installed package names from the specified Android device."""
    return await android.list_packages(device_serial)


# === Android: Logs & Diagnostics ===


@mcp.tool
async def android_device_logcat(
    device_serial: SerialArg,
    log_level: Annotated[
        LogLevel | None,
        Field(description="Only keep lines of this priority"),
    ] = None,
    max_lines: Annotated[
        int | None,
        Field(ge=1, description="Only read the most recent N lines"),
    ] = None,
) -> str:
    """Retrieves the system logs from the connected Android device using logcat."""
    return await android.logcat(device_serial, level=log_level, max_lines=max_lines)


@mcp.tool
async def android_diagnostics_bug_report(
    device_serial: SerialArg,
    output_path: Annotated[
        str,
        Field(description="Local .zip path (default: temp dir bugreport_<serial>.zip)"),
    ] = "",
    timeout_seconds: Annotated[
        int,
        Field(ge=1, description="Give up and kill adb after this many seconds"),
    ] = config.BUGREPORT_TIMEOUT,
) -> str:
    """Captures a comprehensive bug report from a connected Android device."""
    return await android.bug_report(device_serial, output_path, timeout_seconds)


# === Android: Files & Shell ===


@mcp.tool
async def android_files_push(
    device_serial: SerialArg,
    local_path: Annotated[str, Field(description="Existing local file")],
    device_path: Annotated[str, Field(description="Destination path on the device")],
) -> str:
    """Pushes a local file to an Android device."""
    return await android.push_file(device_serial, local_path, device_path)


@mcp.tool
async def android_files_pull(
    device_serial: SerialArg,
    device_path: Annotated[str, Field(description="Path of the file on the device")],
    local_path: Annotated[str, Field(description="Local destination path")],
) -> str:
    """Pulls a file from an Android device to the local machine."""
    return await android.pull_file(device_serial, device_path, local_path)


@mcp.tool
async def android_files_delete(
    device_serial: SerialArg,
    device_path: Annotated[str, Field(description="Path of the file on the device")],
) -> str:
    """Deletes a file from an Android device."""
    return await android.delete_file(device_serial, device_path)


@mcp.tool
async def android_shell_command(
    device_serial: SerialArg,
    command: Annotated[str, Field(description="Command line for the device shell")],
) -> str:
    """Runs a shell command on the specified device."""
    return await android.shell(device_serial, command)


# === Android: Screen & Input ===


@mcp.tool
async def android_screenshot(device_serial: SerialArg, scale: ScaleArg = 1.0) -> Image:
    """Captures a screenshot from the specified Android device."""
    return to_image(await android.screenshot(device_serial), scale)


@mcp.tool
async def android_ui_tap(
    device_serial: SerialArg,
    x: Annotated[int, Field(description="X coordinate")],
    y: Annotated[int, Field(description="Y coordinate")],
) -> str:
    """Simulates a tap gesture on the device screen at the specified coordinates (X, Y)."""
    return await android.tap(device_serial, x, y)


@mcp.tool
async def android_ui_swipe(
    device_serial: SerialArg,
    start_x: Annotated[int, Field(description="Starting X coordinate")],
    start_y: Annotated[int, Field(description="Starting Y coordinate")],
    end_x: Annotated[int, Field(description="Ending X coordinate")],
    end_y: Annotated[int, Field(description="Ending Y coordinate")],
    duration_ms: Annotated[int, Field(ge=0, description="Duration in milliseconds")] = 500,
) -> str:
    """Performs a swipe gesture on the screen of a connected Android device."""
    return await android.swipe(device_serial, start_x, start_y, end_x, end_y, duration_ms)


@mcp.tool
async def android_ui_input_text(
    device_serial: SerialArg,
    text: Annotated[str, Field(description="Text to type")],
) -> str:
    """Inputs text into a connected Android device as if typed from a keyboard."""
    return await android.input_text(device_serial, text)


@mcp.tool
async def android_ui_press_key(
    device_serial: SerialArg,
    key_code: Annotated[str, Field(description="Key code, e.g. 4, 66 or KEYCODE_HOME")],
) -> str:
    """Simulates pressing a key on an Android device."""
    return await android.press_key(device_serial, key_code)


@mcp.tool
async def android_compare_screenshot_llm(
    ctx: Context,
    screenshot1: Annotated[str, Field(description="First PNG screenshot, base64 encoded")],
    screenshot2: Annotated[str, Field(description="Second PNG screenshot, base64 encoded")],
    prompt: Annotated[str, Field(description="Extra instructions for the comparison")] = DEFAULT_PROMPT,
    max_tokens: Annotated[int, Field(ge=1, description="Maximum reply tokens")] = 100,
) -> bool:
    """Compares two screenshots using the provided prompt and the client's language model."""
    return await compare_screenshots(ctx, screenshot1, screenshot2, prompt, max_tokens)


# === iOS: Devices ===


@mcp.tool
async def ios_list_devices() -> str:
    """Lists all available iOS simulator devices."""
    return await simulator_manager.list_devices()


@mcp.tool
async def ios_booted_device() -> str:
    """Retrieves the name and ID of the first booted simulator device."""
    return await simulator_manager.booted_device()


@mcp.tool
async def ios_boot_device(device_id: UdidArg) -> str:
    """Boots the specified iOS simulator device."""
    return await simulator_manager.boot(device_id)


@mcp.tool
async def ios_shutdown_device(device_id: UdidArg) -> str:
    """Shuts down the specified iOS simulator device."""
    return await simulator_manager.shutdown(device_id)


# === iOS: Apps ===


@mcp.tool
async def ios_install_app(
    device_id: UdidArg,
    app_path: Annotated[str, Field(description="Local path to the .app bundle")],
) -> str:
    """Installs an application on the specified iOS simulator device."""
    return await simulator_manager.install_app(device_id, app_path)


@mcp.tool
async def ios_launch_app(
    device_id: UdidArg,
    bundle_id: Annotated[str, Field(description="App bundle ID (e.g., com.apple.Preferences)")],
) -> str:
    """Launches an application on the specified iOS simulator device."""
    return await simulator_manager.launch_app(device_id, bundle_id)


# === iOS: Screen & Input ===


@mcp.tool
async def ios_screenshot(device_id: UdidArg, scale: ScaleArg = 1.0) -> Image:
    """Captures a screenshot from the specified iOS simulator."""
    return to_image(await idb.screenshot(device_id), scale)


@mcp.tool
async def ios_ui_tap(
    device_id: UdidArg,
    x: Annotated[int, Field(description="X coordinate")],
    y: Annotated[int, Field(description="Y coordinate")],
) -> str:
    """Simulates a tap gesture on the device screen at the specified coordinates (X, Y)."""
    return await idb.tap(device_id, x, y)


@mcp.tool
async def ios_ui_swipe(
    device_id: UdidArg,
    start_x: Annotated[int, Field(description="Starting X coordinate")],
    start_y: Annotated[int, Field(description="Starting Y coordinate")],
    end_x: Annotated[int, Field(description="Ending X coordinate")],
    end_y: Annotated[int, Field(description="Ending Y coordinate")],
    duration_s: Annotated[float, Field(ge=0, description="Duration in seconds")] = 0.5,
) -> str:
    """Performs a swipe gesture on the screen of an iOS simulator."""
    return await idb.swipe(device_id, start_x, start_y, end_x, end_y, duration_s)


@mcp.tool
async def ios_ui_input_text(
    device_id: UdidArg,
    text: Annotated[str, Field(description="Text to type")],
) -> str:
    """Inputs text into an iOS simulator as if typed from a keyboard."""
    return await idb.input_text(device_id, text)


@mcp.tool
async def ios_ui_press_key(
    device_id: UdidArg,
    key_code: Annotated[int, Field(description="HID key code")],
) -> str:
    """Simulates pressing a specific key on an iOS simulator using its key code."""
    return await idb.press_key(device_id, key_code)


# === iOS: Screen Recording ===


@mcp.tool
async def ios_video_start(
    device_id: UdidArg,
    path: Annotated[
        str | None,
        Field(description="Output file (relative paths go to the recordings directory)"),
    ] = None,
    codec: Annotated[str, Field(description="Video codec: hevc or h264")] = "hevc",
    display: Annotated[str | None, Field(description="Display: internal or external")] = None,
    mask: Annotated[str | None, Field(description="Mask policy: ignored, alpha or black")] = None,
    force: Annotated[bool, Field(description="Overwrite an existing file")] = False,
) -> str:
    """Records a video of the iOS Simulator. Use ios_video_stop with the returned token."""
    session = await simulator_manager.start_recording(
        device_id, path=path, codec=codec, display=display, mask=mask, force=force
    )
    return (
        f"Recording started. The video will be saved to: {session.output_path}\n"
        f"Recording token: {session.token}\n"
        "To stop recording, call ios_video_stop with this token."
    )


@mcp.tool
async def ios_video_stop(
    token: Annotated[str, Field(description="Token returned by ios_video_start")],
) -> str:
    """Stops a simulator video recording."""
    session = await simulator_manager.stop_recording(token)
    path = session.output_path
    if path.exists():
        size_kb = path.stat().st_size / 1024
        return f"Recording stopped successfully. Saved to: {path}\nSize: {size_kb:.1f}KB"
    return f"Recording stopped, but {path} was not found. The file may still be processing."


# === Prompts ===


@mcp.prompt
def debug_app_logs(package_name: str) -> str:
    """Generates a debugging prompt for analyzing Android application logs."""
    return f"""I need help debugging a crash in my Android app with package name '{package_name}'.

Can you help me:
1. Capture the logcat output for this app.
2. Analyze the stack trace.
3. Identify the error messages.
4. Find the root cause of the crash between the error messages.
5. Suggest potential fixes.

Please include suggested changes that might solve the issue."""


# === Resources ===


TOOL_GROUPS: dict[str, list[str]] = {
    "Android": [
        "android_list_devices",
        "android_boot_device",
        "android_shutdown_device",
        "android_install_app",
        "android_launch_app",
        "android_list_packages",
        "android_device_logcat",
        "android_diagnostics_bug_report",
        "android_files_push",
        "android_files_pull",
        "android_files_delete",
        "android_shell_command",
        "android_screenshot",
        "android_ui_tap",
        "android_ui_swipe",
        "android_ui_input_text",
        "android_ui_press_key",
        "android_compare_screenshot_llm",
    ],
    "iOS Simulator": [
        "ios_list_devices",
        "ios_booted_device",
        "ios_boot_device",
        "ios_shutdown_device",
        "ios_install_app",
        "ios_launch_app",
        "ios_screenshot",
        "ios_ui_tap",
        "ios_ui_swipe",
        "ios_ui_input_text",
        "ios_ui_press_key",
        "ios_video_start",
        "ios_video_stop",
    ],
}

PREREQUISITES = """## Prerequisites

1. **Android**: `adb` from the Android SDK platform-tools; `emulator` for booting AVDs.
2. **iOS**: Xcode Command Line Tools (`xcrun simctl`) and `idb` for UI input and screenshots.
3. Binaries can be overridden with `ADB_PATH`, `IDB_PATH`, `XCRUN_PATH`, `EMULATOR_PATH`.
"""


@mcp.resource("mobile-dev://api-reference")
async def get_api_reference() -> str:
    """Mobile Dev MCP API Reference - tool catalog and prerequisites."""
    tools = await mcp.get_tools()
    sections = []
    for group, names in TOOL_GROUPS.items():
        rows = [
            (f"`{name}`", (tools[name].description or "").splitlines()[0] if name in tools else "")
            for name in names
        ]
        sections.append(markdown_table(group, ["Tool", "Description"], rows))
    return "\n".join(sections) + "\n" + PREREQUISITES


# Backward-compatible export: `from mobile_dev_mcp.server import server`
server = mcp


# === Main Entry Point ===


def main():
    """Run the MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
