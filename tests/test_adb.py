from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from conftest import FakeProcess
from mobile_dev_mcp.adb import (
    AndroidBridge,
    LogLevel,
    escape_input_text,
    filter_log_lines,
    parse_devices,
)
from mobile_dev_mcp.errors import ErrorKind, MobileToolError

DEVICES_OUTPUT = """\
List of devices attached
emulator-5554          device product:sdk_gphone64_arm64 model:sdk_gphone64_arm64 device:emu64a transport_id:1
R58M12345AB            device usb:1-1 product:beyond1qltesq model:SM_G973U device:beyond1q transport_id:2

"""

LOGCAT_OUTPUT = """\
10-16 09:12:01.100  1234  1234 system_server/E ActivityManager: ANR in com.example.app
10-16 09:12:01.200  4321  4321 com.example.app/W System: slow operation
10-16 09:12:01.300   999   999 com.example.app/I Choreographer: Skipped 30 frames
10-16 09:12:01.400  2222  2222 com.example.app/E AndroidRuntime: FATAL EXCEPTION: main
10-16 09:12:01.500  1000  1000 com.example.app/D Debug: value=1
"""


@pytest.fixture
def bridge(fake_executor, probe) -> AndroidBridge:
    return AndroidBridge(fake_executor, probe, adb_binary="adb", emulator_binary="emulator", boot_grace=0)


def test_parse_devices_extracts_key_value_tokens() -> None:
    devices = parse_devices(DEVICES_OUTPUT)

    assert [d.serial for d in devices] == ["emulator-5554", "R58M12345AB"]
    assert devices[0].model == "sdk_gphone64_arm64"
    assert devices[0].device == "emu64a"
    assert devices[1].product == "beyond1qltesq"
    assert devices[1].state == "device"


def test_parse_devices_skips_daemon_notices() -> None:
    output = "* daemon not running; starting now at tcp:5037\n* daemon started successfully\nList of devices attached\n\n"
    assert parse_devices(output) == []


def test_list_devices_renders_one_row_per_device(bridge, fake_executor) -> None:
    fake_executor.add("devices", stdout=DEVICES_OUTPUT)

    result = asyncio.run(bridge.list_devices())

    lines = result.splitlines()
    assert lines[0] == "# Devices"
    assert lines[2].startswith("| Serial")
    assert set(lines[3]) <= {"|", "-"}
    rows = [line for line in lines[4:] if line.startswith("|")]
    assert len(rows) == 2
    assert "`emulator-5554`" in rows[0]
    assert "`SM_G973U`" in rows[1]


def test_list_devices_without_devices(bridge, fake_executor) -> None:
    fake_executor.add("devices", stdout="List of devices attached\n\n")

    assert asyncio.run(bridge.list_devices()) == "No devices found."


def test_missing_adb_is_a_precondition_failure(bridge, fake_executor) -> None:
    fake_executor.add("version", returncode=1, stderr="adb: not found")

    with pytest.raises(MobileToolError) as excinfo:
        asyncio.run(bridge.list_devices())

    assert excinfo.value.kind is ErrorKind.PRECONDITION_FAILED
    assert "ADB is not installed" in str(excinfo.value)
    assert fake_executor.commands_with("devices") == []


@pytest.mark.parametrize(
    "call",
    [
        lambda b: b.install_app("", "/tmp/app.apk"),
        lambda b: b.push_file("", "/tmp/app.apk", "/sdcard/app.apk"),
        lambda b: b.launch_app("", "com.example"),
        lambda b: b.list_packages(""),
        lambda b: b.logcat(""),
        lambda b: b.bug_report(""),
        lambda b: b.pull_file("", "/sdcard/a.txt", "/tmp/a.txt"),
        lambda b: b.delete_file("", "/sdcard/a.txt"),
        lambda b: b.shell("", "ls"),
        lambda b: b.screenshot(""),
        lambda b: b.tap("", 1, 2),
        lambda b: b.swipe("", 1, 2, 3, 4),
        lambda b: b.input_text("", "hello"),
        lambda b: b.press_key("", 4),
        lambda b: b.shutdown_device(""),
        lambda b: b.boot_device(""),
    ],
)
def test_empty_serial_spawns_nothing(bridge, fake_executor, call) -> None:
    with pytest.raises(MobileToolError) as excinfo:
        asyncio.run(call(bridge))

    assert excinfo.value.kind is ErrorKind.PRECONDITION_FAILED
    assert str(excinfo.value).startswith("Error: ")
    assert fake_executor.calls == []


def test_list_packages_table(bridge, fake_executor) -> None:
    fake_executor.add("pm", stdout="package:com.android.settings\npackage:com.example.app\n")

    result = asyncio.run(bridge.list_packages("SERIAL123"))

    assert result.startswith("# Installed Packages")
    assert "| `com.android.settings` |" in result
    assert "| `com.example.app` |" in result
    assert fake_executor.commands_with("pm")[0] == [
        "adb", "-s", "SERIAL123", "shell", "pm", "list", "packages"
    ]


def test_list_packages_empty(bridge, fake_executor) -> None:
    assert asyncio.run(bridge.list_packages("SERIAL123")) == "No packages found on the device."


def test_logcat_filters_by_level_after_line_limit(bridge, fake_executor) -> None:
    fake_executor.add("logcat", stdout=LOGCAT_OUTPUT)

    result = asyncio.run(bridge.logcat("SERIAL123", LogLevel.ERROR, max_lines=500))

    assert result == (
        "10-16 09:12:01.100  1234  1234 system_server/E ActivityManager: ANR in com.example.app\n"
        "10-16 09:12:01.400  2222  2222 com.example.app/E AndroidRuntime: FATAL EXCEPTION: main"
    )
    assert fake_executor.commands_with("logcat")[0] == [
        "adb", "-s", "SERIAL123", "logcat", "-d", "-t", "500"
    ]


def test_logcat_without_level_returns_raw_output(bridge, fake_executor) -> None:
    fake_executor.add("logcat", stdout=LOGCAT_OUTPUT)

    assert asyncio.run(bridge.logcat("SERIAL123")) == LOGCAT_OUTPUT
    assert "-t" not in fake_executor.commands_with("logcat")[0]


def test_log_filter_is_idempotent() -> None:
    once = filter_log_lines(LOGCAT_OUTPUT, LogLevel.WARNING)
    assert once == "10-16 09:12:01.200  4321  4321 com.example.app/W System: slow operation"
    assert filter_log_lines(once, LogLevel.WARNING) == once


def test_push_then_pull_round_trip(bridge, fake_executor, tmp_path: Path) -> None:
    remote: dict[str, bytes] = {}

    def push(cmd: list[str]) -> None:
        remote[cmd[-1]] = Path(cmd[-2]).read_bytes()

    def pull(cmd: list[str]) -> None:
        Path(cmd[-1]).write_bytes(remote[cmd[-2]])

    fake_executor.add("push", effect=push)
    fake_executor.add("pull", effect=pull)

    source = tmp_path / "source.bin"
    source.write_bytes(bytes(range(256)) * 4)
    target = tmp_path / "copy.bin"

    pushed = asyncio.run(bridge.push_file("SERIAL123", str(source), "/sdcard/source.bin"))
    pulled = asyncio.run(bridge.pull_file("SERIAL123", "/sdcard/source.bin", str(target)))

    assert "uploaded" in pushed
    assert "downloaded" in pulled
    assert target.read_bytes() == source.read_bytes()


def test_push_requires_existing_local_file(bridge, fake_executor, tmp_path: Path) -> None:
    with pytest.raises(MobileToolError) as excinfo:
        asyncio.run(bridge.push_file("SERIAL123", str(tmp_path / "missing.txt"), "/sdcard/x"))

    assert excinfo.value.kind is ErrorKind.PRECONDITION_FAILED
    assert fake_executor.calls == []


def test_pull_requires_existing_local_directory(bridge, fake_executor, tmp_path: Path) -> None:
    with pytest.raises(MobileToolError):
        asyncio.run(bridge.pull_file("SERIAL123", "/sdcard/x", str(tmp_path / "nope" / "x")))

    assert fake_executor.calls == []


def test_delete_file(bridge, fake_executor) -> None:
    result = asyncio.run(bridge.delete_file("SERIAL123", "/sdcard/old file.txt"))

    assert "deleted" in result
    assert fake_executor.commands_with("rm")[0] == [
        "adb", "-s", "SERIAL123", "shell", "rm", "-f", "'/sdcard/old file.txt'"
    ]


def test_bug_report_timeout_kills_process(bridge, fake_executor, tmp_path: Path) -> None:
    proc = FakeProcess(hang=True)
    fake_executor.processes.append(proc)

    started = time.monotonic()
    with pytest.raises(MobileToolError) as excinfo:
        asyncio.run(bridge.bug_report("SERIAL123", str(tmp_path / "br.zip"), timeout_seconds=0.2))
    elapsed = time.monotonic() - started

    assert excinfo.value.kind is ErrorKind.TIMEOUT
    assert "exceeded the time limit of 0.2 seconds" in str(excinfo.value)
    assert proc.killed
    assert elapsed < 2.0


def test_cancelled_bug_report_kills_process(bridge, fake_executor, tmp_path: Path) -> None:
    proc = FakeProcess(hang=True)
    fake_executor.processes.append(proc)

    async def scenario():
        task = asyncio.create_task(bridge.bug_report("SERIAL123", str(tmp_path / "br.zip")))
        while not fake_executor.started:
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())

    assert proc.killed


def test_bug_report_success_reports_size(bridge, fake_executor, tmp_path: Path) -> None:
    output = tmp_path / "reports" / "br.zip"
    proc = FakeProcess(on_finish=lambda: output.write_bytes(b"x" * (1024 * 1024)))
    fake_executor.processes.append(proc)

    result = asyncio.run(bridge.bug_report("SERIAL123", str(output)))

    assert result == f"Bug report completed successfully. Saved to: {output} (1.00 MB)"
    assert fake_executor.started[0] == ["adb", "-s", "SERIAL123", "bugreport", str(output)]


def test_bug_report_nonzero_exit(bridge, fake_executor, tmp_path: Path) -> None:
    fake_executor.processes.append(FakeProcess(exit_code=1, stderr=b"device offline"))

    with pytest.raises(MobileToolError) as excinfo:
        asyncio.run(bridge.bug_report("SERIAL123", str(tmp_path / "br.zip")))

    assert excinfo.value.kind is ErrorKind.EXTERNAL_TOOL_FAILED
    assert "device offline" in str(excinfo.value)


def test_bug_report_missing_output_file(bridge, fake_executor, tmp_path: Path) -> None:
    fake_executor.processes.append(FakeProcess())

    with pytest.raises(MobileToolError) as excinfo:
        asyncio.run(bridge.bug_report("SERIAL123", str(tmp_path / "br.zip")))

    assert "output file was not generated" in str(excinfo.value)


def test_screenshot_returns_bytes_and_cleans_up(bridge, fake_executor) -> None:
    pulled_to: list[Path] = []

    def pull(cmd: list[str]) -> None:
        path = Path(cmd[-1])
        path.write_bytes(b"\x89PNG fake")
        pulled_to.append(path)

    fake_executor.add("pull", effect=pull)

    data = asyncio.run(bridge.screenshot("SERIAL123"))

    assert data == b"\x89PNG fake"
    assert not pulled_to[0].exists()
    screencap = fake_executor.commands_with("screencap")[0]
    device_path = screencap[-1]
    assert device_path.startswith("/sdcard/screenshot_")
    assert fake_executor.commands_with("rm")[0][-1] == device_path


def test_screenshot_pull_failure_is_reported(bridge, fake_executor) -> None:
    fake_executor.add("pull", returncode=1, stderr="remote object does not exist")

    with pytest.raises(MobileToolError) as excinfo:
        asyncio.run(bridge.screenshot("SERIAL123"))

    assert excinfo.value.kind is ErrorKind.EXTERNAL_TOOL_FAILED
    assert fake_executor.commands_with("rm")


def test_input_commands(bridge, fake_executor) -> None:
    assert asyncio.run(bridge.tap("SERIAL123", 10, 20)) == "Successfully tapped at (10, 20)"
    assert asyncio.run(bridge.swipe("SERIAL123", 1, 2, 3, 4, 250)) == (
        "Successfully swiped from (1, 2) to (3, 4)"
    )
    asyncio.run(bridge.input_text("SERIAL123", "hello world"))
    asyncio.run(bridge.press_key("SERIAL123", 66))

    shell_calls = [c[3:] for c in fake_executor.calls if "shell" in c]
    assert shell_calls == [
        ["shell", "input", "tap", "10", "20"],
        ["shell", "input", "swipe", "1", "2", "3", "4", "250"],
        ["shell", "input", "text", "hello%sworld"],
        ["shell", "input", "keyevent", "66"],
    ]


def test_input_text_is_quoted_for_device_shell(bridge, fake_executor) -> None:
    asyncio.run(bridge.input_text("SERIAL123", "a;reboot"))

    assert fake_executor.commands_with("input")[0][-1] == "'a;reboot'"


def test_escape_input_text() -> None:
    assert escape_input_text("open the app") == "open%sthe%sapp"


def test_shell_formats_output(bridge, fake_executor) -> None:
    fake_executor.add("shell", stdout="total 0\n")

    result = asyncio.run(bridge.shell("SERIAL123", "ls -l /sdcard"))

    assert result == "# Command Output from SERIAL123\n\n```\ntotal 0\n```"
    assert fake_executor.commands_with("shell")[0] == ["adb", "-s", "SERIAL123", "shell", "ls -l /sdcard"]


def test_install_failure_in_output(bridge, fake_executor) -> None:
    fake_executor.add("install", stdout="Failure [INSTALL_FAILED_VERSION_DOWNGRADE]")

    with pytest.raises(MobileToolError) as excinfo:
        asyncio.run(bridge.install_app("SERIAL123", "/tmp/app.apk"))

    assert "INSTALL_FAILED_VERSION_DOWNGRADE" in str(excinfo.value)


def test_launch_app_uses_monkey(bridge, fake_executor) -> None:
    asyncio.run(bridge.launch_app("SERIAL123", "com.example.app"))

    assert fake_executor.commands_with("monkey")[0][3:] == [
        "shell", "monkey", "-p", "com.example.app", "-c", "android.intent.category.LAUNCHER", "1"
    ]


def test_boot_device_detects_immediate_exit(bridge, fake_executor) -> None:
    fake_executor.processes.append(FakeProcess(exit_code=1, exited=True))

    with pytest.raises(MobileToolError) as excinfo:
        asyncio.run(bridge.boot_device("Pixel_7"))

    assert excinfo.value.kind is ErrorKind.EXTERNAL_TOOL_FAILED
    assert "exited immediately with code 1" in str(excinfo.value)
    assert fake_executor.started[0] == ["emulator", "-avd", "Pixel_7"]


def test_boot_device_discards_emulator_output(bridge, fake_executor) -> None:
    fake_executor.processes.append(FakeProcess(hang=True))

    asyncio.run(bridge.boot_device("Pixel_7"))

    assert fake_executor.start_options == [{"discard_stdout": True, "discard_stderr": True}]


def test_boot_device_running(bridge, fake_executor) -> None:
    fake_executor.processes.append(FakeProcess(hang=True))

    assert asyncio.run(bridge.boot_device("Pixel_7")) == "Emulator Pixel_7 is booting."


def test_shutdown_device(bridge, fake_executor) -> None:
    asyncio.run(bridge.shutdown_device("emulator-5554"))

    assert fake_executor.commands_with("emu")[0] == ["adb", "-s", "emulator-5554", "emu", "kill"]
