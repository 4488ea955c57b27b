"""Configuration read from environment variables."""

from __future__ import annotations

import os
import shutil
from pathlib import Path


def _binary(env_var: str, name: str) -> str:
    return os.environ.get(env_var) or shutil.which(name) or name


def _flag(env_var: str, default: str) -> bool:
    return os.environ.get(env_var, default).lower() in ("true", "1", "yes")


LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

ADB_BINARY = _binary("ADB_PATH", "adb")
IDB_BINARY = _binary("IDB_PATH", "idb")
XCRUN_BINARY = _binary("XCRUN_PATH", "xcrun")
EMULATOR_BINARY = _binary("EMULATOR_PATH", "emulator")

# Seconds
COMMAND_TIMEOUT = float(os.environ.get("MOBILE_MCP_COMMAND_TIMEOUT", "60"))
BUGREPORT_TIMEOUT = int(os.environ.get("MOBILE_MCP_BUGREPORT_TIMEOUT", "500"))
RECORDING_GRACE = float(os.environ.get("MOBILE_MCP_RECORDING_GRACE", "3.0"))
RECORDING_STOP_TIMEOUT = float(os.environ.get("MOBILE_MCP_RECORDING_STOP_TIMEOUT", "30.0"))
EMULATOR_BOOT_GRACE = float(os.environ.get("MOBILE_MCP_EMULATOR_GRACE", "3.0"))

RECORDINGS_DIR = Path(
    os.environ.get("MOBILE_MCP_RECORDINGS_DIR", str(Path.home() / "Downloads"))
).expanduser()

DASHBOARD_ENABLED = _flag("DASHBOARD_ENABLED", "true")
DASHBOARD_PORT = int(os.environ.get("DASHBOARD_PORT", "8200"))
