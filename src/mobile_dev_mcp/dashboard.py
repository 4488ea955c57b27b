"""Local activity page: recent tool calls, error kinds and live recordings."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter, deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from aiohttp import WSMsgType, web

from . import config
from .errors import MobileToolError

logger = logging.getLogger(__name__)

MAX_ARG_LENGTH = 200
MAX_RESULT_LENGTH = 500
RECENT_CALLS = 50

TEMPLATE_DIR = Path(__file__).parent / "templates"


def summarize_value(value: Any, limit: int = MAX_ARG_LENGTH) -> Any:
    """Reduce a tool argument or result to something JSON-friendly and short."""
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value if len(value) <= limit else f"{value[:limit]}... ({len(value)} chars)"
    if isinstance(value, bytes):
        return f"<{len(value)} bytes>"
    return f"<{type(value).__name__}>"


def platform_of(tool_name: str) -> str:
    prefix = tool_name.split("_", 1)[0]
    return prefix if prefix in ("android", "ios") else "other"


@dataclass
class ToolActivity:
    """One invocation of an MCP tool, as shown on the page."""

    seq: int
    tool_name: str
    arguments: dict[str, Any]
    started: float = field(default_factory=time.time)
    status: str = "pending"
    result: Any = None
    error: str | None = None
    error_kind: str | None = None
    duration_ms: float | None = None

    @property
    def platform(self) -> str:
        return platform_of(self.tool_name)

    def finish(self, result: Any = None, error: BaseException | None = None) -> None:
        self.duration_ms = (time.time() - self.started) * 1000
        if error is None:
            self.status = "success"
            self.result = summarize_value(result, MAX_RESULT_LENGTH)
            return
        self.status = "error"
        self.error = str(error)
        self.error_kind = error.kind.value if isinstance(error, MobileToolError) else "unexpected"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.seq,
            "time_str": datetime.fromtimestamp(self.started).strftime("%H:%M:%S"),
            "tool_name": self.tool_name,
            "platform": self.platform,
            "arguments": self.arguments,
            "status": self.status,
            "result": self.result,
            "error": self.error,
            "error_kind": self.error_kind,
            "duration_ms": self.duration_ms,
        }


class DashboardState:
    """Bounded history of tool activity plus the clients watching it."""

    def __init__(self, max_calls: int = 100):
        self.history: deque[ToolActivity] = deque(maxlen=max_calls)
        self.total_calls = 0
        self.calls_by_platform: Counter[str] = Counter()
        self.errors_by_kind: Counter[str] = Counter()
        self.clients: set[web.WebSocketResponse] = set()
        self.started = time.time()
        self.recordings_provider: Callable[[], list[dict[str, Any]]] | None = None

    def begin(self, tool_name: str, arguments: dict[str, Any]) -> ToolActivity:
        self.total_calls += 1
        activity = ToolActivity(
            seq=self.total_calls,
            tool_name=tool_name,
            arguments={k: summarize_value(v) for k, v in arguments.items() if k != "ctx"},
        )
        self.history.append(activity)
        self.calls_by_platform[activity.platform] += 1
        self._publish("tool_call", activity)
        return activity

    def finish(self, activity: ToolActivity, result: Any = None, error: BaseException | None = None) -> None:
        activity.finish(result, error)
        if activity.error_kind:
            self.errors_by_kind[activity.error_kind] += 1
        self._publish("tool_complete", activity)

    def _publish(self, event: str, activity: ToolActivity) -> None:
        if not self.clients:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        loop.create_task(self._send_all({"type": event, "data": activity.to_dict()}))

    async def _send_all(self, message: dict[str, Any]) -> None:
        clients = list(self.clients)
        outcomes = await asyncio.gather(
            *(ws.send_json(message) for ws in clients), return_exceptions=True
        )
        for ws, outcome in zip(clients, outcomes):
            if isinstance(outcome, Exception):
                self.clients.discard(ws)

    def snapshot(self) -> dict[str, Any]:
        return {
            "uptime": time.time() - self.started,
            "tool_calls": [a.to_dict() for a in list(self.history)[-RECENT_CALLS:]],
            "recordings": self.recordings_provider() if self.recordings_provider else [],
            "total_calls": self.total_calls,
            "errors": sum(self.errors_by_kind.values()),
            "calls_by_platform": dict(self.calls_by_platform),
            "errors_by_kind": dict(self.errors_by_kind),
        }


dashboard_state = DashboardState()


async def index(request: web.Request) -> web.Response:
    return web.Response(text=(TEMPLATE_DIR / "dashboard.html").read_text(), content_type="text/html")


async def api_state(request: web.Request) -> web.Response:
    return web.json_response(request.app["state"].snapshot())


async def live_updates(request: web.Request) -> web.WebSocketResponse:
    state: DashboardState = request.app["state"]
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    await ws.send_json({"type": "init", "data": state.snapshot()})
    state.clients.add(ws)
    logger.debug(f"Dashboard client connected ({len(state.clients)} watching)")

    try:
        async for msg in ws:
            if msg.type == WSMsgType.ERROR:
                logger.warning(f"Dashboard websocket closed with error: {ws.exception()}")
    finally:
        state.clients.discard(ws)

    return ws


def create_dashboard_app(state: DashboardState = dashboard_state) -> web.Application:
    app = web.Application()
    app["state"] = state
    app.add_routes(
        [
            web.get("/", index),
            web.get("/api/state", api_state),
            web.get("/ws", live_updates),
        ]
    )
    return app


async def start_dashboard(port: int = config.DASHBOARD_PORT) -> web.AppRunner | None:
    """Serve the page on localhost; returns None when the port is taken."""
    runner = web.AppRunner(create_dashboard_app())
    await runner.setup()
    try:
        await web.TCPSite(runner, "127.0.0.1", port).start()
    except OSError as e:
        logger.warning(f"Dashboard disabled, could not bind port {port}: {e}")
        await runner.cleanup()
        return None

    logger.info(f"Dashboard at http://localhost:{port}")
    return runner


async def stop_dashboard(runner: web.AppRunner | None) -> None:
    if runner is not None:
        await runner.cleanup()
