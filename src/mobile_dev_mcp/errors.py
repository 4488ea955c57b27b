"""Error type shared by every tool handler."""

from __future__ import annotations

from enum import Enum

from fastmcp.exceptions import ToolError


class ErrorKind(str, Enum):
    """Why an operation failed."""

    PRECONDITION_FAILED = "precondition_failed"
    EXTERNAL_TOOL_FAILED = "external_tool_failed"
    PARSE_FAILED = "parse_failed"
    TIMEOUT = "timeout"


class MobileToolError(ToolError):
    """Device operation error.

    FastMCP reports ``ToolError`` messages to the client verbatim, so the
    caller sees ``Error: <message>`` while code can branch on ``kind``.
    """

    def __init__(self, kind: ErrorKind, message: str):
        super().__init__(f"Error: {message}")
        self.kind = kind
        self.message = message

    @classmethod
    def precondition(cls, message: str) -> MobileToolError:
        return cls(ErrorKind.PRECONDITION_FAILED, message)

    @classmethod
    def external(cls, message: str) -> MobileToolError:
        return cls(ErrorKind.EXTERNAL_TOOL_FAILED, message)

    @classmethod
    def parse(cls, message: str) -> MobileToolError:
        return cls(ErrorKind.PARSE_FAILED, message)

    @classmethod
    def timeout(cls, message: str) -> MobileToolError:
        return cls(ErrorKind.TIMEOUT, message)


def require_value(value: str | None, message: str) -> str:
    """Return ``value`` or raise a precondition error if it is empty."""
    if value is None or not str(value).strip():
        raise MobileToolError.precondition(message)
    return value
