"""Mobile Dev MCP - Android and iOS simulator control for AI agents."""

__version__ = "0.1.0"
