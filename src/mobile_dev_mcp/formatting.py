"""Markdown rendering for tool responses."""

from __future__ import annotations

from collections.abc import Iterable, Sequence


def markdown_table(title: str, headers: Sequence[str], rows: Iterable[Sequence[str]]) -> str:
    """Render a ``# Title`` heading followed by a Markdown table."""
    lines = [f"# {title}", ""]
    lines.append("| " + " | ".join(headers) + " |")
    lines.append("|" + "|".join("-" * (len(h) + 2) for h in headers) + "|")
    for row in rows:
        lines.append("| " + " | ".join(str(cell) for cell in row) + " |")
    return "\n".join(lines) + "\n"


def code_block(title: str, body: str) -> str:
    return f"# {title}\n\n```\n{body.rstrip()}\n```"


def format_size_mb(size_bytes: int) -> str:
    return f"{size_bytes / (1024.0 * 1024.0):.2f} MB"
