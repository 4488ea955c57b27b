"""Screenshot comparison delegated to the client's language model."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Protocol

from mcp.types import ImageContent, SamplingMessage, TextContent

logger = logging.getLogger(__name__)

DEFAULT_PROMPT = "Compare the images"

VERIFY_SCREENSHOT_PROMPT = """\
You are a software tool designed to analyze mobile application screenshots. \
The user will provide you with two screenshots and then ask to compare them. \
Your job is to analyze the screenshots, and return a boolean indicating whether \
they are equal or not. More specific instructions:
- Use computer vision techniques including OCR to look for differences, even if they are small.
- Don't include any text or conversation.
- Do not include any explanations of your choices.
- Reply simply with the boolean in string format."""


class Sampler(Protocol):
    """The part of ``fastmcp.Context`` used here."""

    async def sample(self, messages: Any, **kwargs: Any) -> Any: ...


def decode_image(data: str | bytes | None) -> bytes | None:
    """Accept raw PNG bytes or base64 text (optionally a ``data:`` URL)."""
    if data is None:
        return None
    if isinstance(data, bytes):
        return data or None
    if data.startswith("data:"):
        data = data.split(",", 1)[-1]
    try:
        return base64.b64decode(data, validate=True) or None
    except (binascii.Error, ValueError):
        return None


def parse_bool_reply(text: str | None) -> bool:
    """Interpret a model reply as a boolean; anything unrecognised is False."""
    if not text:
        return False
    cleaned = text.strip().strip("`").strip()
    if cleaned.lower().startswith("json"):
        cleaned = cleaned[4:].strip()

    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError:
        value = cleaned.strip("\"'").strip()

    if isinstance(value, dict) and len(value) == 1:
        value = next(iter(value.values()))
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _image_message(data: bytes) -> SamplingMessage:
    return SamplingMessage(
        role="user",
        content=ImageContent(
            type="image",
            data=base64.b64encode(data).decode("ascii"),
            mimeType="image/png",
        ),
    )


async def compare_screenshots(
    sampler: Sampler,
    screenshot1: str | bytes | None,
    screenshot2: str | bytes | None,
    prompt: str | None = None,
    max_tokens: int = 100,
) -> bool:
    """Ask the client's model whether two screenshots are equal."""
    first = decode_image(screenshot1)
    second = decode_image(screenshot2)
    if first is None or second is None:
        logger.warning("Screenshot comparison requested without two valid images")
        return False

    messages = [
        SamplingMessage(role="user", content=TextContent(type="text", text=prompt or DEFAULT_PROMPT)),
        _image_message(first),
        _image_message(second),
    ]

    try:
        response = await sampler.sample(
            messages,
            system_prompt=VERIFY_SCREENSHOT_PROMPT,
            temperature=0.7,
            max_tokens=max_tokens,
        )
    except Exception as e:
        logger.error(f"Screenshot comparison failed: {e}")
        return False

    text = getattr(response, "text", None)
    result = parse_bool_reply(text)
    logger.debug(f"Screenshot comparison reply {text!r} -> {result}")
    return result
