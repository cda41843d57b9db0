"""Approximate token estimation for budget arithmetic."""

import json
from typing import Any

CHARS_PER_TOKEN = 4  # Cross-model estimate (EN text/code/JSON)
MESSAGE_OVERHEAD_TOKENS = 4  # role, separators
IMAGE_TOKENS = 800  # ~800x600 image, upper-end provider estimate


def estimate_tokens(text: str) -> int:
    """Estimate token count from character count."""
    return len(text) // CHARS_PER_TOKEN


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(value)


def _estimate_block(block: Any) -> int:
    if not isinstance(block, dict):
        return estimate_tokens(_stringify(block))
    kind = block.get("type")
    if kind == "text":
        return estimate_tokens(block.get("text", "") or "")
    if kind in ("image", "image_url"):
        return IMAGE_TOKENS
    if kind in ("tool_use", "tool_call", "toolCall"):
        args = block.get("input", block.get("arguments", ""))
        return estimate_tokens(str(block.get("name", ""))) + estimate_tokens(_stringify(args))
    if kind == "tool_result":
        return estimate_content_tokens(block.get("content", ""))
    return estimate_tokens(_stringify(block))


def estimate_content_tokens(content: Any) -> int:
    """Estimate tokens for a message ``content`` (string or block list)."""
    if content is None:
        return 0
    if isinstance(content, str):
        return estimate_tokens(content)
    if isinstance(content, list):
        return sum(_estimate_block(block) for block in content)
    return estimate_tokens(_stringify(content))


def estimate_message_tokens(msg: dict) -> int:
    """Estimate tokens for a single message including overhead and tool calls."""
    total = MESSAGE_OVERHEAD_TOKENS + estimate_content_tokens(msg.get("content"))
    for tc in msg.get("tool_calls") or []:
        fn = tc.get("function", {}) if isinstance(tc, dict) else {}
        total += estimate_tokens(str(fn.get("name", "")))
        total += estimate_tokens(_stringify(fn.get("arguments", "")))
    return total


def estimate_messages_tokens(messages: list[dict]) -> int:
    """Estimate total tokens for a message list."""
    return sum(estimate_message_tokens(m) for m in messages)
