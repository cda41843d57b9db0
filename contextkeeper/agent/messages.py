"""Helpers for reading host messages (OpenAI-style dicts)."""

CHECKPOINT_MARKERS = ("<checkpoint-data", "contextkeeper/checkpoint")

# Injected artifacts that arrive with role "user" but carry no user intent.
SYNTHETIC_PREFIXES = (
    "This summary covers",
    "[Conversation Summary]",
    "The conversation history before this point",
    "[Context:",
    "## Token Gauge",
    "System:",
    "[System Message]",
)

_TOOL_BLOCK_TYPES = ("tool_use", "tool_call", "toolCall")


def extract_text(msg: dict) -> str:
    """Plain text of a message.

    Text blocks are joined with newlines. A message that only calls tools
    collapses to ``[called a, b]``. Anything else yields ``""``.
    """
    content = msg.get("content")
    if isinstance(content, str):
        if content:
            return content
        content = None

    tool_names: list[str] = []
    if isinstance(content, list):
        texts = [
            block.get("text") or ""
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        if texts:
            return "\n".join(texts)
        tool_names = [
            block["name"]
            for block in content
            if isinstance(block, dict) and block.get("type") in _TOOL_BLOCK_TYPES and block.get("name")
        ]

    for tc in msg.get("tool_calls") or []:
        name = (tc.get("function") or {}).get("name") if isinstance(tc, dict) else None
        if name:
            tool_names.append(name)

    if tool_names:
        return f"[called {', '.join(tool_names)}]"
    return ""


def is_genuine_user_message(msg: dict) -> bool:
    """True for messages actually typed by the user.

    Rejects checkpoint data blocks and synthetic prefixes (compaction
    summaries, gauge lines, system notices).
    """
    if msg.get("role") != "user":
        return False
    text = extract_text(msg)
    if any(marker in text for marker in CHECKPOINT_MARKERS):
        return False
    stripped = text.lstrip()
    return not stripped.startswith(SYNTHETIC_PREFIXES)


def find_first_user_message(messages: list[dict]) -> dict | None:
    for msg in messages:
        if is_genuine_user_message(msg):
            return msg
    return None


def find_last_user_message(messages: list[dict]) -> dict | None:
    for msg in reversed(messages):
        if is_genuine_user_message(msg):
            return msg
    return None


def find_last_assistant_message(messages: list[dict]) -> dict | None:
    for msg in reversed(messages):
        if msg.get("role") == "assistant":
            return msg
    return None
