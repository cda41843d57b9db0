"""Heuristic capture of decisions, open items, and learnings from turns.

Everything here is a pure function over message text. Code-fenced regions
are never scanned.
"""

import re
from collections.abc import Iterator
from typing import Any

from contextkeeper.agent.types import FileKind
from contextkeeper.utils.helpers import truncate

MAX_DECISION_CHARS = 200
MAX_OPEN_ITEM_CHARS = 150
MAX_LEARNING_CHARS = 200

# Decision trigger: a short user reply right after a long assistant turn.
SHORT_REPLY_CHARS = 50
STRUCTURAL_CONFIRM_CHARS = 15
LONG_PROPOSAL_CHARS = 500
CONFIRMATION_KEYWORDS = re.compile(
    r"\b(yes|no|go|do it|ship it|pick|approve|proceed|let's go|sounds good|go ahead|"
    r"implement|fix|ok|okay|sure|agreed|confirm|da|ja|oui|si|sim|vai)\b",
    re.IGNORECASE,
)

ACTION_VERBS = frozenset({
    "use", "implement", "add", "remove", "fix", "create", "switch", "replace",
    "refactor", "move", "update", "write", "build", "deploy", "migrate", "keep",
    "drop", "rename", "split", "merge", "change", "enable", "disable",
    "configure", "install", "run", "ship", "adopt", "store", "cache", "send",
    "extract", "convert", "delete", "introduce", "set", "limit", "skip",
    "return", "wrap", "handle", "test", "persist", "start", "stop",
})

FILLER_OPENERS = (
    "you're right", "you are right", "ohoho", "oho", "hmm", "haha", "got it",
    "thanks", "thank you", "sorry", "oops", "great question", "good question",
    "interesting", "wow", "ah,", "oh,", "lol",
)

_LIST_MARKER = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+")
_HEADING_MARKER = re.compile(r"^\s*#{1,6}\s+")
_STRIP_MARKER = re.compile(r"^\s*(?:[-*+]|\d+[.)]|#{1,6})\s+")

_TIER1 = (
    re.compile(r"^(?:\*\*)?(?:decision|plan|approach)(?:\*\*)?\s*:", re.IGNORECASE),
    re.compile(r"\b(?:going with|chose|choosing)\b", re.IGNORECASE),
)
_TIER2 = (
    re.compile(r"^(?:i'll|we'll|let's|i will|we will|i'm going to|we're going to)\b", re.IGNORECASE),
    re.compile(r"\bthe (?:approach|plan|fix|solution) is\b", re.IGNORECASE),
)

_CHECKBOX = re.compile(r"^\s*-\s*\[\s*\]")
_OPEN_ITEM_KEYWORDS = re.compile(
    r"\b(?:need to|TODO|still need|will check|next step|haven't yet|FIXME)\b|\bremaining:",
    re.IGNORECASE,
)
_BOLD_COLON = re.compile(r"^\s*\*\*[^*]+\*\*\s*:")
_INSIGHT_KEYWORDS = re.compile(
    r"\b(?:turns out|discovered that|the issue was|root cause|TIL)\b"
    r"|\b(?:gotcha|note|important|lesson|caveat|warning|beware):",
    re.IGNORECASE,
)
_STARTS_UPPER = re.compile(r"^\s*[A-Z]")

SAFE_PARAM_KEYS = ("path", "file_path", "query", "command", "url", "pattern", "glob")
MAX_PARAM_CHARS = 80
READ_ONLY_TOOLS = frozenset({"read", "grep", "find", "ls"})


def prose_lines(text: str) -> Iterator[str]:
    """Yield the lines of *text* outside ``` fences."""
    in_fence = False
    for line in text.split("\n"):
        if line.lstrip().startswith("```"):
            in_fence = not in_fence
            continue
        if not in_fence:
            yield line


def _words(line: str) -> list[str]:
    return [w.strip(".,;:!()[]`*\"'").lower() for w in _STRIP_MARKER.sub("", line).split()]


def _has_action_verb(line: str, within: int | None = None) -> bool:
    words = _words(line)
    if within is not None:
        words = words[:within]
    return any(w in ACTION_VERBS for w in words)


def _has_structure(line: str) -> bool:
    return bool(
        "**" in line
        or _LIST_MARKER.match(line)
        or _HEADING_MARKER.match(line)
        or ":" in line
    )


def _passes_quality_gate(line: str) -> bool:
    body = _STRIP_MARKER.sub("", line).strip()
    lower = body.lower().lstrip("*_ ")
    if not body or body.endswith("?"):
        return False
    if lower.startswith(FILLER_OPENERS):
        return False
    return _has_action_verb(body) or _has_structure(line)


def _decision_tier(line: str) -> int | None:
    body = _STRIP_MARKER.sub("", line).strip()
    if any(p.search(body) for p in _TIER1):
        return 1
    if any(p.search(body) for p in _TIER2):
        return 2
    is_structured = bool(_LIST_MARKER.match(line) or _HEADING_MARKER.match(line))
    if is_structured and "**" in line and _has_action_verb(line):
        return 3
    if _LIST_MARKER.match(line) and _has_action_verb(line, within=5):
        return 4
    return None


def extract_decision_from_response(text: str) -> str | None:
    """Pick the most decision-like line of an assistant response.

    Lower tier numbers win; within a tier the first line wins. Returns
    None when no line survives the quality gate.
    """
    best: tuple[int, str] | None = None
    for line in prose_lines(text):
        if not line.strip():
            continue
        tier = _decision_tier(line)
        if tier is None or not _passes_quality_gate(line):
            continue
        if best is None or tier < best[0]:
            best = (tier, line)
            if tier == 1:
                break
    if best is None:
        return None
    cleaned = _STRIP_MARKER.sub("", best[1]).strip()
    return truncate(cleaned, MAX_DECISION_CHARS)


def should_capture_decision(user_text: str, agent_text: str) -> bool:
    """A short confirmation following a long proposal ratifies a decision."""
    if not agent_text or len(user_text) >= SHORT_REPLY_CHARS:
        return False
    if len(agent_text) <= LONG_PROPOSAL_CHARS:
        return False
    is_short_confirmation = (
        len(user_text) < STRUCTURAL_CONFIRM_CHARS and not user_text.strip().endswith("?")
    )
    return is_short_confirmation or bool(CONFIRMATION_KEYWORDS.search(user_text))


def extract_open_items(text: str) -> list[str]:
    """Checkbox lines and list lines naming unfinished work."""
    items = []
    for line in prose_lines(text):
        if _CHECKBOX.match(line) or (_LIST_MARKER.match(line) and _OPEN_ITEM_KEYWORDS.search(line)):
            items.append(truncate(line.strip(), MAX_OPEN_ITEM_CHARS))
    return items


def extract_learnings(text: str) -> list[str]:
    """Bold-colon lines, or insight phrases on a structured line."""
    found = []
    for line in prose_lines(text):
        if _BOLD_COLON.match(line):
            found.append(truncate(line.strip(), MAX_LEARNING_CHARS))
            continue
        structured = bool(_LIST_MARKER.match(line) or "**" in line or _STARTS_UPPER.match(line))
        if structured and _INSIGHT_KEYWORDS.search(line):
            found.append(truncate(line.strip(), MAX_LEARNING_CHARS))
    return found


def summarize_tool_params(params: dict[str, Any] | None) -> str:
    """Short, secret-free description of a tool call's input."""
    if not params:
        return ""
    for key in SAFE_PARAM_KEYS:
        value = params.get(key)
        if isinstance(value, str):
            return f"{key}={truncate(value, MAX_PARAM_CHARS)}"
    return ", ".join(list(params)[:3])


def extract_file_path(params: dict[str, Any] | None) -> str | None:
    if not params:
        return None
    for key in ("path", "file_path"):
        value = params.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def infer_file_kind(tool_name: str) -> FileKind:
    return "read" if tool_name in READ_ONLY_TOOLS else "modified"
