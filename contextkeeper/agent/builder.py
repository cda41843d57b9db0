"""Build a Checkpoint from accumulated state and the message history.

Everything here is pure: no file I/O, no clock reads beyond ``now``.
"""

import math
from dataclasses import dataclass
from datetime import datetime

from contextkeeper.agent.checkpoint import (
    Checkpoint,
    CheckpointDecision,
    CheckpointFile,
    CheckpointMeta,
    CheckpointResources,
    CheckpointThread,
    CheckpointTrigger,
    TokenUsage,
    WorkingState,
)
from contextkeeper.agent.gauge import GaugeResult
from contextkeeper.agent.messages import (
    extract_text,
    find_first_user_message,
    find_last_user_message,
    is_genuine_user_message,
)
from contextkeeper.agent.scoring import score_file_access
from contextkeeper.agent.state import StateSnapshot
from contextkeeper.agent.types import FileAccess, FileOperations, KeyExchange, ThreadSnapshot
from contextkeeper.session.context import SessionContext
from contextkeeper.utils.helpers import extract_channel, truncate, utc_now

MAX_TOPIC_CHARS = 200
MAX_SUMMARY_PART_CHARS = 100
MAX_GIST_CHARS = 120
MAX_KEY_EXCHANGES = 8
MAX_MIDDLE_SAMPLES = 3
UNKNOWN_TOPIC = "Unknown topic"


@dataclass
class BuildOptions:
    is_split_turn: bool = False
    file_ops: FileOperations | None = None
    compaction_count: int = 0
    snapshot: ThreadSnapshot | None = None
    now: datetime | None = None


def _user_gist(msg: dict) -> str:
    text = extract_text(msg).strip()
    return truncate(text, MAX_GIST_CHARS) if text else "[user message without text]"


def _agent_gist(msg: dict) -> str:
    text = extract_text(msg).strip()
    return truncate(text, MAX_GIST_CHARS) if text else "[assistant message without text]"


def _pair_messages(messages: list[dict]) -> list[tuple[dict, dict | None]]:
    """Pair each genuine user message with the next assistant reply."""
    pairs = []
    for i, msg in enumerate(messages):
        if not is_genuine_user_message(msg):
            continue
        agent = None
        for candidate in messages[i + 1:]:
            if candidate.get("role") == "assistant":
                agent = candidate
                break
            if is_genuine_user_message(candidate):
                break
        pairs.append((msg, agent))
    return pairs


def _pair_entries(pair: tuple[dict, dict | None]) -> list[KeyExchange]:
    user, agent = pair
    entries = [KeyExchange(role="user", gist=_user_gist(user))]
    if agent is not None:
        entries.append(KeyExchange(role="agent", gist=_agent_gist(agent)))
    return entries


def build_key_exchanges(messages: list[dict]) -> list[KeyExchange]:
    """First pair, up to three evenly sampled middle pairs, and the last two.

    The list is capped at eight entries; middle samples give way first so
    the opening and the two most recent pairs always survive.
    """
    pairs = _pair_messages(messages)
    if not pairs:
        return []

    first = _pair_entries(pairs[0])
    tail_pairs = pairs[1:][-2:]
    middle = pairs[1:-2] if len(pairs) > 3 else []

    sampled = []
    if middle:
        step = math.ceil(len(middle) / MAX_MIDDLE_SAMPLES)
        sampled = middle[::step][:MAX_MIDDLE_SAMPLES]

    tail = [entry for pair in tail_pairs for entry in _pair_entries(pair)]
    budget = MAX_KEY_EXCHANGES - len(first) - len(tail)
    middle_entries: list[KeyExchange] = []
    for pair in sampled:
        entries = _pair_entries(pair)
        if len(middle_entries) + len(entries) > budget:
            break
        middle_entries.extend(entries)

    return (first + middle_entries + tail)[:MAX_KEY_EXCHANGES]


def build_thread_summary(messages: list[dict]) -> str:
    """First and latest user focus; "" when no genuine user message exists."""
    first = find_first_user_message(messages)
    last = find_last_user_message(messages)
    first_text = truncate(extract_text(first).strip(), MAX_SUMMARY_PART_CHARS) if first else ""
    last_text = truncate(extract_text(last).strip(), MAX_SUMMARY_PART_CHARS) if last else ""
    if first_text and last_text and first is not last and first_text != last_text:
        return f"Session started with: {first_text}. Latest user focus: {last_text}."
    focus = first_text or last_text
    return f"Session focus: {focus}." if focus else ""


def extract_topic(messages: list[dict]) -> str:
    """Latest genuine user request, or "" when there is none."""
    last = find_last_user_message(messages)
    text = extract_text(last).strip() if last else ""
    return truncate(text, MAX_TOPIC_CHARS) if text else ""


def build_thread_snapshot(messages: list[dict], now: datetime | None = None) -> ThreadSnapshot:
    """Rolling topic/summary/exchanges from the full history."""
    now = now or utc_now()
    return ThreadSnapshot(
        topic=extract_topic(messages),
        summary=build_thread_summary(messages),
        key_exchanges=build_key_exchanges(messages),
        updated_at=now.isoformat(),
    )


def merge_file_resources(
    files: list[FileAccess],
    file_ops: FileOperations | None,
    now: datetime,
) -> list[CheckpointFile]:
    """Combine state access records with a file-op summary, scored and sorted."""
    merged: dict[str, FileAccess] = {f.path: f.model_copy() for f in files}
    now_iso = now.isoformat()
    if file_ops:
        for path in sorted(file_ops.read):
            if path not in merged:
                merged[path] = FileAccess(path=path, last_accessed=now_iso, kind="read")
        for path in sorted(file_ops.modified):
            if path in merged:
                merged[path].kind = "modified"
            else:
                merged[path] = FileAccess(path=path, last_accessed=now_iso, kind="modified")

    scored = [
        CheckpointFile(
            path=f.path,
            access_count=f.access_count,
            kind=f.kind,
            score=round(score_file_access(f, now), 2),
        )
        for f in merged.values()
    ]
    return sorted(scored, key=lambda f: f.score, reverse=True)


def build_checkpoint(
    state: StateSnapshot,
    gauge: GaugeResult,
    messages: list[dict],
    session: SessionContext,
    trigger: CheckpointTrigger,
    options: BuildOptions | None = None,
) -> Checkpoint:
    """Assemble a checkpoint; ``checkpoint_id`` is left for the store."""
    options = options or BuildOptions()
    now = options.now or utc_now()
    snapshot = options.snapshot

    if snapshot and snapshot.topic.strip():
        topic = snapshot.topic
    else:
        topic = extract_topic(messages) or UNKNOWN_TOPIC

    if snapshot and snapshot.summary.strip():
        summary = snapshot.summary
    else:
        summary = build_thread_summary(messages)

    key_exchanges = build_key_exchanges(messages)
    if not key_exchanges and snapshot:
        key_exchanges = list(snapshot.key_exchanges)
    if not key_exchanges:
        key_exchanges = list(state.thread[-MAX_KEY_EXCHANGES:])

    return Checkpoint(
        meta=CheckpointMeta(
            session_key=session.session_key,
            created_at=now.isoformat(),
            trigger=trigger,
            compaction_count=options.compaction_count,
            token_usage=TokenUsage(
                input_tokens=gauge.input_tokens,
                context_window=gauge.context_window,
                utilization=gauge.utilization,
            ),
            channel=extract_channel(session.session_key),
            agent_id=session.agent_id,
        ),
        working=WorkingState(
            topic=topic,
            status="in_progress",
            interrupted=options.is_split_turn,
            last_tool_call=session.last_tool_call,
            next_action="",
        ),
        decisions=[
            CheckpointDecision(id=d.id or f"d{i + 1}", what=d.what, when=d.when)
            for i, d in enumerate(state.decisions)
        ],
        resources=CheckpointResources(
            files=merge_file_resources(state.resources.files, options.file_ops, now),
            tools_used=list(state.resources.tools_used),
        ),
        thread=CheckpointThread(summary=summary, key_exchanges=key_exchanges),
        open_items=list(state.open_items),
        learnings=[entry.text for entry in state.learnings],
    )
