"""Compaction budgeter: fit history into budget and summarize it in stages."""

import asyncio
import re
from dataclasses import dataclass, field

from loguru import logger

from contextkeeper.agent.messages import extract_text
from contextkeeper.agent.summarizer import Summarizer
from contextkeeper.agent.tokens import estimate_message_tokens, estimate_messages_tokens
from contextkeeper.agent.types import FileOperations
from contextkeeper.utils.helpers import truncate

BASE_CHUNK_RATIO = 0.4
MIN_CHUNK_RATIO = 0.15
ESTIMATE_INFLATION = 1.2  # token estimates run low; inflate before budgeting
SUMMARIZATION_OVERHEAD_TOKENS = 4096  # system prompt, prior summary, reasoning headroom
DEFAULT_RESERVE_TOKENS = 16384
DEFAULT_PARTS = 2
DEFAULT_SUMMARY_FALLBACK = "No prior history."

FALLBACK_SUMMARY = "Summary unavailable due to context limits. Older messages were truncated."
TURN_PREFIX_INSTRUCTIONS = (
    "This summary covers the prefix of a split turn. Focus on the original request,"
    " early progress, and any details needed to understand the retained suffix."
)
MAX_TOOL_FAILURES = 8
MAX_TOOL_FAILURE_CHARS = 240

_WHITESPACE = re.compile(r"\s+")


@dataclass
class CompactionPreparation:
    """What the host wants summarized."""
    messages_to_summarize: list[dict] = field(default_factory=list)
    turn_prefix_messages: list[dict] = field(default_factory=list)
    is_split_turn: bool = False
    previous_summary: str | None = None
    file_ops: FileOperations = field(default_factory=FileOperations)
    reserve_tokens: int | None = None  # None: the compactor's configured reserve
    tokens_before: int | None = None


@dataclass
class CompactionResult:
    summary: str
    read_files: list[str] = field(default_factory=list)
    modified_files: list[str] = field(default_factory=list)
    used_fallback: bool = False
    dropped_chunks: int = 0
    dropped_messages: int = 0


@dataclass
class PruneResult:
    messages: list[dict]
    dropped_messages_list: list[dict] = field(default_factory=list)
    dropped_chunks: int = 0
    dropped_messages: int = 0
    dropped_tokens: int = 0


@dataclass
class ToolFailure:
    tool_call_id: str
    tool_name: str
    summary: str
    meta: str | None = None


# ── chunking & budget arithmetic ───────────────────────────────────


def split_messages_by_token_share(messages: list[dict], parts: int = DEFAULT_PARTS) -> list[list[dict]]:
    """Split into at most *parts* ordered chunks of roughly equal token weight."""
    if not messages:
        return []
    parts = min(max(1, parts), len(messages))
    if parts <= 1:
        return [list(messages)]

    target = estimate_messages_tokens(messages) / parts
    chunks: list[list[dict]] = []
    current: list[dict] = []
    current_tokens = 0
    for msg in messages:
        tokens = estimate_message_tokens(msg)
        if len(chunks) < parts - 1 and current and current_tokens + tokens > target:
            chunks.append(current)
            current, current_tokens = [], 0
        current.append(msg)
        current_tokens += tokens
    if current:
        chunks.append(current)
    return chunks


def chunk_messages_by_max_tokens(messages: list[dict], max_tokens: int) -> list[list[dict]]:
    """Greedy ordered chunks of at most *max_tokens* (oversized messages go alone)."""
    chunks: list[list[dict]] = []
    current: list[dict] = []
    current_tokens = 0
    for msg in messages:
        tokens = estimate_message_tokens(msg)
        if current and current_tokens + tokens > max_tokens:
            chunks.append(current)
            current, current_tokens = [], 0
        current.append(msg)
        current_tokens += tokens
        if tokens > max_tokens:
            chunks.append(current)
            current, current_tokens = [], 0
    if current:
        chunks.append(current)
    return chunks


def compute_adaptive_chunk_ratio(messages: list[dict], context_window: int) -> float:
    """Shrink the chunk ratio when individual messages are large.

    Bounded to ``[MIN_CHUNK_RATIO, BASE_CHUNK_RATIO]``.
    """
    if not messages or context_window <= 0:
        return BASE_CHUNK_RATIO
    avg_tokens = estimate_messages_tokens(messages) / len(messages)
    avg_ratio = (avg_tokens * ESTIMATE_INFLATION) / context_window
    if avg_ratio > 0.1:
        reduction = min(avg_ratio * 2, BASE_CHUNK_RATIO - MIN_CHUNK_RATIO)
        return max(MIN_CHUNK_RATIO, BASE_CHUNK_RATIO - reduction)
    return BASE_CHUNK_RATIO


def is_oversized_for_summary(msg: dict, context_window: int) -> bool:
    """True when one message alone would eat more than half the window."""
    return estimate_message_tokens(msg) * ESTIMATE_INFLATION > context_window * 0.5


def drop_orphaned_tool_results(messages: list[dict]) -> tuple[list[dict], list[dict]]:
    """Remove tool results whose originating call is not in *messages*."""
    known_ids: set[str] = set()
    kept, orphans = [], []
    for msg in messages:
        if msg.get("role") == "assistant":
            for tc in msg.get("tool_calls") or []:
                if isinstance(tc, dict) and tc.get("id"):
                    known_ids.add(tc["id"])
        if msg.get("role") == "tool" and msg.get("tool_call_id") not in known_ids:
            orphans.append(msg)
            continue
        kept.append(msg)
    return kept, orphans


def prune_history_for_context_share(
    messages: list[dict],
    max_context_tokens: int,
    max_history_share: float = 0.5,
    parts: int = DEFAULT_PARTS,
) -> PruneResult:
    """Drop the oldest chunk until the rest fits ``max_context_tokens * share``."""
    budget = max(1, int(max_context_tokens * max_history_share))
    result = PruneResult(messages=list(messages))
    while result.messages and estimate_messages_tokens(result.messages) > budget:
        chunks = split_messages_by_token_share(result.messages, parts)
        if len(chunks) <= 1:
            break
        dropped, rest = chunks[0], [m for chunk in chunks[1:] for m in chunk]
        rest, orphans = drop_orphaned_tool_results(rest)
        result.dropped_chunks += 1
        result.dropped_messages += len(dropped) + len(orphans)
        result.dropped_tokens += estimate_messages_tokens(dropped)
        result.dropped_messages_list.extend(dropped + orphans)
        result.messages = rest
    return result


# ── fallback sections ──────────────────────────────────────────────


def _failure_meta(details: object) -> str | None:
    if not isinstance(details, dict):
        return None
    parts = []
    status = details.get("status")
    if isinstance(status, str) and status:
        parts.append(f"status={status}")
    exit_code = details.get("exitCode", details.get("exit_code"))
    if isinstance(exit_code, int) and not isinstance(exit_code, bool):
        parts.append(f"exitCode={exit_code}")
    return " ".join(parts) or None


def collect_tool_failures(messages: list[dict]) -> list[ToolFailure]:
    """Errored tool results, one per tool call id, in order."""
    failures = []
    seen: set[str] = set()
    for msg in messages:
        if msg.get("role") != "tool" or msg.get("is_error") is not True:
            continue
        call_id = msg.get("tool_call_id")
        if not isinstance(call_id, str) or not call_id or call_id in seen:
            continue
        seen.add(call_id)

        name = msg.get("name")
        name = name if isinstance(name, str) and name.strip() else "tool"
        meta = _failure_meta(msg.get("details"))
        text = _WHITESPACE.sub(" ", extract_text(msg)).strip()
        summary = truncate(text or ("failed" if meta else "failed (no output)"), MAX_TOOL_FAILURE_CHARS)
        failures.append(ToolFailure(tool_call_id=call_id, tool_name=name, summary=summary, meta=meta))
    return failures


def format_tool_failures_section(failures: list[ToolFailure]) -> str:
    if not failures:
        return ""
    lines = []
    for failure in failures[:MAX_TOOL_FAILURES]:
        meta = f" ({failure.meta})" if failure.meta else ""
        lines.append(f"- {failure.tool_name}{meta}: {failure.summary}")
    if len(failures) > MAX_TOOL_FAILURES:
        lines.append(f"- ...and {len(failures) - MAX_TOOL_FAILURES} more")
    return "\n\n## Tool Failures\n" + "\n".join(lines)


def compute_file_lists(file_ops: FileOperations) -> tuple[list[str], list[str]]:
    """(read-only files, modified files), both sorted."""
    modified = file_ops.modified
    read_files = sorted(p for p in file_ops.read if p not in modified)
    return read_files, sorted(modified)


def format_file_operations(read_files: list[str], modified_files: list[str]) -> str:
    sections = []
    if read_files:
        sections.append("<read-files>\n" + "\n".join(read_files) + "\n</read-files>")
    if modified_files:
        sections.append("<modified-files>\n" + "\n".join(modified_files) + "\n</modified-files>")
    if not sections:
        return ""
    return "\n\n" + "\n\n".join(sections)


# ── compactor ──────────────────────────────────────────────────────


class Compactor:
    """Drives the summarization collaborator under a hard token ceiling."""

    def __init__(
        self,
        summarizer: Summarizer,
        context_window_tokens: int,
        max_history_share: float = 0.5,
        safety_margin: float = 0.8,
        timeout_s: float = 120.0,
        reserve_tokens: int = DEFAULT_RESERVE_TOKENS,
    ):
        self.summarizer = summarizer
        self.context_window_tokens = context_window_tokens
        self.max_history_share = max_history_share
        self.safety_margin = safety_margin
        self.timeout_s = timeout_s
        self.reserve_tokens = reserve_tokens

    @property
    def history_budget(self) -> int:
        return max(1, int(self.context_window_tokens * self.max_history_share * self.safety_margin))

    async def compact(
        self,
        preparation: CompactionPreparation,
        custom_instructions: str | None = None,
    ) -> CompactionResult:
        """Summarize the prepared history, falling back to a fixed text on failure."""
        read_files, modified_files = compute_file_lists(preparation.file_ops)
        file_section = format_file_operations(read_files, modified_files)
        failures = collect_tool_failures(
            preparation.messages_to_summarize + preparation.turn_prefix_messages
        )
        failure_section = format_tool_failures_section(failures)

        messages = preparation.messages_to_summarize
        prefix = preparation.turn_prefix_messages
        budget_out = max(1, int(preparation.reserve_tokens or self.reserve_tokens))
        result = CompactionResult(summary="", read_files=read_files, modified_files=modified_files)

        try:
            dropped_summary = None
            summarizable = estimate_messages_tokens(messages) + estimate_messages_tokens(prefix)
            if summarizable > self.history_budget:
                pruned = prune_history_for_context_share(
                    messages,
                    max_context_tokens=self.context_window_tokens,
                    max_history_share=self.max_history_share * self.safety_margin,
                )
                if pruned.dropped_chunks > 0:
                    share = summarizable / self.context_window_tokens * 100
                    logger.warning(
                        f"History uses {share:.1f}% of context; dropped {pruned.dropped_chunks} "
                        f"older chunk(s) ({pruned.dropped_messages} messages) to fit budget"
                    )
                    messages = pruned.messages
                    result.dropped_chunks = pruned.dropped_chunks
                    result.dropped_messages = pruned.dropped_messages
                    dropped_summary = await self._summarize_dropped(
                        pruned.dropped_messages_list,
                        budget_out,
                        preparation.previous_summary,
                        custom_instructions,
                    )

            ratio = compute_adaptive_chunk_ratio(messages + prefix, self.context_window_tokens)
            max_chunk_tokens = max(1, int(self.context_window_tokens * ratio) - SUMMARIZATION_OVERHEAD_TOKENS)

            summary = await self.summarize_in_stages(
                messages,
                max_chunk_tokens,
                budget_out,
                previous_summary=dropped_summary or preparation.previous_summary,
                custom_instructions=custom_instructions,
            )
            if preparation.is_split_turn and prefix:
                prefix_summary = await self.summarize_in_stages(
                    prefix,
                    max_chunk_tokens,
                    budget_out,
                    custom_instructions=TURN_PREFIX_INSTRUCTIONS,
                )
                summary = f"{summary}\n\n---\n\n**Turn Context (split turn):**\n\n{prefix_summary}"
        except Exception as e:
            logger.warning(f"Compaction summarization failed; truncating history: {e}")
            result.summary = FALLBACK_SUMMARY + failure_section + file_section
            result.used_fallback = True
            return result

        logger.info(
            f"Compacted {len(messages) + len(prefix)} messages into summary ({len(summary)} chars)"
        )
        result.summary = summary + failure_section + file_section
        return result

    async def _summarize_dropped(
        self,
        dropped: list[dict],
        budget: int,
        previous_summary: str | None,
        custom_instructions: str | None,
    ) -> str | None:
        if not dropped:
            return None
        ratio = compute_adaptive_chunk_ratio(dropped, self.context_window_tokens)
        max_chunk_tokens = max(1, int(self.context_window_tokens * ratio) - SUMMARIZATION_OVERHEAD_TOKENS)
        try:
            return await self.summarize_in_stages(
                dropped,
                max_chunk_tokens,
                budget,
                previous_summary=previous_summary,
                custom_instructions=custom_instructions,
            )
        except Exception as e:
            logger.warning(f"Failed to summarize dropped messages, continuing without: {e}")
            return None

    async def summarize_in_stages(
        self,
        messages: list[dict],
        max_chunk_tokens: int,
        budget: int,
        previous_summary: str | None = None,
        custom_instructions: str | None = None,
    ) -> str:
        """Feed *messages* chunk by chunk, carrying the running summary forward."""
        if not messages:
            return previous_summary or DEFAULT_SUMMARY_FALLBACK

        prepared = [self._omit_if_oversized(m) for m in messages]
        summary = previous_summary
        for chunk in chunk_messages_by_max_tokens(prepared, max_chunk_tokens):
            summary = await asyncio.wait_for(
                self.summarizer.summarize(
                    chunk,
                    budget,
                    previous_summary=summary,
                    custom_instructions=custom_instructions,
                ),
                timeout=self.timeout_s,
            )
        return summary or DEFAULT_SUMMARY_FALLBACK

    def _omit_if_oversized(self, msg: dict) -> dict:
        if not is_oversized_for_summary(msg, self.context_window_tokens):
            return msg
        tokens_k = round(estimate_message_tokens(msg) / 1000)
        role = msg.get("role", "message")
        return {"role": "user", "content": f"[Large {role} (~{tokens_k}K tokens) omitted from summary]"}
