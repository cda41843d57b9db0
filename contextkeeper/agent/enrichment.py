"""Merge an optional LLM refinement into a heuristic checkpoint.

Refinement is applied field by field: whatever the model got right is
kept, whatever it left empty falls back to the heuristic value. A failed
or unusable refinement leaves the checkpoint untouched.
"""

import asyncio
import json
import re
from typing import TYPE_CHECKING, Literal

from loguru import logger
from pydantic import BaseModel, Field

from contextkeeper.agent.checkpoint import Checkpoint, CheckpointDecision
from contextkeeper.agent.dedup import dedupe, is_semantic_duplicate
from contextkeeper.agent.messages import extract_text
from contextkeeper.agent.types import KeyExchange
from contextkeeper.prompts.enrichment import ENRICHMENT_SYSTEM_PROMPT, ENRICHMENT_USER_TEMPLATE
from contextkeeper.utils.helpers import truncate

if TYPE_CHECKING:
    from contextkeeper.agent.summarizer import Enricher

MAX_TOPIC_CHARS = 200
MAX_THREAD_SUMMARY_CHARS = 600
MAX_GIST_CHARS = 200
MAX_KEY_EXCHANGES = 8
RECENT_MESSAGE_COUNT = 16
RECENT_MESSAGE_CHARS = 300

TaskStatus = Literal["in_progress", "completed", "blocked", "waiting_for_user", "abandoned"]
VALID_TASK_STATUSES = frozenset({"in_progress", "completed", "blocked", "waiting_for_user", "abandoned"})

_OPEN_FENCE = re.compile(r"^\s*```(?:json)?\s*\n?")
_CLOSE_FENCE = re.compile(r"\n?```\s*$")


class CheckpointEnrichment(BaseModel):
    """Partial refinement; every field is independently optional."""
    topic_refined: str = ""
    next_action: str = ""
    task_status: TaskStatus | None = None
    decision_summaries: list[str] = Field(default_factory=list)
    open_items_refined: list[str] = Field(default_factory=list)
    thread_summary_refined: str = ""
    key_exchanges_refined: list[KeyExchange] = Field(default_factory=list)

    @property
    def has_content(self) -> bool:
        return bool(
            self.topic_refined or self.next_action or self.task_status
            or self.decision_summaries or self.open_items_refined
            or self.thread_summary_refined or self.key_exchanges_refined
        )


def build_enrichment_prompt(checkpoint: Checkpoint, messages: list[dict]) -> tuple[str, str]:
    """Return (system prompt, user prompt) for the enrichment call."""
    decisions = "\n".join(f"- {d.what}" for d in checkpoint.decisions) or "(none)"
    open_items = "\n".join(f"- {item}" for item in checkpoint.open_items) or "(none)"
    exchanges = "\n".join(
        f"- {x.role}: {x.gist}" for x in checkpoint.thread.key_exchanges
    ) or "(none)"

    recent = []
    for msg in messages[-RECENT_MESSAGE_COUNT:]:
        content = msg.get("content")
        text = content if isinstance(content, str) else extract_text(msg) or json.dumps(content, default=str)
        recent.append(f"{msg.get('role', 'unknown')}: {text[:RECENT_MESSAGE_CHARS]}")

    user_prompt = ENRICHMENT_USER_TEMPLATE.format(
        topic=checkpoint.working.topic,
        status=checkpoint.working.status,
        decisions=decisions,
        open_items=open_items,
        thread_summary=checkpoint.thread.summary,
        key_exchanges=exchanges,
        recent_messages="\n".join(recent),
    )
    return ENRICHMENT_SYSTEM_PROMPT, user_prompt


def _clean_strings(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [s.strip() for s in value if isinstance(s, str) and s.strip()]


def _clean_str(value: object) -> str:
    return value.strip() if isinstance(value, str) else ""


def parse_enrichment_response(text: str) -> CheckpointEnrichment | None:
    """Parse the model's JSON, validating each field on its own.

    Returns None for unparsable JSON or when no field carries content.
    """
    stripped = _CLOSE_FENCE.sub("", _OPEN_FENCE.sub("", text.strip(), count=1), count=1)
    try:
        parsed = json.loads(stripped)
    except json.JSONDecodeError:
        logger.warning("Failed to parse enrichment response as JSON")
        return None
    if not isinstance(parsed, dict):
        logger.warning("Enrichment response is not a JSON object")
        return None

    status = parsed.get("task_status")
    exchanges = []
    raw_exchanges = parsed.get("key_exchanges_refined")
    if isinstance(raw_exchanges, list):
        for entry in raw_exchanges:
            if not isinstance(entry, dict):
                continue
            gist = _clean_str(entry.get("gist"))
            if gist:
                role = "agent" if entry.get("role") == "agent" else "user"
                exchanges.append(KeyExchange(role=role, gist=gist))

    enrichment = CheckpointEnrichment(
        topic_refined=_clean_str(parsed.get("topic_refined")),
        next_action=_clean_str(parsed.get("next_action")),
        task_status=status if status in VALID_TASK_STATUSES else None,
        decision_summaries=_clean_strings(parsed.get("decision_summaries")),
        open_items_refined=_clean_strings(parsed.get("open_items_refined")),
        thread_summary_refined=_clean_str(parsed.get("thread_summary_refined")),
        key_exchanges_refined=exchanges[:MAX_KEY_EXCHANGES],
    )
    if not enrichment.has_content:
        logger.warning("Enrichment response has no usable content")
        return None
    return enrichment


def merge_refined(refined: list[str], heuristic: list[str]) -> list[str]:
    """Refined entries first, then heuristic ones no refined entry covers."""
    preserved = [h for h in heuristic if not any(is_semantic_duplicate(h, r) for r in refined)]
    return dedupe(refined + preserved)


def apply_enrichment(checkpoint: Checkpoint, enrichment: CheckpointEnrichment) -> tuple[Checkpoint, bool]:
    """Return an enriched copy of *checkpoint* and whether any field changed."""
    cp = checkpoint.model_copy(deep=True)
    applied = 0

    if enrichment.topic_refined:
        cp.working.topic = truncate(enrichment.topic_refined, MAX_TOPIC_CHARS)
        applied += 1
    if enrichment.next_action:
        cp.working.next_action = enrichment.next_action
        applied += 1
    if enrichment.task_status:
        cp.working.status = enrichment.task_status
        applied += 1
    if enrichment.thread_summary_refined:
        cp.thread.summary = truncate(enrichment.thread_summary_refined, MAX_THREAD_SUMMARY_CHARS)
        applied += 1

    exchanges = [
        KeyExchange(role=x.role, gist=truncate(x.gist, MAX_GIST_CHARS))
        for x in enrichment.key_exchanges_refined
        if x.gist.strip()
    ][:MAX_KEY_EXCHANGES]
    if exchanges:
        cp.thread.key_exchanges = exchanges
        applied += 1

    if enrichment.decision_summaries:
        merged = merge_refined(enrichment.decision_summaries, [d.what for d in cp.decisions])
        cp.decisions = [
            CheckpointDecision(id=f"d{i + 1}", what=what, when=cp.meta.created_at)
            for i, what in enumerate(merged)
        ]
        applied += 1

    if enrichment.open_items_refined:
        cp.open_items = merge_refined(enrichment.open_items_refined, cp.open_items)
        applied += 1
    else:
        cp.open_items = dedupe(cp.open_items)

    if applied:
        cp.meta.enrichment = "llm"
    return cp, applied > 0


async def enrich_checkpoint(
    enricher: "Enricher",
    checkpoint: Checkpoint,
    messages: list[dict],
    timeout_s: float = 30.0,
) -> tuple[Checkpoint, bool]:
    """Ask *enricher* for a refinement and merge it.

    Never raises on collaborator failure or timeout; the heuristic
    checkpoint comes back unchanged. Cancellation propagates.
    """
    try:
        enrichment = await asyncio.wait_for(enricher.enrich(checkpoint, messages), timeout=timeout_s)
    except Exception as e:
        logger.warning(f"LLM enrichment failed, keeping heuristic checkpoint: {e}")
        return checkpoint, False
    if enrichment is None:
        return checkpoint, False
    return apply_enrichment(checkpoint, enrichment)
