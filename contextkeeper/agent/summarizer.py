"""Collaborator contracts for summarization and enrichment, plus LLM-backed implementations."""

import json
from typing import Protocol

from contextkeeper.agent.checkpoint import Checkpoint
from contextkeeper.agent.enrichment import (
    CheckpointEnrichment,
    build_enrichment_prompt,
    parse_enrichment_response,
)
from contextkeeper.agent.errors import EnrichmentError, SummarizationError
from contextkeeper.prompts.compaction import COMPACTION_SYSTEM_PROMPT, CUSTOM_INSTRUCTIONS_HEADER
from contextkeeper.providers.base import LLMProvider


class Summarizer(Protocol):
    async def summarize(
        self,
        messages: list[dict],
        budget: int,
        previous_summary: str | None = None,
        custom_instructions: str | None = None,
    ) -> str:
        """Summarize *messages* in at most *budget* tokens; raise on failure."""
        ...


class Enricher(Protocol):
    async def enrich(
        self,
        checkpoint: Checkpoint,
        recent_messages: list[dict],
    ) -> CheckpointEnrichment | None:
        ...


def format_summary_input(messages: list[dict], previous_summary: str | None = None) -> str:
    """Render messages as a plain transcript for the summarizer."""
    parts = []

    if previous_summary:
        parts.append("=== PREVIOUS SUMMARY ===\n" + previous_summary + "\n")

    parts.append("=== CONVERSATION ===\n")
    for msg in messages:
        role = msg.get("role", "")
        content = msg.get("content", "") or ""
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False, default=str)

        if role == "user":
            parts.append(f"[user] {content}\n")
        elif role == "assistant":
            for tc in msg.get("tool_calls") or []:
                fn = tc.get("function", {})
                args = fn.get("arguments", "")
                if isinstance(args, dict):
                    args = json.dumps(args)
                parts.append(f"[tool_call] {fn.get('name', '')}({args})\n")
            if content:
                parts.append(f"[assistant] {content}\n")
        elif role == "tool":
            marker = " error" if msg.get("is_error") else ""
            parts.append(f"[tool_response:{msg.get('name', '')}{marker}] {content}\n")

    return "".join(parts)


class LLMSummarizer:
    """Summarizer over an LLMProvider."""

    def __init__(self, provider: LLMProvider, model: str | None = None, temperature: float = 0.3):
        self.provider = provider
        self.model = model
        self.temperature = temperature

    async def summarize(
        self,
        messages: list[dict],
        budget: int,
        previous_summary: str | None = None,
        custom_instructions: str | None = None,
    ) -> str:
        system = COMPACTION_SYSTEM_PROMPT
        if custom_instructions:
            system = f"{system}\n\n{CUSTOM_INSTRUCTIONS_HEADER}\n{custom_instructions}"

        response = await self.provider.chat(
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": format_summary_input(messages, previous_summary)},
            ],
            model=self.model,
            max_tokens=budget,
            temperature=self.temperature,
        )
        if response.is_error:
            raise SummarizationError(response.content or "summarization failed")
        if not response.content or not response.content.strip():
            raise SummarizationError("empty summary from LLM")
        return response.content.strip()


class LLMEnricher:
    """Enricher over an LLMProvider; returns None when the reply is unusable."""

    def __init__(self, provider: LLMProvider, model: str | None = None, max_tokens: int = 800):
        self.provider = provider
        self.model = model
        self.max_tokens = max_tokens

    async def enrich(self, checkpoint: Checkpoint, recent_messages: list[dict]) -> CheckpointEnrichment | None:
        system, user = build_enrichment_prompt(checkpoint, recent_messages)
        response = await self.provider.chat(
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0.0,
        )
        if response.is_error:
            raise EnrichmentError(response.content or "enrichment failed")
        if not response.content:
            return None
        return parse_enrichment_response(response.content)
