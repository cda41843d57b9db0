"""Prompts for LLM refinement of heuristic checkpoints."""

ENRICHMENT_SYSTEM_PROMPT = (
    "You are a context analyzer. Given a conversation excerpt and checkpoint state, "
    "produce a JSON object. Be extremely concise. Output ONLY valid JSON, no markdown fences."
)

ENRICHMENT_USER_TEMPLATE = """<checkpoint>
Topic: {topic}
Status: {status}

Existing decisions:
{decisions}

Open items:
{open_items}

Current thread summary:
{thread_summary}

Current key exchanges:
{key_exchanges}
</checkpoint>

<recent-messages>
{recent_messages}
</recent-messages>

Refine the existing decisions:
- REMOVE entries that are not decisions (conversational text, questions, narrative)
- Merge semantically similar entries, keeping the cleaner wording
- Rewrite each as a concise, action-oriented statement
- Add decisions from the recent messages that are missing
- Keep decisions you cannot verify as resolved

A DECISION records a choice made, an approach selected, a trade-off accepted, or a direction confirmed.

GOOD: "Use atomic rename for checkpoint rewrites", "Merge refined decisions first, then surviving heuristic ones"
BAD: "You're right, I overcomplicated it", "- I need to send him a plan", "Hmm, interesting"

Also refine the conversation metadata:
- topic_refined: a short, concrete topic line (never a system message, log line, or "System:" prefix)
- thread_summary_refined: 1-3 sentence narrative of what happened in this session
- key_exchanges_refined: 4-8 entries, each gist one non-empty sentence
- Rewrite rather than copy truncation artifacts from the checkpoint.

Produce JSON:
{{
  "topic_refined": "short topic line",
  "next_action": "1-2 sentences: what should happen NEXT",
  "decision_summaries": ["one clean line per decision"],
  "task_status": "in_progress|completed|blocked|waiting_for_user|abandoned",
  "open_items_refined": ["refined list, resolved items removed"],
  "thread_summary_refined": "narrative summary",
  "key_exchanges_refined": [{{"role": "user|agent", "gist": "single sentence"}}]
}}"""
