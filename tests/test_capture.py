"""Tests for heuristic capture of decisions, open items, and learnings."""

import pytest

from contextkeeper.agent.capture import (
    extract_decision_from_response,
    extract_file_path,
    extract_learnings,
    extract_open_items,
    infer_file_kind,
    prose_lines,
    should_capture_decision,
    summarize_tool_params,
)
from contextkeeper.agent.messages import extract_text, is_genuine_user_message

LONG_PROPOSAL = "Here is the plan in detail. " * 25


# ── decision extraction ─────────────────────────────────────────


class TestExtractDecision:
    def test_explicit_marker_beats_bold_structure(self):
        text = "Some intro text\n**Bold heading**\nDecision: use atomic writes for checkpoints"
        assert "use atomic writes" in extract_decision_from_response(text)

    def test_conversational_filler_rejected(self):
        assert extract_decision_from_response("You're right, I overcomplicated it. Let me simplify.") is None

    def test_code_fence_only(self):
        assert extract_decision_from_response("```python\nx = 1\ny = 2\n```") is None

    def test_fenced_marker_ignored(self):
        text = "```\nDecision: use a global lock\n```\n- use per-session paths instead"
        assert extract_decision_from_response(text) == "use per-session paths instead"

    def test_action_verb_bullet(self):
        text = "Here's what we discussed:\n- implement retry logic for failed requests\n- maybe look at other options"
        assert "implement retry logic" in extract_decision_from_response(text)

    def test_first_person_intent(self):
        text = "Some context first.\nI'll switch the store to YAML checkpoints."
        assert extract_decision_from_response(text) == "I'll switch the store to YAML checkpoints."

    def test_lower_tier_wins_regardless_of_position(self):
        text = "- add a retry wrapper\nGoing with the per-agent file to store learnings."
        assert extract_decision_from_response(text) == "Going with the per-agent file to store learnings."

    def test_questions_rejected(self):
        assert extract_decision_from_response("Should we use Redis for caching?") is None

    def test_truncated(self):
        result = extract_decision_from_response("Decision: " + "x" * 300)
        assert len(result) <= 200
        assert result.endswith("...")


class TestShouldCaptureDecision:
    def test_short_confirmation_after_long_proposal(self):
        assert should_capture_decision("yes", LONG_PROPOSAL) is True

    def test_structural_confirmation_any_language(self):
        assert should_capture_decision("👍 хорошо", LONG_PROPOSAL) is True

    def test_keyword_confirmation(self):
        assert should_capture_decision("sounds good, go ahead with that", LONG_PROPOSAL) is True

    def test_short_question_is_not_confirmation(self):
        assert should_capture_decision("why?", LONG_PROPOSAL) is False

    def test_long_reply(self):
        assert should_capture_decision("yes " + "but " * 20, LONG_PROPOSAL) is False

    def test_short_proposal(self):
        assert should_capture_decision("yes", "Use YAML.") is False

    def test_empty_agent_text(self):
        assert should_capture_decision("yes", "") is False


# ── open items and learnings ────────────────────────────────────


class TestOpenItems:
    def test_checkbox_and_keyword_bullets(self):
        text = (
            "Progress update:\n"
            "- [ ] add CLI prune command\n"
            "- TODO: document the pointer format\n"
            "- finished the store\n"
            "I still need to check the timeouts\n"
        )
        assert extract_open_items(text) == ["- [ ] add CLI prune command", "- TODO: document the pointer format"]

    def test_numbered_next_step(self):
        assert extract_open_items("1. Next step is wiring enrichment") == ["1. Next step is wiring enrichment"]

    def test_fenced_lines_ignored(self):
        assert extract_open_items("```\n- TODO: inside code\n```") == []


class TestLearnings:
    def test_bold_colon(self):
        assert extract_learnings("**Gotcha**: the API paginates at 50") == ["**Gotcha**: the API paginates at 50"]

    def test_insight_on_capitalized_line(self):
        assert extract_learnings("Turns out the cache was stale") == ["Turns out the cache was stale"]

    def test_keyword_with_colon_on_bullet(self):
        assert extract_learnings("- note: YAML quotes ISO timestamps") == ["- note: YAML quotes ISO timestamps"]

    def test_note_without_colon_is_not_learning(self):
        assert extract_learnings("- a note about nothing") == []

    def test_unstructured_line_ignored(self):
        assert extract_learnings("turns out nothing") == []


class TestProseLines:
    def test_skips_fenced_regions(self):
        text = "a\n```py\nb\n```\nc"
        assert list(prose_lines(text)) == ["a", "c"]


# ── tool params ─────────────────────────────────────────────────


class TestToolParams:
    def test_safe_key_preferred(self):
        assert summarize_tool_params({"content": "secret body", "path": "/etc/app.conf"}) == "path=/etc/app.conf"

    def test_falls_back_to_key_names(self):
        assert summarize_tool_params({"content": "x", "mode": "w", "a": 1, "b": 2}) == "content, mode, a"

    def test_empty(self):
        assert summarize_tool_params(None) == ""

    def test_long_value_truncated(self):
        assert len(summarize_tool_params({"command": "x" * 500})) <= len("command=") + 80

    def test_file_path_keys(self):
        assert extract_file_path({"path": "a.py"}) == "a.py"
        assert extract_file_path({"file_path": "b.py"}) == "b.py"
        assert extract_file_path({"query": "x"}) is None
        assert extract_file_path(None) is None

    @pytest.mark.parametrize("tool,kind", [
        ("read", "read"), ("grep", "read"), ("find", "read"), ("ls", "read"),
        ("write", "modified"), ("edit", "modified"),
    ])
    def test_infer_kind(self, tool, kind):
        assert infer_file_kind(tool) == kind


# ── message helpers ─────────────────────────────────────────────


class TestGenuineUserMessage:
    def test_plain_user(self):
        assert is_genuine_user_message({"role": "user", "content": "Fix the bug in auth.py"}) is True

    def test_checkpoint_injection(self):
        msg = {"role": "user", "content": '<checkpoint-data source="context-manager" trust="data-only">\n...'}
        assert is_genuine_user_message(msg) is False

    def test_compaction_summary(self):
        msg = {"role": "user", "content": "The conversation history before this point was compacted."}
        assert is_genuine_user_message(msg) is False

    def test_token_gauge(self):
        assert is_genuine_user_message({"role": "user", "content": "[Context: 72% | 144k/200k tokens]"}) is False

    def test_assistant(self):
        assert is_genuine_user_message({"role": "assistant", "content": "hello"}) is False


class TestExtractText:
    def test_tool_blocks_collapse(self):
        msg = {"role": "assistant", "content": [{"type": "tool_use", "name": "exec", "input": {}}]}
        assert extract_text(msg) == "[called exec]"

    def test_empty(self):
        assert extract_text({"role": "assistant", "content": None}) == ""
