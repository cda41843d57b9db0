"""Tests for the per-turn host hooks."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from contextkeeper.agent.checkpoint import Checkpoint, CheckpointMeta, TokenUsage
from contextkeeper.agent.compactor import FALLBACK_SUMMARY, CompactionPreparation
from contextkeeper.agent.enrichment import CheckpointEnrichment
from contextkeeper.agent.gauge import ContextUsage
from contextkeeper.agent.learnings import read_cross_session_learnings
from contextkeeper.agent.manager import ContextManager
from contextkeeper.agent.summarizer import LLMEnricher, LLMSummarizer
from contextkeeper.agent.types import FileOperations
from contextkeeper.config.schema import CompactionConfig, Config

SESSION = "agent:main:telegram:123"

PROPOSAL = "\n".join([
    "Here is how I would lay out the storage for cross-session memory. " * 4,
    "Going with the per-agent file to store learnings.",
    "- [ ] add CLI command for listing learnings",
    "**Gotcha**: YAML quotes timestamps unless they are strings",
    "The rest of the design keeps the state files exactly as they are today. " * 3,
])


@pytest.fixture
def config(tmp_path):
    return Config(state_dir=str(tmp_path))


@pytest.fixture
def manager(config):
    return ContextManager(config)


@pytest.fixture
def session(manager):
    return manager.new_session(SESSION)


def _seed_checkpoint(manager, session, input_tokens=50_000):
    cp = Checkpoint(
        meta=CheckpointMeta(
            session_key=SESSION,
            trigger="compaction",
            compaction_count=1,
            token_usage=TokenUsage(input_tokens=input_tokens, context_window=200_000, utilization=0.25),
        ),
    )
    cp.working.topic = "Seeded topic"
    return manager.checkpoint_store(session).write(cp)


def _summarizer(reply="SUMMARY"):
    summarizer = AsyncMock()
    summarizer.summarize = AsyncMock(return_value=reply)
    return summarizer


def _enricher(enrichment=None):
    enricher = AsyncMock()
    enricher.enrich = AsyncMock(return_value=enrichment)
    return enricher


def _preparation(tokens_before=150_000, **kwargs):
    return CompactionPreparation(
        messages_to_summarize=[
            {"role": "user", "content": "Implement the checkpoint store"},
            {"role": "assistant", "content": "Done, the store writes YAML."},
        ],
        tokens_before=tokens_before,
        **kwargs,
    )


# ── construction ────────────────────────────────────────────────


class TestConstruction:
    def test_new_session_uses_config(self, manager, tmp_path):
        session = manager.new_session(SESSION)
        assert session.state_dir == tmp_path
        assert session.context_window_tokens == 200_000
        assert session.agent_id == "main"

    def test_from_provider_wires_collaborators(self, config):
        manager = ContextManager.from_provider(config, MagicMock())
        assert isinstance(manager.summarizer, LLMSummarizer)
        assert isinstance(manager.enricher, LLMEnricher)

    def test_from_provider_without_enrichment(self, tmp_path):
        config = Config(state_dir=str(tmp_path), compaction=CompactionConfig(enrichment_enabled=False))
        manager = ContextManager.from_provider(config, MagicMock())
        assert manager.enricher is None


# ── on_context ──────────────────────────────────────────────────


class TestOnContext:
    def test_resume_injected_on_first_call_only(self, manager, session):
        _seed_checkpoint(manager, session)
        messages = [{"role": "user", "content": "hi"}]

        first = manager.on_context(session, messages)
        assert "[Session resume" in first.resume_text
        assert "Working on: Seeded topic" in first.resume_text
        assert session.feedback.checkpoint_injected is True

        second = manager.on_context(session, messages)
        assert second.resume_text is None

    def test_no_resume_without_checkpoint(self, manager, session):
        result = manager.on_context(session, [{"role": "user", "content": "hi"}])
        assert result.resume_text is None
        assert session.feedback.checkpoint_injected is False

    def test_initializes_state_dir(self, manager, session):
        manager.on_context(session, [])
        assert session.initialized
        assert (manager.state_store(session).dir / "decisions.json").exists()

    def test_low_usage_leaves_messages_alone(self, manager, session):
        messages = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
        result = manager.on_context(session, messages, ContextUsage(tokens=20_000, context_window=200_000))
        assert result.messages is messages
        assert result.checkpoint is None
        assert result.gauge.utilization == pytest.approx(0.1)

    def test_inject_threshold_appends_gauge_line(self, manager, session):
        messages = [{"role": "user", "content": "hi"}]
        result = manager.on_context(session, messages, ContextUsage(tokens=150_000, context_window=200_000))
        assert result.checkpoint is None
        assert result.messages[-1] == {"role": "user", "content": "[Context: 75% | 150k/200k tokens]"}
        assert len(messages) == 1

    def test_checkpoint_threshold_writes_auto_checkpoint(self, manager, session):
        store = manager.state_store(session)
        store.init()
        store.append_decision("Use YAML for checkpoints")
        messages = [
            {"role": "user", "content": "Build the checkpoint store"},
            {"role": "assistant", "content": "Working on it."},
        ]

        result = manager.on_context(session, messages, ContextUsage(tokens=170_000, context_window=200_000))

        assert result.checkpoint.written is True
        assert result.checkpoint.checkpoint_id == "cp_001"
        assert result.messages[-1]["content"] == "[Context: 85% | 170k/200k tokens | Checkpoint saved]"

        cp = manager.checkpoint_store(session).read_latest()
        assert cp.meta.trigger == "auto-80pct"
        assert cp.meta.compaction_count == 0
        assert cp.working.topic == "Build the checkpoint store"
        assert [d.what for d in cp.decisions] == ["Use YAML for checkpoints"]
        # working memory keeps accumulating until compaction
        assert [d.what for d in store.read_decisions()] == ["Use YAML for checkpoints"]

    def test_auto_checkpoint_keeps_compaction_count(self, manager, session):
        _seed_checkpoint(manager, session)
        manager.on_context(session, [{"role": "user", "content": "go"}], ContextUsage(percent=90))
        assert manager.checkpoint_store(session).read_latest().meta.compaction_count == 1

    def test_repeated_high_usage_skips_duplicate_write(self, manager, session):
        usage = ContextUsage(tokens=170_000, context_window=200_000)
        messages = [{"role": "user", "content": "go"}]
        manager.on_context(session, messages, usage)
        result = manager.on_context(session, messages, usage)
        assert result.checkpoint.written is False
        assert result.messages[-1]["content"] == "[Context: 85% | 170k/200k tokens]"

    def test_thread_snapshot_written(self, manager, session):
        manager.on_context(session, [{"role": "user", "content": "Refactor the gauge"}])
        snapshot = manager.state_store(session).read_thread_snapshot()
        assert snapshot.topic == "Refactor the gauge"

    def test_captures_confirmed_decision(self, manager, session):
        messages = [
            {"role": "user", "content": "Where should learnings live?"},
            {"role": "assistant", "content": PROPOSAL},
            {"role": "user", "content": "yes"},
        ]
        manager.on_context(session, messages)
        state = manager.state_store(session).read_all()
        assert [d.what for d in state.decisions] == ["Going with the per-agent file to store learnings."]
        assert state.open_items == ["- [ ] add CLI command for listing learnings"]
        assert [entry.text for entry in state.learnings] == [
            "**Gotcha**: YAML quotes timestamps unless they are strings"
        ]

    def test_synthetic_user_line_does_not_confirm(self, manager, session):
        messages = [
            {"role": "user", "content": "Where should learnings live?"},
            {"role": "assistant", "content": PROPOSAL},
            {"role": "user", "content": "System: ok"},
        ]
        manager.on_context(session, messages)
        assert manager.state_store(session).read_decisions() == []

    def test_confirmation_found_behind_gauge_line(self, manager, session):
        messages = [
            {"role": "user", "content": "Where should learnings live?"},
            {"role": "assistant", "content": PROPOSAL},
            {"role": "user", "content": "yes"},
            {"role": "user", "content": "[Context: 75% | 150k/200k tokens]"},
        ]
        manager.on_context(session, messages)
        decisions = manager.state_store(session).read_decisions()
        assert [d.what for d in decisions] == ["Going with the per-agent file to store learnings."]

    def test_no_decision_without_confirmation(self, manager, session):
        messages = [
            {"role": "user", "content": "Where should learnings live?"},
            {"role": "assistant", "content": PROPOSAL},
            {"role": "user", "content": "Could you explain in more detail why a per-agent file beats SQLite?"},
        ]
        manager.on_context(session, messages)
        state = manager.state_store(session).read_all()
        assert state.decisions == []
        assert len(state.open_items) == 1


# ── on_tool_result ──────────────────────────────────────────────


class TestOnToolResult:
    def test_records_tool_file_and_last_call(self, manager, session):
        manager.on_tool_result(session, "write", {"path": "src/app.py", "content": "print()"})

        store = manager.state_store(session)
        resources = store.read_resources()
        assert resources.tools_used == ["write"]
        assert resources.files[0].path == "src/app.py"
        assert resources.files[0].kind == "modified"
        assert session.last_tool_call.name == "write"
        assert session.last_tool_call.params_summary == "path=src/app.py"
        assert store.read_last_tool_call() == session.last_tool_call

    def test_read_does_not_downgrade(self, manager, session):
        manager.on_tool_result(session, "edit", {"file_path": "a.py"})
        manager.on_tool_result(session, "read", {"file_path": "a.py"})
        files = manager.state_store(session).read_resources().files
        assert files[0].access_count == 2
        assert files[0].kind == "modified"

    def test_tool_without_path(self, manager, session):
        manager.on_tool_result(session, "exec", {"command": "pytest -q"})
        resources = manager.state_store(session).read_resources()
        assert resources.files == []
        assert session.last_tool_call.params_summary == "command=pytest -q"

    def test_last_call_restored_for_new_session_object(self, manager, session):
        manager.on_tool_result(session, "exec", {"command": "make"})
        fresh = manager.new_session(SESSION)
        manager.on_context(fresh, [])
        assert fresh.last_tool_call.name == "exec"


# ── on_message_end ──────────────────────────────────────────────


class TestOnMessageEnd:
    def test_thread_fragments(self, manager, session):
        manager.on_message_end(session, {"role": "user", "content": "Please add tests"})
        manager.on_message_end(session, {"role": "assistant", "content": "a" * 300})
        thread = manager.state_store(session).read_thread()
        assert [t.role for t in thread] == ["user", "agent"]
        assert thread[0].gist == "Please add tests"
        assert len(thread[1].gist) == 120

    def test_synthetic_user_messages_ignored(self, manager, session):
        manager.on_message_end(session, {"role": "user", "content": "[Context: 85% | 170k/200k tokens]"})
        manager.on_message_end(session, {"role": "user", "content": '<checkpoint-data source="context-manager">'})
        manager.on_message_end(session, {"role": "tool", "content": "ok"})
        assert manager.state_store(session).read_thread() == []

    def test_feedback_counted_after_injection(self, manager, session):
        manager.on_message_end(session, {"role": "assistant", "content": "Per the checkpoint, next is tests."})
        assert session.feedback.references_detected == 0

        session.feedback.checkpoint_injected = True
        manager.on_message_end(session, {"role": "assistant", "content": "Per the checkpoint, next is tests."})
        manager.on_message_end(session, {"role": "assistant", "content": "In the last session we chose YAML."})
        assert session.feedback.references_detected == 2
        assert session.feedback.sections_referenced == ["checkpoint", "last session"]


# ── before_compact ──────────────────────────────────────────────


class TestBeforeCompact:
    def _seed_state(self, manager, session):
        store = manager.state_store(session)
        store.init()
        store.append_decision("Use YAML for checkpoints")
        store.append_learning("**Gotcha**: YAML quotes timestamps")
        manager.on_tool_result(session, "write", {"path": "src/store.py"})
        return store

    @pytest.mark.asyncio
    async def test_full_cycle(self, config, tmp_path):
        summarizer = _summarizer()
        enricher = _enricher(CheckpointEnrichment(next_action="Write the CLI tests"))
        manager = ContextManager(config, summarizer=summarizer, enricher=enricher)
        session = manager.new_session(SESSION)
        store = self._seed_state(manager, session)

        outcome = await manager.before_compact(session, _preparation())

        assert outcome.checkpoint.written is True
        assert outcome.checkpoint.checkpoint_id == "cp_001"
        assert "SUMMARY" in outcome.result.summary
        assert outcome.result.used_fallback is False
        summarizer.summarize.assert_awaited()
        enricher.enrich.assert_awaited_once()

        cp = manager.checkpoint_store(session).read_latest()
        assert cp.meta.trigger == "compaction"
        assert cp.meta.compaction_count == 1
        assert cp.meta.enrichment == "llm"
        assert cp.working.next_action == "Write the CLI tests"
        assert cp.working.last_tool_call.name == "write"
        assert [d.what for d in cp.decisions] == ["Use YAML for checkpoints"]
        assert [f.path for f in cp.resources.files] == ["src/store.py"]

        assert "[Post-compaction checkpoint restore]" in outcome.restore_text
        assert "Next action: Write the CLI tests" in outcome.restore_text
        assert session.feedback.checkpoint_injected is True

        learnings = read_cross_session_learnings(tmp_path, SESSION).learnings
        assert [entry.text for entry in learnings] == ["**Gotcha**: YAML quotes timestamps"]
        assert learnings[0].last_checkpoint_id == "cp_001"

        assert store.read_all().is_empty
        assert session.last_tool_call is None

    @pytest.mark.asyncio
    async def test_compaction_count_increments(self, config):
        manager = ContextManager(config, summarizer=_summarizer())
        session = manager.new_session(SESSION)

        await manager.before_compact(session, _preparation(tokens_before=100_000))
        await manager.before_compact(session, _preparation(tokens_before=150_000))

        cp = manager.checkpoint_store(session).read_latest()
        assert cp.meta.checkpoint_id == "cp_002"
        assert cp.meta.previous_checkpoint == "cp_001"
        assert cp.meta.compaction_count == 2

    @pytest.mark.asyncio
    async def test_skipped_write_keeps_state(self, config, tmp_path):
        manager = ContextManager(config, summarizer=_summarizer())
        session = manager.new_session(SESSION)
        store = self._seed_state(manager, session)

        await manager.before_compact(session, _preparation())
        store.append_decision("Keep the pointer file")
        store.append_learning("**Gotcha**: YAML quotes timestamps")

        outcome = await manager.before_compact(session, _preparation())

        assert outcome.checkpoint.written is False
        assert outcome.checkpoint.checkpoint_id == "cp_001"
        assert "[Post-compaction checkpoint restore]" in outcome.restore_text
        assert [d.what for d in store.read_decisions()] == ["Keep the pointer file"]
        learnings = read_cross_session_learnings(tmp_path, SESSION).learnings
        assert learnings[0].promotion_count == 1

    @pytest.mark.asyncio
    async def test_enrichment_failure_keeps_heuristic_checkpoint(self, config):
        enricher = AsyncMock()
        enricher.enrich = AsyncMock(side_effect=RuntimeError("model down"))
        manager = ContextManager(config, summarizer=_summarizer(), enricher=enricher)
        session = manager.new_session(SESSION)

        outcome = await manager.before_compact(session, _preparation())

        assert outcome.checkpoint.written is True
        cp = manager.checkpoint_store(session).read_latest()
        assert cp.working.next_action == ""
        assert cp.meta.enrichment != "llm"

    @pytest.mark.asyncio
    async def test_enrichment_disabled(self, tmp_path):
        config = Config(state_dir=str(tmp_path), compaction=CompactionConfig(enrichment_enabled=False))
        enricher = _enricher(CheckpointEnrichment(next_action="ignored"))
        manager = ContextManager(config, summarizer=_summarizer(), enricher=enricher)

        await manager.before_compact(manager.new_session(SESSION), _preparation())

        enricher.enrich.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_checkpoint_survives_summarizer_failure(self, config):
        summarizer = AsyncMock()
        summarizer.summarize = AsyncMock(side_effect=RuntimeError("rate limited"))
        manager = ContextManager(config, summarizer=summarizer)
        session = manager.new_session(SESSION)

        outcome = await manager.before_compact(session, _preparation())

        assert outcome.result.used_fallback is True
        assert outcome.result.summary.startswith(FALLBACK_SUMMARY)
        assert outcome.checkpoint.written is True
        assert outcome.restore_text is not None

    @pytest.mark.asyncio
    async def test_without_summarizer_uses_fallback(self, manager, session):
        prep = _preparation(file_ops=FileOperations(read={"a.py", "b.py"}, edited={"b.py"}))

        outcome = await manager.before_compact(session, prep)

        assert outcome.result.used_fallback is True
        assert outcome.result.summary.startswith(FALLBACK_SUMMARY)
        assert outcome.result.read_files == ["a.py"]
        assert outcome.result.modified_files == ["b.py"]
        assert "<modified-files>" in outcome.result.summary

    @pytest.mark.asyncio
    async def test_split_turn_marks_interrupted(self, manager, session):
        prep = _preparation(
            is_split_turn=True,
            turn_prefix_messages=[{"role": "user", "content": "Run the full suite"}],
        )
        await manager.before_compact(session, prep)
        assert manager.checkpoint_store(session).read_latest().working.interrupted is True

    @pytest.mark.asyncio
    async def test_synthetic_only_snapshot_does_not_mask_real_topic(self, manager, session):
        manager.on_context(session, [
            {"role": "user", "content": "This summary covers earlier work"},
            {"role": "assistant", "content": "continuing"},
        ])
        prep = CompactionPreparation(
            messages_to_summarize=[
                {"role": "user", "content": "Migrate the billing service to Postgres"},
                {"role": "assistant", "content": "Starting with the schema."},
            ],
            tokens_before=150_000,
        )

        outcome = await manager.before_compact(session, prep)

        assert "Working on: Migrate the billing service to Postgres" in outcome.restore_text
        assert "Unknown topic" not in outcome.restore_text
        assert "Thread: Session focus: Migrate the billing service to Postgres." in outcome.restore_text

    @pytest.mark.asyncio
    async def test_configured_reserve_sets_summary_budget(self, tmp_path):
        config = Config(state_dir=str(tmp_path), compaction=CompactionConfig(reserve_tokens=2048))
        summarizer = _summarizer()
        manager = ContextManager(config, summarizer=summarizer)

        await manager.before_compact(manager.new_session(SESSION), _preparation())

        assert summarizer.summarize.call_args.args[1] == 2048
