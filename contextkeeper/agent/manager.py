"""Host driver: the entry points a conversation loop calls each turn."""

from dataclasses import dataclass

from loguru import logger

from contextkeeper.agent.builder import BuildOptions, build_checkpoint, build_thread_snapshot
from contextkeeper.agent.capture import (
    extract_decision_from_response,
    extract_file_path,
    extract_learnings,
    extract_open_items,
    infer_file_kind,
    should_capture_decision,
    summarize_tool_params,
)
from contextkeeper.agent.checkpoint import Checkpoint, CheckpointStore, WriteResult
from contextkeeper.agent.compactor import (
    FALLBACK_SUMMARY,
    CompactionPreparation,
    CompactionResult,
    Compactor,
    collect_tool_failures,
    compute_file_lists,
    format_file_operations,
    format_tool_failures_section,
)
from contextkeeper.agent.enrichment import enrich_checkpoint
from contextkeeper.agent.errors import CheckpointWriteError
from contextkeeper.agent.gauge import ContextUsage, GaugeResult, calculate_utilization, format_gauge_line
from contextkeeper.agent.inject import read_checkpoint_for_injection, render_checkpoint_for_injection
from contextkeeper.agent.learnings import promote_learnings
from contextkeeper.agent.messages import extract_text, find_last_assistant_message, is_genuine_user_message
from contextkeeper.agent.state import StateStore
from contextkeeper.agent.summarizer import Enricher, LLMEnricher, LLMSummarizer, Summarizer
from contextkeeper.agent.types import ToolCallSummary
from contextkeeper.config.schema import Config
from contextkeeper.providers.base import LLMProvider
from contextkeeper.session.context import SessionContext
from contextkeeper.utils.helpers import truncate

MAX_FRAGMENT_CHARS = 120


@dataclass
class TurnResult:
    """What ``on_context`` hands back to the host for the next model call."""
    messages: list[dict]
    resume_text: str | None = None
    gauge: GaugeResult | None = None
    checkpoint: WriteResult | None = None


@dataclass
class CompactionOutcome:
    result: CompactionResult
    checkpoint: WriteResult | None = None
    restore_text: str | None = None


class ContextManager:
    """Keeps a session's working memory alive across context exhaustion.

    The host owns a ``SessionContext`` per session and calls:

    - ``on_context`` before every model call,
    - ``on_tool_result`` after every tool execution,
    - ``on_message_end`` when a message is finalized,
    - ``before_compact`` when history must be summarized.
    """

    def __init__(
        self,
        config: Config | None = None,
        summarizer: Summarizer | None = None,
        enricher: Enricher | None = None,
    ):
        self.config = config or Config()
        self.summarizer = summarizer
        self.enricher = enricher

    @classmethod
    def from_provider(cls, config: Config, provider: LLMProvider) -> "ContextManager":
        """Wire LLM-backed summarization and enrichment over *provider*."""
        compaction = config.compaction
        enricher = None
        if compaction.enrichment_enabled:
            enricher = LLMEnricher(provider, model=compaction.model, max_tokens=compaction.enrichment_max_tokens)
        return cls(config, summarizer=LLMSummarizer(provider, model=compaction.model), enricher=enricher)

    def new_session(self, session_key: str) -> SessionContext:
        return SessionContext(
            session_key=session_key,
            state_dir=self.config.state_path,
            context_window_tokens=self.config.context_window_tokens,
        )

    # ── stores ─────────────────────────────────────────────────────

    def state_store(self, session: SessionContext) -> StateStore:
        return StateStore(session.state_dir, session.session_key, self.config.state)

    def checkpoint_store(self, session: SessionContext) -> CheckpointStore:
        return CheckpointStore(
            session.state_dir,
            session.session_key,
            skip_delta_ratio=self.config.checkpoint.skip_delta_ratio,
        )

    def _gauge(self, session: SessionContext, usage: ContextUsage | None) -> GaugeResult:
        return calculate_utilization(
            usage,
            session.context_window_tokens,
            checkpoint_threshold=self.config.checkpoint.checkpoint_threshold,
            inject_threshold=self.config.checkpoint.inject_threshold,
        )

    def _ensure_initialized(self, session: SessionContext, store: StateStore) -> None:
        if session.initialized:
            return
        try:
            store.init()
        except OSError as e:
            logger.warning(f"Failed to initialize state dir for {session.session_key}: {e}")
        if session.last_tool_call is None:
            session.last_tool_call = store.read_last_tool_call()
        session.initialized = True

    def _mark_injected(self, session: SessionContext) -> None:
        session.feedback.checkpoint_injected = True
        session.feedback.references_detected = 0
        session.feedback.sections_referenced = []

    # ── per-turn hooks ─────────────────────────────────────────────

    def on_context(
        self,
        session: SessionContext,
        messages: list[dict],
        usage: ContextUsage | None = None,
    ) -> TurnResult:
        """Run before each model call.

        Returns the (possibly extended) message list, the session-resume
        text on the first call when a prior checkpoint exists, and any
        checkpoint written this turn.
        """
        store = self.state_store(session)
        self._ensure_initialized(session, store)
        result = TurnResult(messages=messages)

        if not session.resume_injected:
            session.resume_injected = True
            try:
                result.resume_text = read_checkpoint_for_injection(
                    self.checkpoint_store(session), "session-resume", self.config.injection
                )
            except Exception as e:
                logger.warning(f"Session resume injection failed: {e}")
            if result.resume_text:
                logger.info(f"Injected session-resume checkpoint for {session.session_key}")
                self._mark_injected(session)

        snapshot = None
        if messages:
            snapshot = build_thread_snapshot(messages)
            store.write_thread_snapshot(snapshot)

        gauge = self._gauge(session, usage)
        result.gauge = gauge

        if gauge.should_checkpoint:
            result.checkpoint = self._write_auto_checkpoint(session, store, gauge, messages, snapshot)

        if len(messages) >= 2:
            self._capture(store, messages)

        if gauge.should_inject:
            saved = bool(result.checkpoint and result.checkpoint.written)
            line = format_gauge_line(gauge, checkpoint_saved=saved)
            logger.info(line)
            result.messages = [*messages, {"role": "user", "content": line}]

        return result

    def _write_auto_checkpoint(self, session, store, gauge, messages, snapshot) -> WriteResult | None:
        cp_store = self.checkpoint_store(session)
        latest = cp_store.read_latest()
        checkpoint = build_checkpoint(
            store.read_all(),
            gauge,
            messages,
            session,
            "auto-80pct",
            BuildOptions(
                compaction_count=latest.meta.compaction_count if latest else 0,
                snapshot=snapshot,
            ),
        )
        try:
            written = cp_store.write(checkpoint)
        except CheckpointWriteError as e:
            logger.warning(f"Checkpoint write failed: {e}")
            return None
        # accumulated state is kept; every checkpoint is a full snapshot
        if written.written:
            cp_store.prune(self.config.checkpoint.keep)
        return written

    def _capture(self, store: StateStore, messages: list[dict]) -> None:
        """Mine the latest exchange for decisions, open items and learnings."""
        user_idx = agent_idx = None
        for i in range(len(messages) - 1, -1, -1):
            role = messages[i].get("role")
            if user_idx is None and role == "user" and is_genuine_user_message(messages[i]):
                user_idx = i
            elif user_idx is not None and role == "assistant":
                agent_idx = i
                break

        if user_idx is not None and agent_idx is not None:
            user_text = extract_text(messages[user_idx])
            agent_text = extract_text(messages[agent_idx])
            if should_capture_decision(user_text, agent_text):
                decision = extract_decision_from_response(agent_text)
                if decision:
                    store.append_decision(decision)

        latest_assistant = find_last_assistant_message(messages)
        if latest_assistant is None:
            return
        text = extract_text(latest_assistant)
        if not text:
            return
        for item in extract_open_items(text):
            store.append_open_item(item)
        for learning in extract_learnings(text):
            store.append_learning(learning)

    def on_tool_result(self, session: SessionContext, tool_name: str, tool_input: dict | None = None) -> None:
        store = self.state_store(session)
        store.append_tool(tool_name)

        call = ToolCallSummary(name=tool_name, params_summary=summarize_tool_params(tool_input))
        session.last_tool_call = call
        store.write_last_tool_call(call)

        path = extract_file_path(tool_input)
        if path:
            store.append_file(path, infer_file_kind(tool_name))

    def on_message_end(self, session: SessionContext, message: dict) -> None:
        """Record a thread fragment and count references to injected data."""
        role = message.get("role")
        text = extract_text(message).strip()
        if not text:
            return

        if role == "user" and is_genuine_user_message(message):
            self.state_store(session).append_thread("user", truncate(text, MAX_FRAGMENT_CHARS))
        elif role == "assistant":
            self.state_store(session).append_thread("agent", truncate(text, MAX_FRAGMENT_CHARS))
            session.feedback.record(text)

    # ── compaction ─────────────────────────────────────────────────

    async def before_compact(
        self,
        session: SessionContext,
        preparation: CompactionPreparation,
        usage: ContextUsage | None = None,
        custom_instructions: str | None = None,
    ) -> CompactionOutcome:
        """Checkpoint the session, then summarize the prepared history.

        The checkpoint is written before summarization so working memory
        survives even when the summarizer fails.
        """
        store = self.state_store(session)
        self._ensure_initialized(session, store)
        cp_store = self.checkpoint_store(session)

        if usage is None and preparation.tokens_before is not None:
            usage = ContextUsage(tokens=preparation.tokens_before, context_window=session.context_window_tokens)
        gauge = self._gauge(session, usage)

        written, checkpoint = await self._write_compaction_checkpoint(session, store, cp_store, gauge, preparation)

        result = await self._summarize(session, preparation, custom_instructions)

        if checkpoint is None or not (written and written.written):
            checkpoint = cp_store.read_latest()
        restore_text = None
        if checkpoint is not None:
            restore_text = render_checkpoint_for_injection(checkpoint, "post-compaction", self.config.injection)
            self._mark_injected(session)

        return CompactionOutcome(result=result, checkpoint=written, restore_text=restore_text)

    async def _write_compaction_checkpoint(
        self,
        session: SessionContext,
        store: StateStore,
        cp_store: CheckpointStore,
        gauge: GaugeResult,
        preparation: CompactionPreparation,
    ) -> tuple[WriteResult | None, Checkpoint | None]:
        messages = preparation.messages_to_summarize + preparation.turn_prefix_messages
        latest = cp_store.read_latest()
        state = store.read_all()
        checkpoint = build_checkpoint(
            state,
            gauge,
            messages,
            session,
            "compaction",
            BuildOptions(
                is_split_turn=preparation.is_split_turn,
                file_ops=preparation.file_ops,
                compaction_count=(latest.meta.compaction_count if latest else 0) + 1,
                snapshot=store.read_thread_snapshot(),
            ),
        )

        try:
            written = cp_store.write(checkpoint)
        except CheckpointWriteError as e:
            logger.warning(f"Compaction checkpoint write failed: {e}")
            return None, None

        if written.written:
            cp_store.prune(self.config.checkpoint.keep)
            checkpoint = await self._enrich(cp_store, written, checkpoint, messages)

        checkpoint_id = written.checkpoint_id or (latest.meta.checkpoint_id if latest else None)
        if checkpoint_id and state.learnings:
            promote_learnings(
                session.state_dir,
                session.session_key,
                state.learnings,
                checkpoint_id,
                max_entries=self.config.learnings.max_entries,
            )

        if written.written:
            store.reset()
            session.last_tool_call = None
        return written, checkpoint

    async def _enrich(
        self,
        cp_store: CheckpointStore,
        written: WriteResult,
        checkpoint: Checkpoint,
        messages: list[dict],
    ) -> Checkpoint:
        if self.enricher is None or not self.config.compaction.enrichment_enabled:
            return checkpoint
        enriched, applied = await enrich_checkpoint(
            self.enricher, checkpoint, messages, timeout_s=self.config.compaction.enrichment_timeout_s
        )
        if not applied:
            return checkpoint
        try:
            cp_store.replace(written.path, enriched)
        except CheckpointWriteError as e:
            logger.warning(f"Failed to persist enriched checkpoint: {e}")
            return checkpoint
        logger.info(f"Enriched checkpoint {written.checkpoint_id}")
        return enriched

    async def _summarize(
        self,
        session: SessionContext,
        preparation: CompactionPreparation,
        custom_instructions: str | None,
    ) -> CompactionResult:
        if self.summarizer is None:
            logger.warning("No summarizer configured; truncating history without a summary")
            read_files, modified_files = compute_file_lists(preparation.file_ops)
            failures = collect_tool_failures(
                preparation.messages_to_summarize + preparation.turn_prefix_messages
            )
            summary = (
                FALLBACK_SUMMARY
                + format_tool_failures_section(failures)
                + format_file_operations(read_files, modified_files)
            )
            return CompactionResult(
                summary=summary,
                read_files=read_files,
                modified_files=modified_files,
                used_fallback=True,
            )

        compaction = self.config.compaction
        compactor = Compactor(
            self.summarizer,
            session.context_window_tokens,
            max_history_share=compaction.max_history_share,
            safety_margin=compaction.safety_margin,
            timeout_s=compaction.timeout_s,
            reserve_tokens=compaction.reserve_tokens,
        )
        return await compactor.compact(preparation, custom_instructions)
