"""Token-utilization gauge."""

from dataclasses import dataclass

CHECKPOINT_THRESHOLD = 0.8
INJECT_THRESHOLD = 0.7


@dataclass
class ContextUsage:
    """Host-reported usage snapshot. Either field may be unknown."""
    tokens: int | None = None
    context_window: int = 0
    percent: float | None = None


@dataclass
class GaugeResult:
    utilization: float
    input_tokens: int
    context_window: int
    should_checkpoint: bool
    should_inject: bool


def calculate_utilization(
    usage: ContextUsage | None,
    context_window_tokens: int,
    checkpoint_threshold: float = CHECKPOINT_THRESHOLD,
    inject_threshold: float = INJECT_THRESHOLD,
) -> GaugeResult:
    """Turn a usage snapshot into a utilization ratio and threshold flags.

    A reported percentage wins; otherwise tokens / window; with neither,
    the gauge reads zero and nothing triggers.
    """
    if usage is not None and usage.percent is not None:
        utilization = usage.percent / 100
        window = usage.context_window or context_window_tokens
        input_tokens = usage.tokens if usage.tokens is not None else round(utilization * window)
        return GaugeResult(
            utilization=utilization,
            input_tokens=input_tokens,
            context_window=window,
            should_checkpoint=utilization >= checkpoint_threshold,
            should_inject=utilization >= inject_threshold,
        )

    if usage is not None and usage.tokens is not None and usage.context_window > 0:
        utilization = usage.tokens / usage.context_window
        return GaugeResult(
            utilization=utilization,
            input_tokens=usage.tokens,
            context_window=usage.context_window,
            should_checkpoint=utilization >= checkpoint_threshold,
            should_inject=utilization >= inject_threshold,
        )

    return GaugeResult(
        utilization=0.0,
        input_tokens=0,
        context_window=context_window_tokens,
        should_checkpoint=False,
        should_inject=False,
    )


def format_gauge_line(result: GaugeResult, checkpoint_saved: bool = False) -> str:
    """e.g. ``[Context: 85% | 170k/200k tokens | Checkpoint saved]``."""
    pct = round(result.utilization * 100)
    input_k = round(result.input_tokens / 1000)
    ctx_k = round(result.context_window / 1000)
    suffix = " | Checkpoint saved" if checkpoint_saved else ""
    return f"[Context: {pct}% | {input_k}k/{ctx_k}k tokens{suffix}]"
