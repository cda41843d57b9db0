"""Tests for the token-utilization gauge."""

import pytest

from contextkeeper.agent.gauge import ContextUsage, GaugeResult, calculate_utilization, format_gauge_line


class TestCalculateUtilization:
    def test_percent_wins(self):
        result = calculate_utilization(ContextUsage(tokens=10, context_window=200_000, percent=85), 200_000)
        assert result.utilization == pytest.approx(0.85)
        assert result.input_tokens == 10
        assert result.should_checkpoint is True
        assert result.should_inject is True

    def test_percent_without_tokens_derives_them(self):
        result = calculate_utilization(ContextUsage(percent=50), 100_000)
        assert result.input_tokens == 50_000
        assert result.context_window == 100_000

    def test_tokens_over_window(self):
        result = calculate_utilization(ContextUsage(tokens=140_000, context_window=200_000), 200_000)
        assert result.utilization == pytest.approx(0.7)
        assert result.should_inject is True
        assert result.should_checkpoint is False

    def test_thresholds_inclusive(self):
        result = calculate_utilization(ContextUsage(tokens=160_000, context_window=200_000), 200_000)
        assert result.should_checkpoint is True

    def test_unknown_usage(self):
        result = calculate_utilization(None, 200_000)
        assert result == GaugeResult(0.0, 0, 200_000, False, False)

    def test_tokens_without_window_reads_zero(self):
        result = calculate_utilization(ContextUsage(tokens=5000), 200_000)
        assert result.utilization == 0.0
        assert result.should_inject is False

    def test_custom_thresholds(self):
        usage = ContextUsage(tokens=60_000, context_window=100_000)
        result = calculate_utilization(usage, 100_000, checkpoint_threshold=0.6, inject_threshold=0.5)
        assert result.should_checkpoint is True


class TestFormatGaugeLine:
    def test_plain(self):
        result = GaugeResult(0.72, 144_000, 200_000, False, True)
        assert format_gauge_line(result) == "[Context: 72% | 144k/200k tokens]"

    def test_checkpoint_saved(self):
        result = GaugeResult(0.85, 170_000, 200_000, True, True)
        assert format_gauge_line(result, checkpoint_saved=True) == (
            "[Context: 85% | 170k/200k tokens | Checkpoint saved]"
        )
