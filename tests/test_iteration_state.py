"""Tests for iteration_state module."""

import logging
import math

import pytest

from iteration_state import IterationState, IterationStats, LoopStatus


class TestIterationStats:
    def test_empty(self) -> None:
        stats = IterationStats()
        assert stats.count == 0
        assert stats.mean() == 0.0
        assert stats.stddev() == 0.0

    def test_single_sample(self) -> None:
        stats = IterationStats()
        stats.record(2.5)
        assert stats.minimum == 2.5
        assert stats.maximum == 2.5
        assert stats.mean() == 2.5
        assert stats.stddev() == 0.0

    def test_population_stddev(self) -> None:
        """Durations 1, 2, 3: mean 2, population stddev sqrt(2/3)."""
        stats = IterationStats()
        for d in (1.0, 2.0, 3.0):
            stats.record(d)
        assert stats.count == 3
        assert stats.total == pytest.approx(6.0)
        assert stats.minimum == 1.0
        assert stats.maximum == 3.0
        assert stats.mean() == pytest.approx(2.0)
        assert stats.stddev() == pytest.approx(math.sqrt(2 / 3))

    def test_matches_two_pass_computation(self) -> None:
        samples = [0.4, 12.7, 3.3, 3.3, 8.1, 0.02]
        stats = IterationStats()
        for s in samples:
            stats.record(s)
        mean = sum(samples) / len(samples)
        variance = sum((s - mean) ** 2 for s in samples) / len(samples)
        assert stats.mean() == pytest.approx(mean)
        assert stats.stddev() == pytest.approx(math.sqrt(variance))

    def test_min_tracks_later_smaller_values(self) -> None:
        stats = IterationStats()
        for d in (5.0, 7.0, 0.5):
            stats.record(d)
        assert stats.minimum == 0.5
        assert stats.maximum == 7.0

    def test_identical_samples_zero_stddev(self) -> None:
        stats = IterationStats()
        for _ in range(4):
            stats.record(1.5)
        assert stats.stddev() == pytest.approx(0.0)


class TestIterationState:
    def test_defaults(self) -> None:
        state = IterationState()
        assert state.iteration == 0
        assert state.status == LoopStatus.RUNNING
        assert state.consecutive_failures == 0
        assert not state.max_iterations_reached()

    def test_advance(self) -> None:
        state = IterationState(max_iterations=2)
        assert state.advance() == 1
        assert not state.max_iterations_reached()
        state.advance()
        assert state.max_iterations_reached()

    def test_unlimited_never_reaches_max(self) -> None:
        state = IterationState(max_iterations=None)
        for _ in range(100):
            state.advance()
        assert not state.max_iterations_reached()

    def test_failure_counter(self) -> None:
        state = IterationState(failure_threshold=2)
        assert state.record_failure() == 1
        assert not state.failure_threshold_reached()
        state.record_failure()
        assert state.failure_threshold_reached()
        state.reset_failures()
        assert state.consecutive_failures == 0

    def test_finish_sets_status_once(self, caplog) -> None:
        state = IterationState()
        assert state.finish(LoopStatus.SUCCESS) == LoopStatus.SUCCESS
        with caplog.at_level(logging.WARNING, logger="iteration_state"):
            assert state.finish(LoopStatus.ABORTED) == LoopStatus.SUCCESS
        assert state.status == LoopStatus.SUCCESS
        assert "already finished" in caplog.text

    def test_finish_rejects_running(self) -> None:
        with pytest.raises(ValueError, match="not a terminal status"):
            IterationState().finish(LoopStatus.RUNNING)

    @pytest.mark.parametrize(
        "status",
        [LoopStatus.SUCCESS, LoopStatus.MAX_ITERS, LoopStatus.ABORTED, LoopStatus.INTERRUPTED],
    )
    def test_terminal_statuses(self, status: LoopStatus) -> None:
        assert status.is_terminal
        assert not LoopStatus.RUNNING.is_terminal

    def test_summary(self) -> None:
        state = IterationState(procedure_name="build")
        state.advance()
        state.finish(LoopStatus.MAX_ITERS)
        summary = state.summary()
        assert "status=max-iters" in summary
        assert "iterations=1" in summary

    def test_rejects_zero_threshold(self) -> None:
        with pytest.raises(ValueError):
            IterationState(failure_threshold=0)
