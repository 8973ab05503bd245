# ruff: noqa: ANN001 ANN201

"""Unit tests for progress reporting and timing summaries."""

from __future__ import annotations

import pytest
from loguru import logger

from ilqg_trajopt.diagnostics.progress import ProgressReporter, summarize_timing
from ilqg_trajopt.optimizer.types import TerminationReason, TraceRecord


@pytest.fixture
def messages():
    captured: list[str] = []
    handler_id = logger.add(lambda msg: captured.append(msg.record["message"]), level="DEBUG")
    yield captured
    logger.remove(handler_id)


def _record(iteration=1, accepted=True):
    return TraceRecord(
        iteration=iteration,
        lam=0.5,
        d_lam=1.0,
        cost=3.0,
        grad_norm=0.1,
        improvement=0.2,
        accepted=accepted,
        time_derivatives=0.1,
        time_backward=0.2,
        time_forward=0.3,
    )


class TestSummarizeTiming:
    """Phase shares over a trace."""

    def test_shares(self):
        summary = summarize_timing([_record(1), _record(2)], total_time=2.0)
        assert summary["derivatives"] == pytest.approx(0.2)
        assert summary["backward"] == pytest.approx(0.4)
        assert summary["forward"] == pytest.approx(0.6)
        assert summary["other"] == pytest.approx(0.8)
        assert summary["forward_percent"] == pytest.approx(30.0)
        total = sum(summary[f"{k}_percent"] for k in ("derivatives", "backward", "forward", "other"))
        assert total == pytest.approx(100.0)

    def test_untimed_record_counts_as_other(self):
        record = TraceRecord(iteration=1, lam=1.0)
        summary = summarize_timing([record], total_time=1.0)
        assert summary["other"] == pytest.approx(1.0)

    def test_zero_total_time(self):
        summary = summarize_timing([], total_time=0.0)
        assert summary["other_percent"] == 0.0


class TestProgressReporter:
    """Verbosity gating of the console table."""

    def test_silent(self, messages):
        reporter = ProgressReporter(verbosity=0)
        reporter.begin()
        reporter.iteration(_record(), 0.3)
        reporter.finish(TerminationReason.COST_CONVERGED, 1, 3.0, 0.1, 0.5, {"total": 1.0})
        assert messages == []

    def test_summary_only(self, messages):
        reporter = ProgressReporter(verbosity=1)
        reporter.iteration(_record(), 0.3)
        reporter.finish(TerminationReason.MAX_ITERATIONS, 2, 3.0, 0.1, 0.5, {"total": 1.0})
        assert any("Maximum iterations" in m for m in messages)
        assert any(m.startswith("iterations: 2") for m in messages)
        assert not any("log10(lam)" in m for m in messages)

    def test_rows_and_header(self, messages):
        reporter = ProgressReporter(verbosity=2, header_every=2)
        for i in range(3):
            reporter.iteration(_record(i + 1), 0.3)
        headers = [m for m in messages if "log10(lam)" in m]
        assert len(headers) == 2
        assert len(messages) == 5

    def test_rejected_row(self, messages):
        reporter = ProgressReporter(verbosity=2)
        reporter.iteration(_record(accepted=False), 0.3)
        assert "NO STEP" in messages[-1]

    def test_retry_only_at_highest_verbosity(self, messages):
        ProgressReporter(verbosity=2).backward_retry(5, 1.6)
        assert messages == []
        ProgressReporter(verbosity=3).backward_retry(5, 1.6)
        assert len(messages) == 1

    def test_retry_timestep_printed_one_based(self, messages):
        ProgressReporter(verbosity=3).backward_retry(0, 1.6)
        assert messages[-1].startswith("Cholesky failed at timestep 1,")

    def test_initial_divergence_message(self, messages):
        reporter = ProgressReporter(verbosity=1)
        reporter.finish(TerminationReason.INITIAL_DIVERGENCE, 0, float("nan"), float("nan"), 1.0, {})
        assert len(messages) == 1
        assert "divergence" in messages[0]
