"""Tests for seqbatch schemas."""

from datetime import datetime
from pathlib import Path

import pytest

from seqbatch.schemas import (
    EXIT_OK,
    EXIT_PARTIAL_FAILURE,
    BatchSummary,
    InputSet,
    InvalidTransition,
    Job,
    JobState,
    Tier,
)


class TestJobState:
    """Tests for the job lifecycle."""

    def test_normal_path(self):
        """PENDING -> RUNNING -> PENDING -> RUNNING -> SUCCEEDED."""
        job = Job(job_id="S1", output_dir=Path("/out/S1"))

        for state in (JobState.RUNNING, JobState.PENDING, JobState.RUNNING, JobState.SUCCEEDED):
            job.transition(state)

        assert job.state is JobState.SUCCEEDED
        assert job.state.is_terminal

    @pytest.mark.parametrize(
        "terminal", [JobState.SUCCEEDED, JobState.SUCCEEDED_DEGRADED, JobState.FAILED]
    )
    def test_terminal_states_absorb(self, terminal):
        """Nothing leaves a terminal state."""
        job = Job(job_id="S1", output_dir=Path("/out/S1"), state=terminal)

        for state in JobState:
            with pytest.raises(InvalidTransition):
                job.transition(state)

    def test_pending_cannot_degrade_directly(self):
        """Degraded success only comes from a running attempt."""
        job = Job(job_id="S1", output_dir=Path("/out/S1"))

        with pytest.raises(InvalidTransition):
            job.transition(JobState.SUCCEEDED_DEGRADED)


class TestTier:
    """Tests for Tier."""

    def test_order_and_labels(self):
        """Tiers run in numeric order."""
        assert list(Tier) == [Tier.PARALLEL, Tier.SEQUENTIAL_MAX, Tier.MINIMAL_FOOTPRINT]
        assert Tier.SEQUENTIAL_MAX.label == "tier2"
        assert Tier.MINIMAL_FOOTPRINT.is_last
        assert not Tier.PARALLEL.is_last


class TestInputSet:
    """Tests for InputSet."""

    def test_paired(self):
        """Two files make a pair."""
        assert InputSet("SRR1", (Path("a_1"), Path("a_2"))).paired
        assert not InputSet("SRR1", (Path("a_1"),)).paired
        assert not InputSet("SRR1").paired


class TestBatchSummary:
    """Tests for BatchSummary."""

    def make(self, **kwargs):
        return BatchSummary(stage="quant", study="GSE1", study_path=Path("/data/GSE1"),
                            started_at=datetime.now(), **kwargs)

    def test_complete_is_ok(self):
        """Only successes, skips and degraded successes exit 0."""
        summary = self.make(succeeded=["a"], skipped=["b"], degraded=["c"])

        assert summary.total == 3
        assert summary.exit_code == EXIT_OK

    def test_failures_are_partial(self):
        """Any failed or unattempted job makes the exit code 3."""
        assert self.make(succeeded=["a"], failed=["b"]).exit_code == EXIT_PARTIAL_FAILURE
        assert self.make(not_attempted=["b"]).exit_code == EXIT_PARTIAL_FAILURE

    def test_dry_run_is_ok(self):
        """Dry runs never fail on job state."""
        assert self.make(not_attempted=["a"], dry_run=True).exit_code == EXIT_OK
