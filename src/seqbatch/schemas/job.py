# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Job schemas for seqbatch.

A Job is one sample. It may carry several input sets (technical replicate
runs) that are merged into a single invocation, never scheduled separately.

Lifecycle:
- PENDING -> RUNNING -> SUCCEEDED | SUCCEEDED_DEGRADED | FAILED
- RUNNING -> PENDING when a tier fails and a later tier remains
- PENDING -> SUCCEEDED for jobs already complete on disk (skip)
- PENDING -> FAILED for jobs terminally failed by an earlier invocation
"""

from dataclasses import dataclass
from enum import Enum, IntEnum
from pathlib import Path
from typing import Dict, FrozenSet, Optional, Tuple


class JobState(Enum):
    """Lifecycle state of a job within one batch invocation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    SUCCEEDED_DEGRADED = "succeeded_degraded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            JobState.SUCCEEDED,
            JobState.SUCCEEDED_DEGRADED,
            JobState.FAILED,
        )


class Tier(IntEnum):
    """Retry tiers, in the order they run.

    PARALLEL: planned concurrency, standard threads, full fidelity
    SEQUENTIAL_MAX: one job at a time with the whole budget
    MINIMAL_FOOTPRINT: one job at a time, minimum threads, reduced fidelity
    """

    PARALLEL = 1
    SEQUENTIAL_MAX = 2
    MINIMAL_FOOTPRINT = 3

    @property
    def label(self) -> str:
        return f"tier{self.value}"

    @property
    def is_last(self) -> bool:
        return self is Tier.MINIMAL_FOOTPRINT


_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.PENDING: frozenset(
        {JobState.RUNNING, JobState.SUCCEEDED, JobState.FAILED}
    ),
    JobState.RUNNING: frozenset(
        {
            JobState.PENDING,
            JobState.SUCCEEDED,
            JobState.SUCCEEDED_DEGRADED,
            JobState.FAILED,
        }
    ),
    JobState.SUCCEEDED: frozenset(),
    JobState.SUCCEEDED_DEGRADED: frozenset(),
    JobState.FAILED: frozenset(),
}


class InvalidTransition(ValueError):
    """Raised when a job is moved out of an absorbing state."""

    pass


@dataclass(frozen=True)
class InputSet:
    """One run belonging to a job.

    files holds R1 (and R2 for paired-end data). It is empty when the run is
    only known by accession and still has to be fetched.
    """

    run_id: str
    files: Tuple[Path, ...] = ()

    @property
    def paired(self) -> bool:
        return len(self.files) == 2


@dataclass
class Job:
    """One unit of scheduled work, keyed by job_id within a batch."""

    job_id: str
    output_dir: Path
    inputs: Tuple[InputSet, ...] = ()
    state: JobState = JobState.PENDING
    layout: Optional[str] = None  # "paired", "single", or None if unknown

    def transition(self, new_state: JobState) -> None:
        """Move to new_state, refusing transitions out of absorbing states."""
        if new_state not in _TRANSITIONS[self.state]:
            raise InvalidTransition(
                f"job {self.job_id}: cannot move from {self.state.value} "
                f"to {new_state.value}"
            )
        self.state = new_state
