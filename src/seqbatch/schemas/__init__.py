# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""seqbatch schemas."""

from seqbatch.schemas.job import (
    InputSet,
    InvalidTransition,
    Job,
    JobState,
    Tier,
)
from seqbatch.schemas.records import (
    EXIT_INFRASTRUCTURE,
    EXIT_OK,
    EXIT_PARTIAL_FAILURE,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    AttemptRecord,
    BatchSummary,
    RunResult,
)
from seqbatch.schemas.resources import (
    HostTotals,
    JobResourceProfile,
    ResourceBudget,
    TierPlan,
)

__all__ = [
    "InputSet",
    "InvalidTransition",
    "Job",
    "JobState",
    "Tier",
    "AttemptRecord",
    "BatchSummary",
    "RunResult",
    "OUTCOME_SUCCESS",
    "OUTCOME_FAILURE",
    "EXIT_OK",
    "EXIT_INFRASTRUCTURE",
    "EXIT_PARTIAL_FAILURE",
    "HostTotals",
    "JobResourceProfile",
    "ResourceBudget",
    "TierPlan",
]
