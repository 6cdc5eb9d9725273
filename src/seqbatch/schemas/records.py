# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Attempt and batch result records."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from seqbatch.schemas.job import Tier
from seqbatch.schemas.resources import ResourceBudget, TierPlan

# Process exit codes reported by the CLI
EXIT_OK = 0
EXIT_INFRASTRUCTURE = 1
EXIT_PARTIAL_FAILURE = 3

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"


@dataclass(frozen=True)
class AttemptRecord:
    """One attempt of one job in one tier. Appended, never mutated."""

    job_id: str
    tier: Tier
    threads: int
    outcome: str  # OUTCOME_SUCCESS or OUTCOME_FAILURE
    peak_memory_mib: Optional[int] = None
    recorded_at: str = ""  # ISO 8601
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == OUTCOME_SUCCESS


@dataclass
class RunResult:
    """What the job runner observed for one attempt."""

    job_id: str
    tier: Tier
    success: bool
    returncode: Optional[int] = None
    peak_memory_mib: Optional[int] = None
    log_path: Optional[Path] = None
    stderr_tail: str = ""
    detail: str = ""
    cancelled: bool = False


@dataclass
class BatchSummary:
    """Final state of one stage run over one study.

    Every job id of the batch lands in exactly one of the category lists.
    """

    stage: str
    study: str
    study_path: Path
    started_at: datetime
    completed_at: Optional[datetime] = None
    budget: Optional[ResourceBudget] = None
    fixed_overhead_mib: int = 0
    plans: List[TierPlan] = field(default_factory=list)
    succeeded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    not_attempted: List[str] = field(default_factory=list)
    peak_memory: Optional[Dict[str, Any]] = None  # {mib, job_id, tier}
    stage_settings: Dict[str, Any] = field(default_factory=dict)
    state_dir: Optional[Path] = None
    logs_dir: Optional[Path] = None
    summary_path: Optional[Path] = None
    dry_run: bool = False
    planned_commands: Dict[str, List[List[str]]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return (
            len(self.succeeded)
            + len(self.skipped)
            + len(self.degraded)
            + len(self.failed)
            + len(self.not_attempted)
        )

    @property
    def complete(self) -> bool:
        return not self.failed and not self.not_attempted

    @property
    def exit_code(self) -> int:
        if self.dry_run or self.complete:
            return EXIT_OK
        return EXIT_PARTIAL_FAILURE
