# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Resource schemas: host totals, the per-batch budget, per-tier profiles.

All memory quantities are MiB. Every value here is immutable; a budget is
computed once per batch and passed explicitly to each component.
"""

from dataclasses import dataclass
from typing import Optional

from seqbatch.schemas.job import Tier


@dataclass(frozen=True)
class HostTotals:
    """Raw host measurements, before any division or reserve."""

    cpus: int
    total_memory_mib: int
    available_memory_mib: Optional[int] = None


@dataclass(frozen=True)
class ResourceBudget:
    """Snapshot of what one batch may use.

    usable_cpus and usable_memory_mib are the quantities actually handed out
    to jobs. fallback is True when host introspection failed and the
    documented defaults were used instead.
    """

    total_cpus: int
    reserved_cpus: int
    usable_cpus: int
    total_memory_mib: int
    available_memory_mib: int
    reserved_memory_mib: int
    usable_memory_mib: int
    parallel_batches: int = 1
    fallback: bool = False


@dataclass(frozen=True)
class JobResourceProfile:
    """How a job runs within one tier."""

    tier: Tier
    threads: int
    memory_mib: int  # estimated requirement
    memory_ceiling_mib: int  # assigned share of the budget
    reduced_fidelity: bool = False


@dataclass(frozen=True)
class TierPlan:
    """Concurrency decided for one tier. Logged for diagnosis only."""

    tier: Tier
    threads_per_job: int
    parallel_jobs: int
    memory_per_job_mib: int
    binding: str  # "cpu", "memory", "jobs", "stage", or "sequential"
    expanded: bool = False
