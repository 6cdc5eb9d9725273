"""Parallelism planning.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
from typing import Callable, Optional

from seqbatch.schemas import Tier, TierPlan

logger = logging.getLogger(__name__)


def plan(
    pending: int,
    threads_per_job: int,
    usable_cpus: int,
    usable_memory_mib: int,
    memory_per_job_mib: int,
    tier: Tier = Tier.PARALLEL,
    max_threads: Optional[int] = None,
    memory_for: Optional[Callable[[int], int]] = None,
) -> TierPlan:
    """Pick how many jobs run at once.

    parallel = min(usable_cpus // threads, usable_memory // memory_per_job, pending),
    with each bound at least 1. A non-positive memory_per_job_mib leaves
    memory unbounded.

    When only one job can run, its thread count is raised toward
    min(usable_cpus, max_threads) so cores do not sit idle. With memory_for,
    the raised count is the largest whose estimated memory still fits
    usable_memory_mib, and never lower than threads_per_job.

    Args:
        pending: Jobs waiting in this tier.
        threads_per_job: Standard threads per job.
        usable_cpus: Usable CPUs of the budget.
        usable_memory_mib: Usable memory of the budget.
        memory_per_job_mib: Estimated memory of one job at threads_per_job.
        tier: Tier being planned, for reporting.
        max_threads: Cap for single-job thread re-expansion.
        memory_for: threads -> estimated memory, used during re-expansion.

    Returns:
        TierPlan with the chosen concurrency and binding constraint.
    """
    threads = max(1, threads_per_job)

    if pending <= 0:
        return TierPlan(
            tier=tier,
            threads_per_job=threads,
            parallel_jobs=0,
            memory_per_job_mib=memory_per_job_mib,
            binding="jobs",
        )

    cpu_bound = max(1, usable_cpus // threads)
    if memory_per_job_mib > 0:
        mem_bound = max(1, usable_memory_mib // memory_per_job_mib)
    else:
        mem_bound = pending

    parallel = min(cpu_bound, mem_bound, pending)
    if parallel == pending and pending < min(cpu_bound, mem_bound):
        binding = "jobs"
    elif mem_bound < cpu_bound:
        binding = "memory"
    else:
        binding = "cpu"

    logger.info(
        f"{tier.label} plan: CPU allows {cpu_bound} ({usable_cpus} CPUs / {threads} threads), "
        f"RAM allows {mem_bound} ({usable_memory_mib} MiB / ~{memory_per_job_mib} MiB), "
        f"{pending} pending -> {parallel} parallel (limited by {binding})"
    )

    expanded = False
    memory = memory_per_job_mib
    if parallel == 1:
        cap = usable_cpus if max_threads is None else min(usable_cpus, max_threads)
        candidate = cap
        if memory_for is not None:
            while candidate > threads and memory_for(candidate) > usable_memory_mib:
                candidate -= 1
        if candidate > threads:
            logger.info(f"Single-job mode: increasing threads per job {threads} -> {candidate}")
            threads = candidate
            expanded = True
            if memory_for is not None:
                memory = memory_for(threads)

    return TierPlan(
        tier=tier,
        threads_per_job=threads,
        parallel_jobs=parallel,
        memory_per_job_mib=memory,
        binding=binding,
        expanded=expanded,
    )
