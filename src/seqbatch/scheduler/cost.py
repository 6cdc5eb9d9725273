"""Job cost estimation.

Hand-tuned formulas for thread counts and memory requirements, kept as
constants on a strategy object so each stage can tune them without touching
the tier state machine.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from seqbatch.schemas import JobResourceProfile, Tier

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


def disk_usage_mib(path: Path) -> int:
    """Total on-disk size of a file or directory tree, in MiB (rounded up)."""
    if path.is_file():
        return math.ceil(path.stat().st_size / MIB)

    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += (Path(root) / name).stat().st_size
            except OSError:
                # Vanished or unreadable entries do not count
                continue
    return math.ceil(total / MIB)


@dataclass(frozen=True)
class JobCostEstimator:
    """Per-stage resource formulas.

    thread_bands: (min_usable_cpus, threads) pairs, largest first. The first
        band whose threshold is met wins; below every band, min_threads.
    per_thread_mib / base_working_mib: working set of one job on top of the
        fixed overhead.
    expansion_factor / overhead_*: in-memory size of a shared resident
        resource (an index) estimated from its on-disk size.
    budget_*: clamp on the memory share handed to a single job.
    """

    thread_bands: Tuple[Tuple[int, int], ...] = ((32, 8), (16, 6), (8, 4), (4, 4))
    min_threads: int = 2
    per_thread_mib: int = 512
    base_working_mib: int = 1024
    expansion_factor: float = 2.0
    overhead_floor_mib: int = 2048
    overhead_ceiling_mib: int = 32768
    default_overhead_mib: int = 6144
    budget_floor_mib: int = 4096
    budget_ceiling_mib: int = 65536
    single_job_thread_cap: int = 12
    tier2_thread_cap: int = 16
    tier3_threads: int = 2

    def threads_for(self, usable_cpus: int, override: Optional[int] = None) -> int:
        """Standard thread count for one job.

        Args:
            usable_cpus: Usable CPUs of the batch budget.
            override: Explicit thread count from the operator, if any.
        """
        if override:
            return max(1, override)

        threads = self.min_threads
        for min_cpus, band_threads in self.thread_bands:
            if usable_cpus >= min_cpus:
                threads = band_threads
                break
        return max(1, min(threads, usable_cpus))

    def memory_required(self, threads: int, fixed_overhead_mib: int = 0) -> int:
        """Estimated memory of one job instance running with threads."""
        return fixed_overhead_mib + self.per_thread_mib * threads + self.base_working_mib

    def fixed_overhead_for(self, resource: Optional[Path]) -> int:
        """Estimate the resident footprint of a shared resource.

        Best effort: the on-disk size times expansion_factor, clamped to the
        overhead band. Underestimates are absorbed by the later tiers.

        Returns:
            0 when the stage has no resident resource, default_overhead_mib
            when the resource cannot be measured.
        """
        if resource is None:
            return 0

        resource = Path(resource).expanduser()
        if not resource.exists():
            logger.warning(
                f"Cannot measure {resource}, assuming {self.default_overhead_mib} MiB resident"
            )
            return self.default_overhead_mib

        try:
            on_disk = disk_usage_mib(resource)
        except OSError as e:
            logger.warning(f"Cannot measure {resource}: {e}")
            return self.default_overhead_mib

        estimate = math.ceil(on_disk * self.expansion_factor)
        estimate = max(self.overhead_floor_mib, min(self.overhead_ceiling_mib, estimate))
        logger.info(f"Resident resource {resource}: ~{on_disk} MiB on disk -> ~{estimate} MiB in RAM")
        return estimate

    def memory_budget(self, parallel_jobs: int, usable_memory_mib: int) -> int:
        """Memory share of one job when parallel_jobs run together."""
        share = usable_memory_mib // max(1, parallel_jobs)
        return max(self.budget_floor_mib, min(self.budget_ceiling_mib, share))

    def profile(
        self,
        tier: Tier,
        threads: int,
        fixed_overhead_mib: int,
        memory_ceiling_mib: int,
    ) -> JobResourceProfile:
        """Build the profile jobs of one tier run with."""
        return JobResourceProfile(
            tier=tier,
            threads=threads,
            memory_mib=self.memory_required(threads, fixed_overhead_mib),
            memory_ceiling_mib=memory_ceiling_mib,
            reduced_fidelity=tier is Tier.MINIMAL_FOOTPRINT,
        )
