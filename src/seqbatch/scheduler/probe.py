"""Host resource probe.

Turns raw host totals into the ResourceBudget a batch is allowed to use.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
from typing import Optional

import psutil

from seqbatch.schemas import HostTotals, ResourceBudget

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

# Used when the host cannot be introspected at all
FALLBACK_HOST = HostTotals(cpus=4, total_memory_mib=8192, available_memory_mib=6144)

# Share of total memory assumed available when the host does not report it
AVAILABLE_FRACTION_WHEN_UNKNOWN = 0.70

# Share of available memory held back from jobs
MEMORY_RESERVE_FRACTION = 0.10

MIN_USABLE_CPUS = 2


def read_host() -> Optional[HostTotals]:
    """Measure the host with psutil.

    Returns:
        HostTotals, or None if introspection is unavailable.
    """
    try:
        cpus = psutil.cpu_count(logical=True)
        memory = psutil.virtual_memory()
    except (OSError, RuntimeError, NotImplementedError) as e:
        logger.warning(f"Host introspection failed: {e}")
        return None

    if not cpus or not memory.total:
        return None

    available = memory.available // MIB if memory.available else None
    return HostTotals(
        cpus=cpus,
        total_memory_mib=memory.total // MIB,
        available_memory_mib=available,
    )


def cpu_reserve(cpus: int) -> int:
    """CPUs held back for the host and the orchestrating process.

    <= 4 CPUs: 0
    <= 8 CPUs: 1
    otherwise: 2
    """
    if cpus <= 4:
        return 0
    if cpus <= 8:
        return 1
    return 2


def probe(parallel_batches: int = 1, host: Optional[HostTotals] = None) -> ResourceBudget:
    """Compute this batch's budget.

    When several batches run side by side, each one divides the undivided
    host totals by parallel_batches on its own before applying reserves.
    Batches never coordinate.

    Args:
        parallel_batches: Number of batches sharing the host.
        host: Pre-measured host totals. Measured with psutil when omitted.

    Returns:
        An immutable ResourceBudget.
    """
    batches = max(1, parallel_batches)
    fallback = False

    if host is None:
        host = read_host()
    if host is None:
        logger.warning(
            f"Resource introspection unavailable, using defaults: "
            f"{FALLBACK_HOST.cpus} CPUs, {FALLBACK_HOST.total_memory_mib} MiB total, "
            f"{FALLBACK_HOST.available_memory_mib} MiB available"
        )
        host = FALLBACK_HOST
        fallback = True

    available = host.available_memory_mib
    if available is None:
        available = int(host.total_memory_mib * AVAILABLE_FRACTION_WHEN_UNKNOWN)

    cpu_share = host.cpus
    if batches > 1:
        cpu_share = host.cpus // batches
        available = available // batches
        logger.info(
            f"Resources divided across {batches} parallel batches: "
            f"~{cpu_share} CPUs and ~{available} MiB per batch"
        )

    reserved_cpus = cpu_reserve(cpu_share)
    usable_cpus = cpu_share - reserved_cpus
    if usable_cpus < MIN_USABLE_CPUS:
        logger.warning(
            f"Very low CPU allocation ({usable_cpus}), using minimum of {MIN_USABLE_CPUS}"
        )
        usable_cpus = MIN_USABLE_CPUS

    reserved_memory = int(available * MEMORY_RESERVE_FRACTION)
    usable_memory = max(0, available - reserved_memory)

    budget = ResourceBudget(
        total_cpus=host.cpus,
        reserved_cpus=reserved_cpus,
        usable_cpus=usable_cpus,
        total_memory_mib=host.total_memory_mib,
        available_memory_mib=available,
        reserved_memory_mib=reserved_memory,
        usable_memory_mib=usable_memory,
        parallel_batches=batches,
        fallback=fallback,
    )
    logger.info(
        f"Resource budget: {budget.usable_cpus}/{budget.total_cpus} CPUs, "
        f"{budget.usable_memory_mib} MiB usable of {budget.available_memory_mib} MiB available"
    )
    return budget
