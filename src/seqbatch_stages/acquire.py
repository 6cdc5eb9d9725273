"""Read acquisition: prefetch, fasterq-dump, pigz.

Implementation rules enforced here:
- Never print
- Never read global config or environment (options arrive as kwargs)
- Build argv lists only; the scheduler runs them
- Downloads and extracted reads stay on disk scratch; only fasterq-dump
  temp space may use the RAM disk
- Reduced fidelity: no RAM disk and minimum buffers

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from seqbatch.errors import DiscoveryError, JobInputError
from seqbatch.scheduler.cost import JobCostEstimator
from seqbatch.schemas import InputSet, Job, JobResourceProfile
from seqbatch.stage import Stage, nonempty

logger = logging.getLogger(__name__)

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["{study}/run_mapping.tsv", "{ngc_file}"],
    "writes": ["{study}/Raw_data/{sample}/{run}[_1|_2].fastq.gz"],
    "external": ["prefetch", "fasterq-dump", "pigz"],
}

MAPPING_FILE = "run_mapping.tsv"
RAM_DISK = Path("/dev/shm")
RAM_DISK_MIN_MIB = 2048
# fasterq-dump temp space needed by one large sample
RAM_TEMP_PER_JOB_MIB = 10240
DEFAULT_MAX_SIZE = "u"

BUFSIZE_FRACTION = 0.10
BUFSIZE_RANGE = (256, 4096)
CACHE_FRACTION = 0.05
CACHE_RANGE = (128, 2048)

# One extraction thread plus one compression thread
ACQUIRE_ESTIMATOR = JobCostEstimator(
    thread_bands=(),
    min_threads=2,
    per_thread_mib=256,
    base_working_mib=1024,
    budget_floor_mib=2048,
    single_job_thread_cap=8,
    tier2_thread_cap=8,
)

COMPRESS_SCRIPT = 'pigz -1 -p "$1" "$2"/*.fastq && mv "$2"/*.fastq.gz "$3"/'


def _clamp(value: int, bounds: Tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, value))


def buffer_sizes(memory_ceiling_mib: int, minimal: bool = False) -> Dict[str, int]:
    """fasterq-dump buffer and cache sizes for one job, in MiB."""
    if minimal:
        return {"bufsize": BUFSIZE_RANGE[0], "curcache": CACHE_RANGE[0]}
    return {
        "bufsize": _clamp(int(memory_ceiling_mib * BUFSIZE_FRACTION), BUFSIZE_RANGE),
        "curcache": _clamp(int(memory_ceiling_mib * CACHE_FRACTION), CACHE_RANGE),
    }


def read_run_mapping(path: Path) -> Dict[str, List[str]]:
    """sample -> runs, in file order.

    Raises:
        DiscoveryError: If the mapping file is missing.
    """
    if not path.exists():
        raise DiscoveryError(f"Run mapping not found: {path}")

    mapping: Dict[str, List[str]] = {}
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        fields = line.split("\t")
        if len(fields) < 2 or not fields[0] or not fields[1]:
            logger.warning(f"{path}: malformed line {line!r}, skipping")
            continue
        sample, run = fields[0].strip(), fields[1].strip()
        if sample.lower() == "sample":
            continue
        runs = mapping.setdefault(sample, [])
        if run not in runs:
            runs.append(run)
    return mapping


def ram_disk_free_mib() -> Optional[int]:
    """Free space on the RAM disk, or None when it cannot be used."""
    if not RAM_DISK.is_dir() or not os.access(RAM_DISK, os.W_OK):
        return None
    try:
        return shutil.disk_usage(RAM_DISK).free // (1024 * 1024)
    except OSError:
        return None


def ram_disk_usable(min_free_mib: int = RAM_DISK_MIN_MIB) -> bool:
    free = ram_disk_free_mib()
    return free is not None and free > min_free_mib


class AcquireStage(Stage):
    """Fetch and extract every run of a sample into Raw_data/<sample>/."""

    name = "acquire"
    description = "Download and extract sequencing runs"
    output_subdir = "Raw_data"
    required_tools = ("prefetch", "fasterq-dump", "pigz", "bash")
    degraded_marker = "DEGRADED_ACQUISITION.txt"
    disk_per_job_mib = 10000
    auth_option = "ngc_file"

    def __init__(
        self,
        max_size: str = DEFAULT_MAX_SIZE,
        ngc_file: Optional[str] = None,
        threads: Optional[int] = None,
        **options: Any,
    ):
        super().__init__(max_size=max_size, ngc_file=ngc_file, threads=threads, **options)
        self.max_size = str(max_size)
        self.ngc_file = Path(ngc_file).expanduser() if ngc_file else None

    def estimator(self) -> JobCostEstimator:
        return ACQUIRE_ESTIMATOR

    def temp_root(self, profile: JobResourceProfile) -> Optional[Path]:
        if not profile.reduced_fidelity and ram_disk_usable():
            return RAM_DISK / "seqbatch"
        return None

    def parallel_job_cap(self) -> Optional[int]:
        """Jobs whose extraction temp space fits on the RAM disk at once."""
        free = ram_disk_free_mib()
        if free is None or free <= RAM_DISK_MIN_MIB:
            return None
        return max(1, free // RAM_TEMP_PER_JOB_MIB)

    def discover(self, study_path: Path) -> List[Job]:
        mapping = read_run_mapping(study_path / MAPPING_FILE)
        return [
            Job(
                job_id=sample,
                output_dir=self.output_dir_for(study_path, sample),
                inputs=tuple(InputSet(run_id=run) for run in runs),
            )
            for sample, runs in mapping.items()
        ]

    def commands(
        self,
        job: Job,
        profile: JobResourceProfile,
        scratch_dir: Path,
        temp_dir: Optional[Path] = None,
    ) -> List[List[str]]:
        if not job.inputs:
            raise JobInputError(f"No runs listed for {job.job_id}")

        ngc = ["--ngc", str(self.ngc_file)] if self.ngc_file else []
        sizes = buffer_sizes(profile.memory_ceiling_mib, minimal=profile.reduced_fidelity)
        threads = str(profile.threads)

        commands = []
        for run in job.inputs:
            sra_dir = scratch_dir / "sra"
            fastq_dir = scratch_dir / "fastq" / run.run_id
            run_temp = (temp_dir or scratch_dir / "tmp") / run.run_id
            commands.append(
                ["prefetch", run.run_id]
                + ngc
                + ["--output-directory", str(sra_dir), "--max-size", self.max_size]
            )
            commands.append(
                ["fasterq-dump", str(sra_dir / run.run_id)]
                + ngc
                + [
                    "--split-3",
                    "--outdir", str(fastq_dir),
                    "--temp", str(run_temp),
                    "--threads", threads,
                    "--mem", f"{profile.memory_ceiling_mib}M",
                    "--bufsize", f"{sizes['bufsize']}MB",
                    "--curcache", f"{sizes['curcache']}MB",
                ]
            )
            commands.append(
                ["bash", "-c", COMPRESS_SCRIPT, "compress", threads, str(fastq_dir), str(job.output_dir)]
            )
        return commands

    def output_complete(self, job: Job) -> bool:
        if not job.inputs:
            return False
        for run in job.inputs:
            candidates = [
                job.output_dir / f"{run.run_id}_1.fastq.gz",
                job.output_dir / f"{run.run_id}.fastq.gz",
            ]
            if not any(nonempty(c) for c in candidates):
                return False
        return True

    def degraded_notice(self, job: Job, profile: JobResourceProfile) -> str:
        return (
            "WARNING: This sample was extracted in minimal-footprint mode.\n\n"
            "Standard extraction failed, likely due to memory or RAM-disk limits.\n"
            f"It was re-run with {profile.threads} threads, minimum buffers and\n"
            "on-disk temporary space. Verify read counts before downstream use.\n"
        )

    def settings_summary(self) -> Dict[str, Any]:
        return {
            "max_size": self.max_size,
            "ngc_file": str(self.ngc_file) if self.ngc_file else None,
            "threads": self.thread_override or "auto",
        }
