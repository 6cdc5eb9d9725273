# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Stage - the job-type contract the scheduler drives.

A stage knows how to enumerate its jobs for a study, which external commands
run one job under a given resource profile, what counts as finished output,
and what reduced fidelity means for it. The scheduler knows none of this.
"""

import abc
import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from seqbatch.errors import MissingDependencyError
from seqbatch.scheduler.cost import JobCostEstimator
from seqbatch.schemas import Job, JobResourceProfile

logger = logging.getLogger(__name__)

# Directories inside a stage input tree that never hold samples
NON_SAMPLE_DIRS = {"FastQC", "MultiQC"}


def nonempty(path: Path) -> bool:
    """True if path is an existing, non-empty file."""
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


def split_args(extra_args: Any) -> List[str]:
    """Normalize extra tool arguments given as a string or a list."""
    if not extra_args:
        return []
    if isinstance(extra_args, str):
        return extra_args.split()
    return [str(a) for a in extra_args]


def strip_args(args: Sequence[str], remove: Sequence[str]) -> List[str]:
    """Drop every flag in remove from args."""
    return [a for a in args if a not in set(remove)]


class Stage(abc.ABC):
    """Base class for pipeline stages.

    Subclasses set the class attributes and implement discover, commands and
    output_complete. Options arrive as a plain dict (config file merged with
    command-line overrides).
    """

    name: str = ""
    description: str = ""
    output_subdir: str = ""
    required_tools: Tuple[str, ...] = ()
    degraded_marker: str = "DEGRADED.txt"
    # Rough output size of one job, for the disk-space pre-flight
    disk_per_job_mib: int = 500
    # Option that receives the auth column of a batch file row
    auth_option: Optional[str] = None

    def __init__(self, **options: Any):
        self.options = options
        self.thread_override: Optional[int] = options.get("threads")

    # -- cost model -----------------------------------------------------

    def estimator(self) -> JobCostEstimator:
        """Resource formulas for this stage."""
        return JobCostEstimator()

    def resident_resource(self) -> Optional[Path]:
        """Shared resource every job loads into RAM, if any."""
        return None

    def temp_root(self, profile: JobResourceProfile) -> Optional[Path]:
        """Parent for fast temporary space (e.g. a RAM disk).

        None keeps temporary files inside the job's disk scratch.
        """
        return None

    def parallel_job_cap(self) -> Optional[int]:
        """Upper bound on tier-1 parallel jobs beyond CPU and memory, if any."""
        return None

    # -- jobs -----------------------------------------------------------

    def output_root(self, study_path: Path) -> Path:
        return study_path / self.output_subdir

    def output_dir_for(self, study_path: Path, job_id: str) -> Path:
        return self.output_root(study_path) / job_id

    @abc.abstractmethod
    def discover(self, study_path: Path) -> List[Job]:
        """Enumerate every job available for the study.

        Raises:
            DiscoveryError: If the stage input is missing entirely.
        """

    @abc.abstractmethod
    def commands(
        self,
        job: Job,
        profile: JobResourceProfile,
        scratch_dir: Path,
        temp_dir: Optional[Path] = None,
    ) -> List[List[str]]:
        """Commands that run one attempt, in order.

        scratch_dir is private disk space for the attempt; temp_dir is its
        temporary space (on the RAM disk when temp_root offers one).

        Raises:
            JobInputError: If the job's inputs cannot form a valid command.
        """

    @abc.abstractmethod
    def output_complete(self, job: Job) -> bool:
        """True if the job's primary output exists and is non-empty."""

    # -- checks ---------------------------------------------------------

    def check_dependencies(self) -> None:
        """Verify required executables are on PATH.

        Raises:
            MissingDependencyError: If any tool is missing.
        """
        missing = [tool for tool in self.required_tools if shutil.which(tool) is None]
        if missing:
            raise MissingDependencyError(
                f"Missing required dependencies for {self.name}: {', '.join(missing)}"
            )
        logger.info(f"All required dependencies found: {', '.join(self.required_tools)}")

    def settings_summary(self) -> Dict[str, Any]:
        """Stage parameters shown in the summary report."""
        return {k: v for k, v in sorted(self.options.items()) if v not in (None, "")}

    # -- reduced fidelity -----------------------------------------------

    def degraded_notice(self, job: Job, profile: JobResourceProfile) -> str:
        """Body of the marker file written next to reduced-fidelity output."""
        return (
            f"WARNING: {job.job_id} was produced by the {self.name} stage in "
            f"reduced-fidelity mode ({profile.threads} threads).\n"
            "Standard processing failed, likely due to memory constraints.\n"
        )

    def write_degraded_marker(self, job: Job, profile: JobResourceProfile) -> Path:
        marker = job.output_dir / self.degraded_marker
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(
            self.degraded_notice(job, profile) + f"Date: {datetime.now().isoformat()}\n"
        )
        return marker

    def is_degraded(self, job: Job) -> bool:
        return (job.output_dir / self.degraded_marker).exists()
