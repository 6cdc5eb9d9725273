"""Read trimming and filtering with fastp.

Implementation rules enforced here:
- Never print
- Never read global config or environment (options arrive as kwargs)
- Build argv lists only; the scheduler runs them
- Reduced fidelity: base correction and overrepresentation analysis are off

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from seqbatch.errors import DiscoveryError, JobInputError
from seqbatch.scheduler.cost import JobCostEstimator
from seqbatch.schemas import InputSet, Job, JobResourceProfile
from seqbatch.stage import NON_SAMPLE_DIRS, Stage, nonempty, split_args, strip_args

logger = logging.getLogger(__name__)

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["{study}/Raw_data/{sample}/*.fastq.gz"],
    "writes": [
        "{study}/Trimmed_data/{sample}/fastp_{run}[_1|_2].fastq.gz",
        "{study}/Trimmed_data/{sample}/{run}.html",
        "{study}/Trimmed_data/{sample}/{run}.json",
    ],
    "external": ["fastp"],
}

INPUT_SUBDIR = "Raw_data"
DEFAULT_EXTRA_ARGS = "--trim_poly_x --correction --detect_adapter_for_pe"
DEFAULT_LENGTH_REQUIRED = 36
REDUCED_DROP_ARGS = ("--correction", "--overrepresentation_analysis")

# fastp is lighter than salmon and runs one process per run
TRIM_ESTIMATOR = JobCostEstimator(
    thread_bands=((32, 6), (16, 4), (8, 4), (4, 2)),
    per_thread_mib=256,
    base_working_mib=1024,
    budget_floor_mib=2048,
)


def detect_inputs(sample_dir: Path) -> Optional[Job]:
    """Group raw reads of one sample into runs.

    Returns:
        A partially built Job (output_dir unset), or None with no reads.
    """
    r1 = sorted(sample_dir.glob("*_1.fastq.gz"))
    r2 = sorted(sample_dir.glob("*_2.fastq.gz"))

    if r1 and r2:
        inputs = []
        for read1 in r1:
            prefix = read1.name[: -len("_1.fastq.gz")]
            read2 = sample_dir / f"{prefix}_2.fastq.gz"
            files = (read1, read2) if read2.exists() else (read1,)
            inputs.append(InputSet(run_id=prefix, files=files))
        return Job(job_id=sample_dir.name, output_dir=Path(), inputs=tuple(inputs), layout="paired")

    reads = sorted(sample_dir.glob("*.fastq.gz"))
    if reads:
        inputs = tuple(
            InputSet(run_id=f.name[: -len(".fastq.gz")], files=(f,)) for f in reads
        )
        return Job(job_id=sample_dir.name, output_dir=Path(), inputs=inputs, layout="single")
    return None


class TrimStage(Stage):
    """fastp per run, all runs of a sample in one job."""

    name = "trim"
    description = "Trim and filter raw reads with fastp"
    output_subdir = "Trimmed_data"
    required_tools = ("fastp",)
    degraded_marker = "REDUCED_TRIMMING.txt"
    disk_per_job_mib = 2000

    def __init__(
        self,
        extra_args: Any = DEFAULT_EXTRA_ARGS,
        length_required: int = DEFAULT_LENGTH_REQUIRED,
        threads: Optional[int] = None,
        **options: Any,
    ):
        super().__init__(
            extra_args=extra_args,
            length_required=length_required,
            threads=threads,
            **options,
        )
        self.extra_args = split_args(extra_args)
        self.length_required = int(length_required)

    def estimator(self) -> JobCostEstimator:
        return TRIM_ESTIMATOR

    def discover(self, study_path: Path) -> List[Job]:
        raw = study_path / INPUT_SUBDIR
        if not raw.is_dir():
            raise DiscoveryError(f"Raw_data directory not found: {raw}")

        jobs = []
        for sample_dir in sorted(p for p in raw.iterdir() if p.is_dir()):
            if sample_dir.name in NON_SAMPLE_DIRS or sample_dir.name.startswith("."):
                continue
            job = detect_inputs(sample_dir)
            if job is None:
                logger.debug(f"{sample_dir.name}: no FASTQ files, skipping")
                continue
            job.output_dir = self.output_dir_for(study_path, job.job_id)
            jobs.append(job)
        return jobs

    def args_for(self, profile: JobResourceProfile) -> List[str]:
        if profile.reduced_fidelity:
            return strip_args(self.extra_args, REDUCED_DROP_ARGS)
        return list(self.extra_args)

    def commands(
        self,
        job: Job,
        profile: JobResourceProfile,
        scratch_dir: Path,
        temp_dir: Optional[Path] = None,
    ) -> List[List[str]]:
        if not job.inputs:
            raise JobInputError(f"No FASTQ files found for {job.job_id}")

        out = job.output_dir
        tail = self.args_for(profile) + [
            "--length_required",
            str(self.length_required),
            "--thread",
            str(profile.threads),
        ]

        commands = []
        for run in job.inputs:
            report = ["-h", str(out / f"{run.run_id}.html"), "-j", str(out / f"{run.run_id}.json")]
            if run.paired:
                argv = [
                    "fastp",
                    "-i", str(run.files[0]),
                    "-I", str(run.files[1]),
                    "-o", str(out / f"fastp_{run.run_id}_1.fastq.gz"),
                    "-O", str(out / f"fastp_{run.run_id}_2.fastq.gz"),
                ]
            elif job.layout == "paired":
                logger.warning(f"[{job.job_id}] Missing R2 for {run.run_id}, treating R1 as single-end")
                argv = [
                    "fastp",
                    "-i", str(run.files[0]),
                    "-o", str(out / f"fastp_{run.run_id}_1.fastq.gz"),
                ]
            else:
                argv = [
                    "fastp",
                    "-i", str(run.files[0]),
                    "-o", str(out / f"fastp_{run.run_id}.fastq.gz"),
                ]
            commands.append(argv + report + tail)
        return commands

    def output_complete(self, job: Job) -> bool:
        if not job.inputs:
            return False
        for run in job.inputs:
            candidates = [
                job.output_dir / f"fastp_{run.run_id}_1.fastq.gz",
                job.output_dir / f"fastp_{run.run_id}.fastq.gz",
            ]
            if not any(nonempty(c) for c in candidates):
                return False
        return True

    def degraded_notice(self, job: Job, profile: JobResourceProfile) -> str:
        return (
            "WARNING: This sample was trimmed in reduced mode.\n\n"
            "Standard trimming failed, likely due to memory constraints. It was re-run\n"
            f"with {profile.threads} threads and without base correction or\n"
            "overrepresentation analysis.\n\n"
            f"Standard args: {' '.join(self.extra_args)}\n"
            f"Reduced args: {' '.join(self.args_for(profile))}\n"
        )

    def settings_summary(self) -> Dict[str, Any]:
        return {
            "extra_args": " ".join(self.extra_args),
            "length_required": self.length_required,
            "threads": self.thread_override or "auto",
        }
