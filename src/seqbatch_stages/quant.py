"""Transcript quantification with salmon.

Implementation rules enforced here:
- Never print
- Never read global config or environment (options arrive as kwargs)
- Build argv lists only; the scheduler runs them
- Reduced fidelity: bias models are disabled

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from seqbatch.errors import DiscoveryError, JobInputError, MissingDependencyError
from seqbatch.scheduler.cost import JobCostEstimator
from seqbatch.schemas import InputSet, Job, JobResourceProfile
from seqbatch.stage import NON_SAMPLE_DIRS, Stage, nonempty, split_args, strip_args

logger = logging.getLogger(__name__)

# I/O declaration for static analysis and auditing
__io__ = {
    "reads": ["{study}/Trimmed_data/{sample}/fastp_*.fastq.gz", "{index}"],
    "writes": ["{study}/Aligned_data/{sample}/"],
    "external": ["salmon quant"],
}

INPUT_SUBDIR = "Trimmed_data"
DEFAULT_EXTRA_ARGS = "--validateMappings --seqBias --gcBias --posBias --dumpEq"
BIAS_ARGS = ("--seqBias", "--gcBias", "--posBias")
INDEX_MARKERS = ("versionInfo.json", "info.json", "duplicate_clusters.tsv")


def _run_id(path: Path) -> str:
    name = path.name[: -len(".fastq.gz")]
    if name.startswith("fastp_"):
        name = name[len("fastp_"):]
    for suffix in ("_1", "_2"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return name


def detect_inputs(sample_dir: Path) -> Optional[Job]:
    """Group a sample's trimmed reads into runs.

    Paired when any fastp_*_1 and fastp_*_2 files exist. In paired mode an
    R1 without its R2 keeps a one-file InputSet so the command step can
    drop it with a warning.

    Returns:
        A partially built Job (output_dir unset), or None with no reads.
    """
    r1 = sorted(sample_dir.glob("fastp_*_1.fastq.gz"))
    r2 = sorted(sample_dir.glob("fastp_*_2.fastq.gz"))

    if r1 and r2:
        inputs = []
        for read1 in r1:
            read2 = read1.with_name(read1.name[: -len("_1.fastq.gz")] + "_2.fastq.gz")
            files = (read1, read2) if read2.exists() else (read1,)
            inputs.append(InputSet(run_id=_run_id(read1), files=files))
        return Job(job_id=sample_dir.name, output_dir=Path(), inputs=tuple(inputs), layout="paired")

    single = [f for f in sorted(sample_dir.glob("fastp_*.fastq.gz")) if not f.name.endswith("_2.fastq.gz")]
    if single:
        inputs = tuple(InputSet(run_id=_run_id(f), files=(f,)) for f in single)
        return Job(job_id=sample_dir.name, output_dir=Path(), inputs=inputs, layout="single")
    return None


class QuantStage(Stage):
    """salmon quant per sample, technical replicates merged into one call."""

    name = "quant"
    description = "Quantify trimmed reads against a salmon index"
    output_subdir = "Aligned_data"
    required_tools = ("salmon",)
    degraded_marker = "NO_BIAS_CORRECTION.txt"
    disk_per_job_mib = 200

    def __init__(
        self,
        index: Optional[str] = None,
        libtype_pe: str = "A",
        libtype_se: str = "A",
        extra_args: Any = DEFAULT_EXTRA_ARGS,
        threads: Optional[int] = None,
        **options: Any,
    ):
        super().__init__(
            index=index,
            libtype_pe=libtype_pe,
            libtype_se=libtype_se,
            extra_args=extra_args,
            threads=threads,
            **options,
        )
        self.index = Path(index).expanduser() if index else None
        self.libtype_pe = libtype_pe
        self.libtype_se = libtype_se
        self.extra_args = split_args(extra_args)

    def estimator(self) -> JobCostEstimator:
        return JobCostEstimator()

    def resident_resource(self) -> Optional[Path]:
        return self.index

    def check_dependencies(self) -> None:
        super().check_dependencies()
        if self.index is None:
            raise MissingDependencyError("salmon index is required (--index)")
        if not self.index.is_dir():
            raise MissingDependencyError(f"Salmon index directory not found: {self.index}")
        if not any((self.index / marker).exists() for marker in INDEX_MARKERS):
            logger.warning(
                f"Salmon index may be incomplete - expected index files not found in {self.index}"
            )

    def discover(self, study_path: Path) -> List[Job]:
        trimmed = study_path / INPUT_SUBDIR
        if not trimmed.is_dir():
            raise DiscoveryError(f"Trimmed_data directory not found: {trimmed}")

        jobs = []
        for sample_dir in sorted(p for p in trimmed.iterdir() if p.is_dir()):
            if sample_dir.name in NON_SAMPLE_DIRS or sample_dir.name.startswith("."):
                continue
            job = detect_inputs(sample_dir)
            if job is None:
                logger.debug(f"{sample_dir.name}: no trimmed reads, skipping")
                continue
            job.output_dir = self.output_dir_for(study_path, job.job_id)
            jobs.append(job)
        return jobs

    def args_for(self, profile: JobResourceProfile) -> List[str]:
        if profile.reduced_fidelity:
            return strip_args(self.extra_args, BIAS_ARGS)
        return list(self.extra_args)

    def commands(
        self,
        job: Job,
        profile: JobResourceProfile,
        scratch_dir: Path,
        temp_dir: Optional[Path] = None,
    ) -> List[List[str]]:
        if self.index is None:
            raise JobInputError("no salmon index configured")

        if job.layout == "paired":
            pairs = [s for s in job.inputs if s.paired]
            for dropped in (s for s in job.inputs if not s.paired):
                logger.warning(f"[{job.job_id}] Missing R2 for {dropped.run_id}, run excluded")
            if not pairs:
                raise JobInputError(f"No valid paired-end files found for {job.job_id}")
            reads = (
                ["-l", self.libtype_pe, "-i", str(self.index), "-1"]
                + [str(s.files[0]) for s in pairs]
                + ["-2"]
                + [str(s.files[1]) for s in pairs]
            )
        else:
            files = [str(s.files[0]) for s in job.inputs if s.files]
            if not files:
                raise JobInputError(f"No single-end files found for {job.job_id}")
            reads = ["-l", self.libtype_se, "-i", str(self.index), "-r"] + files

        return [
            ["salmon", "quant"]
            + reads
            + self.args_for(profile)
            + ["--threads", str(profile.threads), "-o", str(job.output_dir)]
        ]

    def output_complete(self, job: Job) -> bool:
        return nonempty(job.output_dir / "quant.sf")

    def degraded_notice(self, job: Job, profile: JobResourceProfile) -> str:
        normal = " ".join(self.extra_args)
        reduced = " ".join(self.args_for(profile))
        return (
            "WARNING: This sample was quantified WITHOUT bias correction models.\n\n"
            "The standard quantification (with --seqBias --gcBias --posBias) failed,\n"
            "likely due to memory constraints. This sample was re-run in minimal-memory\n"
            "mode with bias models disabled.\n\n"
            "The quantification is usable but may be less accurate than samples processed\n"
            "with full bias correction. Consider re-running with more available RAM.\n\n"
            f"Standard args: {normal}\n"
            f"Reduced args: {reduced}\n"
        )

    def settings_summary(self) -> Dict[str, Any]:
        return {
            "index": str(self.index) if self.index else None,
            "libtype_pe": self.libtype_pe,
            "libtype_se": self.libtype_se,
            "extra_args": " ".join(self.extra_args),
            "threads": self.thread_override or "auto",
        }
