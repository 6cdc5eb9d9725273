"""Shared fixtures: a fake stage whose jobs are small shell commands."""

import os
from pathlib import Path
from typing import Dict, List, Set

import pytest

from seqbatch.scheduler.cost import JobCostEstimator
from seqbatch.schemas import HostTotals, Job, JobResourceProfile
from seqbatch.stage import Stage, nonempty

SUCCEED = 'echo "threads=$SEQBATCH_THREADS" > "$1/result.txt"'
FAIL = 'echo "boom: out of memory" >&2; exit 1'


class FakeStage(Stage):
    """Stage whose per-job behavior depends on the tier being attempted.

    fail_tiers maps job id -> tiers in which the job fails. Modes other than
    plain failure can be forced per job with modes.
    """

    name = "fake"
    description = "Test stage"
    output_subdir = "Out"
    required_tools = ("sh",)
    degraded_marker = "DEGRADED.txt"
    disk_per_job_mib = 1

    def __init__(self, job_ids: List[str], fail_tiers: Dict[str, Set[int]] = None, modes=None, **options):
        super().__init__(**options)
        self.job_ids = list(job_ids)
        self.fail_tiers = fail_tiers or {}
        self.modes = modes or {}
        self.calls: List[tuple] = []

    def estimator(self) -> JobCostEstimator:
        return JobCostEstimator(per_thread_mib=100, base_working_mib=100, budget_floor_mib=256)

    def discover(self, study_path: Path) -> List[Job]:
        return [Job(job_id=j, output_dir=self.output_dir_for(study_path, j)) for j in self.job_ids]

    def commands(self, job: Job, profile: JobResourceProfile, scratch_dir: Path, temp_dir=None):
        self.calls.append((job.job_id, int(profile.tier), profile.threads))
        if int(profile.tier) in self.fail_tiers.get(job.job_id, set()):
            script = self.modes.get(job.job_id, FAIL)
        else:
            script = SUCCEED
        return [["sh", "-c", script, "sh", str(job.output_dir)]]

    def output_complete(self, job: Job) -> bool:
        return nonempty(job.output_dir / "result.txt")


@pytest.fixture
def study(tmp_path):
    """An empty study directory."""
    path = tmp_path / "GSE1"
    path.mkdir()
    return path


@pytest.fixture
def host():
    """Host with 10 CPUs (8 usable) and plenty of memory."""
    return HostTotals(cpus=10, total_memory_mib=32768, available_memory_mib=20000)


@pytest.fixture
def fake_stage():
    """The FakeStage class."""
    return FakeStage


@pytest.fixture
def fake_tool(tmp_path, monkeypatch):
    """Factory for executable shell scripts on PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}:{os.environ.get('PATH', '')}")

    def make(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        path.chmod(0o755)
        return path

    return make
