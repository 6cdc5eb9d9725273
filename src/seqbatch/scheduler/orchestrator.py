"""Batch orchestrator.

One batch = one stage over one study. The orchestrator enumerates the
stage's jobs, drops those already complete on disk, computes the budget,
hands the rest to the tier controller and writes the summary.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from seqbatch.errors import DiscoveryError, JobInputError, SeqbatchError
from seqbatch.event_client import EventClient, new_correlation_id
from seqbatch.logging_setup import study_error_log
from seqbatch.scheduler.probe import probe
from seqbatch.scheduler.progress import ProgressStore, state_dir_for
from seqbatch.scheduler.runner import CancellationToken, JobRunner
from seqbatch.scheduler.tiers import TierController
from seqbatch.schemas import BatchSummary, HostTotals, Job, JobState, ResourceBudget, Tier
from seqbatch.stage import Stage
from seqbatch.summary import summary_path_for, write_summary

logger = logging.getLogger(__name__)

MIB = 1024 * 1024


@dataclass
class BatchRequest:
    """What to run for one study."""

    study_path: Path
    only: Optional[List[str]] = None  # None or ["all"] means every job
    force: bool = False
    fresh: bool = False
    retry_failed: bool = False
    dry_run: bool = False
    # Per-study stage options, e.g. the auth file of a batch file row
    stage_options: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StudyOutcome:
    """Result of one study in a multi-study run."""

    study_path: Path
    summary: Optional[BatchSummary] = None
    error: Optional[str] = None

    @property
    def exit_code(self) -> int:
        if self.error is not None or self.summary is None:
            return 1
        return self.summary.exit_code


class BatchOrchestrator:
    """Runs one stage over one study at a time."""

    def __init__(
        self,
        stage: Stage,
        parallel_batches: int = 1,
        heartbeat_sec: int = 60,
        show_stderr: bool = False,
        scratch_root: Optional[Path] = None,
        host: Optional[HostTotals] = None,
        cancel: Optional[CancellationToken] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            stage: Stage to run.
            parallel_batches: Batches sharing this host (divides the budget).
            heartbeat_sec: Seconds between "still running" log lines.
            show_stderr: Echo tool stderr to the console.
            scratch_root: Parent of job scratch directories.
            host: Pre-measured host totals (psutil when omitted).
            cancel: Token that stops scheduling and terminates children.
        """
        self.stage = stage
        self.parallel_batches = max(1, parallel_batches)
        self.heartbeat_sec = heartbeat_sec
        self.show_stderr = show_stderr
        self.scratch_root = scratch_root
        self.host = host
        self.cancel = cancel

    # -- job selection --------------------------------------------------------

    def select_jobs(self, study_path: Path, only: Optional[Sequence[str]]) -> List[Job]:
        """Discover jobs and keep those named in only (all when empty or 'all')."""
        jobs = self.stage.discover(study_path)
        if not only or "all" in only:
            return jobs

        wanted = list(dict.fromkeys(only))
        by_id = {job.job_id: job for job in jobs}
        for job_id in wanted:
            if job_id not in by_id:
                logger.warning(f"{job_id}: no {self.stage.name} input found in {study_path}, skipping")
        return [by_id[j] for j in wanted if j in by_id]

    def _check_disk_space(self, study_path: Path, pending: int) -> None:
        if pending == 0:
            return
        needed = self.stage.disk_per_job_mib * pending
        try:
            free = shutil.disk_usage(study_path).free // MIB
        except OSError as e:
            logger.warning(f"Cannot check free disk space: {e}")
            return
        if free < needed:
            logger.warning(
                f"Low disk space: {free} MiB free, ~{needed} MiB estimated for {pending} jobs"
            )

    # -- batch ----------------------------------------------------------------

    def run(self, request: BatchRequest) -> BatchSummary:
        """Run one batch.

        Raises:
            DiscoveryError: If the study or the stage input is missing.
            MissingDependencyError: If a required tool is not installed.
        """
        study_path = Path(request.study_path)
        if not study_path.is_dir():
            raise DiscoveryError(f"Study directory not found: {study_path}")

        error_log = study_path / f"{self.stage.name}_error_log.txt"
        with study_error_log(error_log, thread_scoped=self.parallel_batches > 1):
            return self._run(study_path, request)

    def _run(self, study_path: Path, request: BatchRequest) -> BatchSummary:
        stage = self.stage
        summary = BatchSummary(
            stage=stage.name,
            study=study_path.name,
            study_path=study_path,
            started_at=datetime.now(),
            stage_settings=stage.settings_summary(),
            dry_run=request.dry_run,
        )

        if not request.dry_run:
            stage.check_dependencies()
        jobs = self.select_jobs(study_path, request.only)
        logger.info(f"{study_path.name}: {len(jobs)} {stage.name} jobs found")

        store = ProgressStore(state_dir_for(study_path, stage.name))
        summary.state_dir = store.state_dir
        summary.logs_dir = store.state_dir / "logs"

        if request.force:
            logger.info("Force mode: existing outputs will be overwritten")
            done_on_disk = set()
        else:
            done_on_disk = {job.job_id for job in jobs if stage.output_complete(job)}

        budget = probe(self.parallel_batches, self.host)
        summary.budget = budget
        summary.fixed_overhead_mib = stage.estimator().fixed_overhead_for(stage.resident_resource())

        if request.dry_run:
            pending_jobs = [job for job in jobs if job.job_id not in done_on_disk]
            self._dry_run(summary, budget, pending_jobs)
            summary.skipped = [j.job_id for j in jobs if j.job_id in done_on_disk]
            summary.not_attempted = [j.job_id for j in pending_jobs]
            summary.completed_at = datetime.now()
            return summary

        store.start(fresh=request.fresh or request.force)
        pending_ids = set(
            store.begin(
                [job.job_id for job in jobs],
                done_on_disk,
                retry_failed=request.retry_failed or request.force,
            )
        )
        for job in jobs:
            if job.job_id in done_on_disk:
                job.transition(JobState.SUCCEEDED)
            elif job.job_id not in pending_ids:
                job.transition(JobState.FAILED)

        pending_jobs = [job for job in jobs if job.job_id in pending_ids]
        self._check_disk_space(study_path, len(pending_jobs))

        events = EventClient(store.events_path)
        correlation_id = new_correlation_id()
        events.log_event(
            "batch.started",
            correlation_id,
            "started",
            payload={
                "stage": stage.name,
                "study": study_path.name,
                "jobs": len(jobs),
                "pending": len(pending_jobs),
                "usable_cpus": budget.usable_cpus,
                "usable_memory_mib": budget.usable_memory_mib,
            },
        )

        runner = JobRunner(
            stage,
            logs_dir=summary.logs_dir,
            scratch_root=self.scratch_root,
            heartbeat_sec=self.heartbeat_sec,
            show_stderr=self.show_stderr,
        )
        controller = TierController(
            stage,
            runner,
            store,
            budget,
            fixed_overhead_mib=summary.fixed_overhead_mib,
            events=events,
            correlation_id=correlation_id,
            cancel=self.cancel,
        )
        if pending_jobs:
            summary.plans = controller.run(pending_jobs)
        else:
            logger.info("All jobs already processed")
        summary.peak_memory = controller.peak_memory

        self._categorize(summary, jobs, done_on_disk)
        summary.completed_at = datetime.now()
        summary.summary_path = summary_path_for(study_path, stage.name)
        write_summary(summary)

        events.log_event(
            "batch.completed",
            correlation_id,
            "completed" if summary.complete else "partial",
            payload={
                "stage": stage.name,
                "study": study_path.name,
                "succeeded": len(summary.succeeded),
                "skipped": len(summary.skipped),
                "degraded": len(summary.degraded),
                "failed": len(summary.failed),
                "not_attempted": len(summary.not_attempted),
            },
        )
        logger.info(
            f"{study_path.name}: {len(summary.succeeded)} succeeded, {len(summary.skipped)} skipped, "
            f"{len(summary.degraded)} degraded, {len(summary.failed)} failed"
        )
        return summary

    def _categorize(self, summary: BatchSummary, jobs: List[Job], done_on_disk: Set[str]) -> None:
        """Put every job id in exactly one category."""
        for job in jobs:
            if job.job_id in done_on_disk:
                if self.stage.is_degraded(job):
                    summary.degraded.append(job.job_id)
                else:
                    summary.skipped.append(job.job_id)
            elif job.state is JobState.SUCCEEDED_DEGRADED:
                summary.degraded.append(job.job_id)
            elif job.state is JobState.SUCCEEDED:
                summary.succeeded.append(job.job_id)
            elif job.state is JobState.FAILED:
                summary.failed.append(job.job_id)
            else:
                summary.not_attempted.append(job.job_id)

    def _dry_run(
        self, summary: BatchSummary, budget: ResourceBudget, pending_jobs: List[Job]
    ) -> None:
        """Plan tier 1 and list the commands without running anything."""
        controller = TierController(
            self.stage,
            runner=None,
            store=None,
            budget=budget,
            fixed_overhead_mib=summary.fixed_overhead_mib,
        )
        tier_plan, profile = controller.plan_tier(Tier.PARALLEL, len(pending_jobs))
        summary.plans = [tier_plan]

        scratch = Path(self.scratch_root or "/tmp") / "<scratch>"
        for job in pending_jobs:
            try:
                summary.planned_commands[job.job_id] = self.stage.commands(job, profile, scratch)
            except JobInputError as e:
                logger.warning(f"[{job.job_id}] {e}")
                summary.planned_commands[job.job_id] = []


def run_studies(
    make_orchestrator: Callable[[int, BatchRequest], BatchOrchestrator],
    requests: List[BatchRequest],
    parallel: int = 1,
) -> List[StudyOutcome]:
    """Run several studies, parallel at a time.

    Each study gets its own orchestrator built with the number of batches
    sharing the host, so every batch takes its own share of the resources.
    An infrastructure error in one study is recorded and the others go on.

    Args:
        make_orchestrator: (parallel_batches, request) -> BatchOrchestrator.
        requests: One request per study.
        parallel: Studies to process at the same time.

    Returns:
        One StudyOutcome per request, in request order.
    """
    workers = max(1, min(parallel, len(requests) or 1))

    def one(request: BatchRequest) -> StudyOutcome:
        outcome = StudyOutcome(study_path=Path(request.study_path))
        try:
            outcome.summary = make_orchestrator(workers, request).run(request)
        except SeqbatchError as e:
            logger.error(f"{outcome.study_path.name}: {e}")
            outcome.error = str(e)
        return outcome

    if workers == 1:
        return [one(r) for r in requests]

    logger.info(f"Processing {len(requests)} studies, {workers} at a time")
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(one, requests))


def combined_exit_code(outcomes: List[StudyOutcome]) -> int:
    """1 if any study hit an infrastructure error, else 3 on any failure, else 0."""
    codes = [o.exit_code for o in outcomes]
    if any(c == 1 for c in codes):
        return 1
    return max(codes, default=0)
