"""Tier controller.

Drives the job runner through the three retry tiers:

    tier1 (parallel) -> tier2 (sequential, max resources)
        -> tier3 (sequential, minimal footprint, reduced fidelity) -> done

A tier only sees the jobs the previous tier failed. Tiers never overlap:
the tier-1 pool is joined before tier 2 starts.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from typing import Any, Dict, List, Optional, Tuple

from seqbatch.event_client import EventClient
from seqbatch.scheduler.planner import plan
from seqbatch.scheduler.progress import ProgressStore, attempt_record
from seqbatch.scheduler.runner import CancellationToken, JobRunner
from seqbatch.schemas import (
    Job,
    JobResourceProfile,
    JobState,
    ResourceBudget,
    RunResult,
    Tier,
    TierPlan,
)
from seqbatch.stage import Stage

logger = logging.getLogger(__name__)


class TierController:
    """Runs pending jobs through the tiers and records every attempt."""

    def __init__(
        self,
        stage: Stage,
        runner: JobRunner,
        store: ProgressStore,
        budget: ResourceBudget,
        fixed_overhead_mib: int = 0,
        events: Optional[EventClient] = None,
        correlation_id: str = "",
        cancel: Optional[CancellationToken] = None,
    ):
        self.stage = stage
        self.runner = runner
        self.store = store
        self.budget = budget
        self.fixed_overhead_mib = fixed_overhead_mib
        self.events = events
        self.correlation_id = correlation_id
        self.cancel = cancel
        self.estimator = stage.estimator()
        self.plans: List[TierPlan] = []
        self.peak_memory: Optional[Dict[str, Any]] = None

    # -- planning -------------------------------------------------------------

    def _memory_for(self, threads: int) -> int:
        return self.estimator.memory_required(threads, self.fixed_overhead_mib)

    def plan_tier(self, tier: Tier, pending: int) -> Tuple[TierPlan, JobResourceProfile]:
        """Decide concurrency and the job profile for one tier."""
        est = self.estimator
        usable_cpus = self.budget.usable_cpus
        usable_memory = self.budget.usable_memory_mib

        if tier is Tier.PARALLEL:
            threads = est.threads_for(usable_cpus, self.stage.thread_override)
            max_threads = threads if self.stage.thread_override else est.single_job_thread_cap
            tier_plan = plan(
                pending=pending,
                threads_per_job=threads,
                usable_cpus=usable_cpus,
                usable_memory_mib=usable_memory,
                memory_per_job_mib=self._memory_for(threads),
                tier=tier,
                max_threads=max_threads,
                memory_for=self._memory_for,
            )
            tier_plan = self._apply_stage_cap(tier_plan)
            ceiling = est.memory_budget(tier_plan.parallel_jobs, usable_memory)
        else:
            if tier is Tier.SEQUENTIAL_MAX:
                threads = min(usable_cpus, est.tier2_thread_cap)
            else:
                threads = min(usable_cpus, est.tier3_threads)
            tier_plan = TierPlan(
                tier=tier,
                threads_per_job=threads,
                parallel_jobs=min(1, pending),
                memory_per_job_mib=self._memory_for(threads),
                binding="sequential",
            )
            ceiling = est.memory_budget(1, usable_memory)
            logger.info(f"{tier.label} plan: 1 job at a time, {threads} threads, {ceiling} MiB ceiling")

        profile = est.profile(tier, tier_plan.threads_per_job, self.fixed_overhead_mib, ceiling)
        return tier_plan, profile

    def _apply_stage_cap(self, tier_plan: TierPlan) -> TierPlan:
        cap = self.stage.parallel_job_cap()
        if cap is None or tier_plan.parallel_jobs <= cap:
            return tier_plan
        cap = max(1, cap)
        logger.warning(
            f"Reducing parallel jobs from {tier_plan.parallel_jobs} to {cap} "
            f"({self.stage.name} limit)"
        )
        return replace(tier_plan, parallel_jobs=cap, binding="stage")

    # -- execution ------------------------------------------------------------

    def run(self, jobs: List[Job]) -> List[TierPlan]:
        """Run every pending job until it succeeds or fails tier 3.

        Jobs resumed from an interrupted batch start at the tier after their
        last recorded failure.

        Returns:
            The plans of the tiers that ran.
        """
        start = {}
        for job in jobs:
            last = self.store.last_tier_for(job.job_id)
            start[job.job_id] = Tier.PARALLEL if last is None else Tier(min(int(last) + 1, 3))
            if last is not None:
                logger.info(f"[{job.job_id}] Resuming at {start[job.job_id].label}")

        for tier in Tier:
            if self._cancelled():
                break

            queue = [
                j for j in jobs if j.state is JobState.PENDING and start[j.job_id] <= tier
            ]
            if not queue:
                logger.debug(f"{tier.label}: nothing to run")
                continue

            tier_plan, profile = self.plan_tier(tier, len(queue))
            self.plans.append(tier_plan)
            logger.info(f"=== {tier.label}: {len(queue)} jobs ===")
            self._event(
                "tier.started",
                "started",
                {
                    "tier": int(tier),
                    "jobs": len(queue),
                    "parallel_jobs": tier_plan.parallel_jobs,
                    "threads_per_job": tier_plan.threads_per_job,
                },
            )

            if tier is Tier.PARALLEL and tier_plan.parallel_jobs > 1:
                self._run_pool(queue, profile, tier_plan.parallel_jobs)
            else:
                self._run_sequential(queue, profile)

            failed = [j.job_id for j in queue if j.state is not JobState.SUCCEEDED
                      and j.state is not JobState.SUCCEEDED_DEGRADED]
            self._event("tier.completed", "completed", {"tier": int(tier), "failed": len(failed)})

        return self.plans

    def _run_pool(self, queue: List[Job], profile: JobResourceProfile, workers: int) -> None:
        # Worker names extend the calling thread's name so a study's error
        # log can claim records from its own pool
        prefix = f"{threading.current_thread().name}/{self.stage.name}"
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=prefix) as pool:
            futures = {}
            for job in queue:
                job.transition(JobState.RUNNING)
                futures[pool.submit(self.runner.run, job, profile, self.cancel)] = job
            for future in as_completed(futures):
                self._record(futures[future], profile, future.result())

    def _run_sequential(self, queue: List[Job], profile: JobResourceProfile) -> None:
        for job in queue:
            if self._cancelled():
                break
            job.transition(JobState.RUNNING)
            logger.info(f"[{job.job_id}] Starting {profile.tier.label} ({profile.threads} threads)")
            self._record(job, profile, self.runner.run(job, profile, self.cancel))

    def _record(self, job: Job, profile: JobResourceProfile, result: RunResult) -> None:
        tier = profile.tier
        if result.cancelled and result.returncode is None:
            # Never started
            job.transition(JobState.PENDING)
            return

        self.store.append(
            attempt_record(
                job.job_id,
                tier,
                profile.threads,
                result.success,
                peak=result.peak_memory_mib,
                detail=result.detail,
            )
        )
        self._track_peak(job.job_id, tier, result.peak_memory_mib)

        if result.cancelled:
            logger.warning(f"[{job.job_id}] {tier.label} attempt cancelled")
            job.transition(JobState.PENDING)
            return

        if result.success:
            if profile.reduced_fidelity:
                try:
                    self.stage.write_degraded_marker(job, profile)
                except OSError as e:
                    logger.warning(f"[{job.job_id}] Cannot write reduced-fidelity marker: {e}")
                job.transition(JobState.SUCCEEDED_DEGRADED)
                self.store.mark_succeeded(job.job_id, degraded=True)
                logger.warning(f"[{job.job_id}] Completed in reduced-fidelity mode ({tier.label})")
            else:
                job.transition(JobState.SUCCEEDED)
                self.store.mark_succeeded(job.job_id)
                logger.info(f"[{job.job_id}] Completed ({tier.label})")
            return

        self.store.mark_failed(job.job_id, tier)
        job.transition(JobState.FAILED if tier.is_last else JobState.PENDING)
        logger.warning(
            f"[{job.job_id}] {tier.label} failed: {result.detail or 'unknown error'}"
            f" (log: {result.log_path})"
        )
        if result.stderr_tail:
            logger.warning(f"[{job.job_id}] Last lines of log:\n{result.stderr_tail}")
        self._event(
            "job.failed",
            "failed",
            {"job_id": job.job_id, "tier": int(tier), "returncode": result.returncode},
            error_message=result.detail,
        )

    # -- helpers --------------------------------------------------------------

    def _cancelled(self) -> bool:
        if self.cancel is not None and self.cancel.cancelled:
            logger.warning("Batch cancelled: no new attempts will be scheduled")
            return True
        return False

    def _track_peak(self, job_id: str, tier: Tier, peak: Optional[int]) -> None:
        if peak is None:
            return
        if self.peak_memory is None or peak > self.peak_memory["mib"]:
            self.peak_memory = {"mib": peak, "job_id": job_id, "tier": int(tier)}

    def _event(
        self,
        event_type: str,
        status: str,
        payload: Dict[str, Any],
        error_message: Optional[str] = None,
    ) -> None:
        if self.events is None:
            return
        payload = {"stage": self.stage.name, **payload}
        self.events.log_event(
            event_type,
            self.correlation_id,
            status,
            payload=payload,
            error_message=error_message,
        )
