"""Progress store.

File-backed per-study, per-stage state: one id list per category plus an
append-only attempt log. Lets a crashed or interrupted batch resume at the
right tier and lets an operator feed a category file straight back into a
retry-only run.

Layout under <study>/.seqbatch/<stage>/:
- pending.txt, skipped.txt, succeeded.txt, succeeded_degraded.txt
- tier1_failed.txt, tier2_failed.txt, tier3_failed.txt
- attempts.tsv

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from seqbatch.schemas import OUTCOME_FAILURE, OUTCOME_SUCCESS, AttemptRecord, Tier

logger = logging.getLogger(__name__)

STATE_DIRNAME = ".seqbatch"

PENDING = "pending"
SKIPPED = "skipped"
SUCCEEDED = "succeeded"
SUCCEEDED_DEGRADED = "succeeded_degraded"

ATTEMPT_COLUMNS = ("job_id", "tier", "threads", "outcome", "peak_mib", "recorded_at", "detail")


def failed_list(tier: Tier) -> str:
    return f"{tier.label}_failed"


ALL_LISTS = (PENDING, SKIPPED, SUCCEEDED, SUCCEEDED_DEGRADED) + tuple(
    failed_list(t) for t in Tier
)


def state_dir_for(study_path: Path, stage_name: str) -> Path:
    return Path(study_path) / STATE_DIRNAME / stage_name


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clean(text: str) -> str:
    return " ".join(str(text).split())


class ProgressStore:
    """Per-study state for one stage.

    Appends are serialized with a lock because tier-1 workers report from
    pool threads. Each id list is de-duplicated on append.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = Path(state_dir)
        self._lock = threading.Lock()
        self._resolved: Set[str] = set()
        self._cache: Dict[str, List[str]] = {}

    @classmethod
    def for_study(cls, study_path: Path, stage_name: str) -> "ProgressStore":
        return cls(state_dir_for(study_path, stage_name))

    # -- files ------------------------------------------------------------

    def path(self, name: str) -> Path:
        return self.state_dir / f"{name}.txt"

    @property
    def attempts_path(self) -> Path:
        return self.state_dir / "attempts.tsv"

    @property
    def events_path(self) -> Path:
        return self.state_dir / "events.jsonl"

    def read_list(self, name: str) -> List[str]:
        """Ids recorded in one category file, in first-seen order."""
        if name in self._cache:
            return list(self._cache[name])

        path = self.path(name)
        ids: List[str] = []
        if path.exists():
            seen = set()
            for line in path.read_text().splitlines():
                job_id = line.strip()
                if job_id and job_id not in seen:
                    seen.add(job_id)
                    ids.append(job_id)
        self._cache[name] = ids
        return list(ids)

    def _append(self, name: str, job_id: str) -> None:
        ids = self.read_list(name)
        if job_id in ids:
            return
        with open(self.path(name), "a") as f:
            f.write(f"{job_id}\n")
        self._cache[name].append(job_id)

    def _write_list(self, name: str, ids: Iterable[str]) -> None:
        unique = list(dict.fromkeys(ids))
        self.path(name).write_text("".join(f"{i}\n" for i in unique))
        self._cache[name] = unique

    # -- lifecycle ----------------------------------------------------------

    def start(self, fresh: bool = False) -> None:
        """Prepare the state directory.

        Args:
            fresh: Truncate every state file instead of resuming.
        """
        self.state_dir.mkdir(parents=True, exist_ok=True)
        with self._lock:
            self._cache.clear()
            self._resolved.clear()
            if fresh:
                logger.info(f"Starting fresh: clearing state in {self.state_dir}")
                for name in ALL_LISTS:
                    self.path(name).write_text("")
                self.attempts_path.write_text("\t".join(ATTEMPT_COLUMNS) + "\n")
            else:
                for name in ALL_LISTS:
                    self.path(name).touch()
                if not self.attempts_path.exists() or self.attempts_path.stat().st_size == 0:
                    self.attempts_path.write_text("\t".join(ATTEMPT_COLUMNS) + "\n")

    def begin(
        self,
        job_ids: Iterable[str],
        done_on_disk: Iterable[str],
        retry_failed: bool = False,
    ) -> List[str]:
        """Reconcile the log with the disk and return the ids still to run.

        Disk is authoritative: ids whose output is complete are recorded as
        skipped. The skip list is rebuilt from the disk on every call, so an
        id whose output has since vanished is no longer treated as done.
        Terminal failures of earlier runs stay resolved unless retry_failed.

        Args:
            job_ids: Every job id of the batch, in discovery order.
            done_on_disk: Ids whose primary output is already complete.
            retry_failed: Give terminally failed ids another full pass.

        Returns:
            Pending ids, in discovery order.
        """
        job_ids = list(job_ids)
        batch = set(job_ids)
        on_disk = set(done_on_disk)
        done = [j for j in job_ids if j in on_disk]

        with self._lock:
            self._write_list(SKIPPED, done)
            resolved = set(done)

            if retry_failed:
                for tier in Tier:
                    name = failed_list(tier)
                    self._write_list(name, [j for j in self.read_list(name) if j not in batch])
            else:
                terminal = failed_list(Tier.MINIMAL_FOOTPRINT)
                resolved.update(j for j in self.read_list(terminal) if j in batch)

            self._resolved = resolved
            pending = [j for j in job_ids if j not in resolved]
            self._write_list(PENDING, pending)

            # Successes whose output is gone no longer count
            stale = set(pending)
            for name in (SUCCEEDED, SUCCEEDED_DEGRADED):
                self._write_list(name, [j for j in self.read_list(name) if j not in stale])

        logger.info(
            f"{len(job_ids)} jobs: {len(done)} already complete, "
            f"{len(resolved) - len(done)} previously failed, {len(pending)} pending"
        )
        return pending

    # -- recording ----------------------------------------------------------

    def append(self, record: AttemptRecord) -> None:
        """Append one attempt to attempts.tsv."""
        peak = "" if record.peak_memory_mib is None else str(record.peak_memory_mib)
        row = [
            record.job_id,
            str(int(record.tier)),
            str(record.threads),
            record.outcome,
            peak,
            record.recorded_at or _now(),
            _clean(record.detail),
        ]
        with self._lock:
            with open(self.attempts_path, "a") as f:
                f.write("\t".join(row) + "\n")

    def mark_succeeded(self, job_id: str, degraded: bool = False) -> None:
        with self._lock:
            self._append(SUCCEEDED_DEGRADED if degraded else SUCCEEDED, job_id)
            self._resolved.add(job_id)

    def mark_failed(self, job_id: str, tier: Tier) -> None:
        with self._lock:
            self._append(failed_list(tier), job_id)
            if tier.is_last:
                self._resolved.add(job_id)

    # -- queries ------------------------------------------------------------

    def is_resolved(self, job_id: str) -> bool:
        return job_id in self._resolved

    def resolved_set(self) -> Set[str]:
        return set(self._resolved)

    def pending_set(self, job_ids: Iterable[str]) -> List[str]:
        return [j for j in job_ids if j not in self._resolved]

    def failed_in(self, tier: Tier) -> List[str]:
        with self._lock:
            return self.read_list(failed_list(tier))

    def last_tier_for(self, job_id: str) -> Optional[Tier]:
        """Highest tier with a recorded failure for job_id, or None."""
        last = None
        for tier in Tier:
            if job_id in self.failed_in(tier):
                last = tier
        return last

    def attempts(self) -> List[AttemptRecord]:
        """Every recorded attempt, oldest first."""
        if not self.attempts_path.exists():
            return []

        records = []
        for line in self.attempts_path.read_text().splitlines()[1:]:
            fields = line.split("\t")
            if len(fields) < len(ATTEMPT_COLUMNS):
                fields += [""] * (len(ATTEMPT_COLUMNS) - len(fields))
            job_id, tier, threads, outcome, peak, recorded_at, detail = fields[:7]
            try:
                records.append(
                    AttemptRecord(
                        job_id=job_id,
                        tier=Tier(int(tier)),
                        threads=int(threads),
                        outcome=outcome,
                        peak_memory_mib=int(peak) if peak else None,
                        recorded_at=recorded_at,
                        detail=detail,
                    )
                )
            except ValueError:
                logger.warning(f"Skipping malformed attempt row: {line!r}")
        return records

    def counts(self) -> Dict[str, int]:
        """Size of every category file, for status reports."""
        with self._lock:
            return {name: len(self.read_list(name)) for name in ALL_LISTS}

    def succeeded_ids(self) -> List[str]:
        with self._lock:
            return self.read_list(SUCCEEDED)

    def degraded_ids(self) -> List[str]:
        with self._lock:
            return self.read_list(SUCCEEDED_DEGRADED)


def attempt_record(
    job_id: str,
    tier: Tier,
    threads: int,
    success: bool,
    peak: Optional[int] = None,
    detail: str = "",
) -> AttemptRecord:
    """Build an AttemptRecord stamped with the current time."""
    return AttemptRecord(
        job_id=job_id,
        tier=tier,
        threads=threads,
        outcome=OUTCOME_SUCCESS if success else OUTCOME_FAILURE,
        peak_memory_mib=peak,
        recorded_at=_now(),
        detail=detail,
    )
